"""Record decoder — StreamRecord.data to structured message, best-effort.

The backend wraps a JSON-encoded payload inside the `text` field of a
JSON-encoded envelope. Either layer may be incomplete while the answer is
still streaming, so every parse falls back to the raw string instead of
failing.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from sse_decoder import StreamRecord

NESTED_FIELD = "text"


@dataclass(frozen=True)
class ParseResult:
    """Outcome of try_parse_json: parsed value when ok, else the raw text."""

    ok: bool
    value: Any = None
    raw: str = ""

    def unwrap_or_raw(self) -> Any:
        return self.value if self.ok else self.raw


def try_parse_json(text: str) -> ParseResult:
    try:
        return ParseResult(ok=True, value=json.loads(text), raw=text)
    except (ValueError, TypeError, RecursionError):
        return ParseResult(ok=False, raw=text)


def decode_record(record: StreamRecord) -> Any:
    """Decode a record's data, probing one nested JSON level on `text`.

    Never raises. Returns a dict/list/scalar when the data parses, otherwise
    the original data string.
    """
    message = try_parse_json(record.data).unwrap_or_raw()

    if isinstance(message, dict) and isinstance(message.get(NESTED_FIELD), str):
        nested = try_parse_json(message[NESTED_FIELD])
        if nested.ok:
            message[NESTED_FIELD] = nested.value

    return message
