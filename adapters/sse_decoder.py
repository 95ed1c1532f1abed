"""
sse_decoder.py — Event-stream reassembler for the perplexity_ask SSE response

Rebuilds (event, data) records from transport chunks whose boundaries have no
relation to record boundaries. Records end with a blank line ("\\r\\n\\r\\n").
Handles: multi-line data fields, multi-byte characters split across chunks,
terminators split across chunks, an unterminated trailing record at EOF.
"""

import codecs
import logging
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterable, Iterable, Iterator, List, Optional, Union

logger = logging.getLogger("pplx.sse_decoder")

RECORD_TERMINATOR = "\r\n\r\n"
LINE_SEPARATOR = "\r\n"

Fragment = Union[bytes, bytearray, str]


@dataclass(frozen=True)
class StreamRecord:
    """A single reassembled SSE record."""
    event: str = "message"
    data: str = ""


def parse_record(text: str) -> Optional[StreamRecord]:
    """Parse one record's text (terminator excluded).

    Returns None for blank or whitespace-only text. Lines other than
    event:/data: are ignored; values are trimmed.
    """
    if not text.strip():
        return None

    event = "message"
    data_lines: List[str] = []
    for line in text.split(LINE_SEPARATOR):
        if not line:
            continue
        if line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].strip())

    return StreamRecord(event=event, data="\n".join(data_lines))


class EventStreamReassembler:
    """Stateful buffer turning arbitrary fragments into StreamRecords.

    One instance per response stream; not reusable once flushed.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)("replace")
        self._buffer = ""
        self._flushed = False

    def feed(self, fragment: Fragment) -> List[StreamRecord]:
        if self._flushed:
            raise RuntimeError("reassembler already flushed")

        if isinstance(fragment, str):
            # Bytes held for an incomplete character come first, as U+FFFD.
            self._buffer += self._decoder.decode(b"", final=True) + fragment
            self._decoder.reset()
        else:
            self._buffer += self._decoder.decode(bytes(fragment))

        return self._drain()

    def flush(self) -> List[StreamRecord]:
        """Finish the stream: emit complete records and any non-blank remainder."""
        if self._flushed:
            return []
        self._flushed = True

        self._buffer += self._decoder.decode(b"", final=True)
        records = self._drain()

        remainder, self._buffer = self._buffer, ""
        if remainder.strip():
            logger.debug("Flushing unterminated trailing record (%d chars)", len(remainder))
            record = parse_record(remainder)
            if record is not None:
                records.append(record)
        return records

    def _drain(self) -> List[StreamRecord]:
        records: List[StreamRecord] = []
        while True:
            idx = self._buffer.find(RECORD_TERMINATOR)
            if idx == -1:
                break
            raw = self._buffer[:idx]
            self._buffer = self._buffer[idx + len(RECORD_TERMINATOR):]
            record = parse_record(raw)
            if record is not None:
                records.append(record)
        return records


def iter_records(stream: Iterable[Fragment]) -> Iterator[StreamRecord]:
    """Decode records from a synchronous iterable of bytes or str chunks."""
    reassembler = EventStreamReassembler()
    for chunk in stream:
        yield from reassembler.feed(chunk)
    yield from reassembler.flush()


async def sse_decode(stream: AsyncIterable[Fragment]) -> AsyncGenerator[StreamRecord, None]:
    """Decode records from an async byte stream (httpx response.aiter_bytes()).

    Records are yielded as soon as their terminator arrives. Not restartable:
    supply a fresh stream per response.
    """
    reassembler = EventStreamReassembler()
    async for chunk in stream:
        for record in reassembler.feed(chunk):
            yield record
    for record in reassembler.flush():
        yield record
