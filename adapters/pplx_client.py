"""
pplx_client.py — Interaction driver for the perplexity_ask SSE endpoint

One POST per interaction, response consumed as an event stream:

  query + SearchConfig → build_payload → httpx stream → sse_decode → decode_record

Two ways to consume it:
  search()         — wait for the stream to finish, return the last message
  stream_search()  — async generator yielding each decoded message as it arrives

No retries, no caching. Status >= 400 raises TransportStatusError; httpx
transport errors propagate unchanged.
"""

from __future__ import annotations

import dataclasses
import logging
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Optional

import httpx

from config_loader import redact_headers
from cookie_store import Cookies, format_cookie_header, load_cookies
from payload_builder import DEFAULT_VERSION, SearchConfig, build_payload
from pplx_errors import ConfigError, TransportStatusError, UnsupportedFeatureError
from record_decoder import decode_record
from sse_decoder import sse_decode

logger = logging.getLogger("pplx.client")

DEFAULT_BASE_URL = "https://www.perplexity.ai"
DEFAULT_USER_AGENT = "pplx-stream/0.1"
ASK_PATH = "/rest/sse/perplexity_ask"

MESSAGE_EVENT = "message"
END_OF_STREAM_EVENT = "end_of_stream"


def build_headers(cookies: Optional[Cookies] = None, user_agent: str = DEFAULT_USER_AGENT) -> Dict[str, str]:
    """Request headers for the ask endpoint; cookie only when configured."""
    headers = {
        "accept": "text/event-stream, text/plain, */*",
        "content-type": "application/json",
        "user-agent": user_agent,
    }
    cookie = format_cookie_header(cookies)
    if cookie:
        headers["cookie"] = cookie
    return headers


def timeout_from_config(config: Dict[str, Any]) -> httpx.Timeout:
    def seconds(key: str) -> Optional[float]:
        value = config.get(key)
        if value is None:
            return None
        try:
            return float(value) / 1000.0
        except (TypeError, ValueError):
            raise ConfigError(f"{key} must be a number of milliseconds, got {value!r}") from None

    return httpx.Timeout(
        connect=seconds("connect_timeout_ms"),
        read=seconds("read_timeout_ms"),
        write=30.0,
        pool=None,
    )


def search_config_from(config: Dict[str, Any], **overrides: Any) -> SearchConfig:
    """SearchConfig from the `search` section of a loaded config.

    Overrides set to None are ignored, except `model` which may be None.
    Unknown keys and a scalar `sources` raise ConfigError.
    """
    section = config.get("search") or {}
    if not isinstance(section, dict):
        raise ConfigError("search must be a mapping")
    values = dict(section)
    for key, value in overrides.items():
        if value is not None or key == "model":
            values[key] = value

    known = {f.name for f in dataclasses.fields(SearchConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(
            f"Unknown search setting(s): {', '.join(unknown)}. Known: {', '.join(sorted(known))}"
        )
    if "sources" in values:
        sources = values["sources"]
        if not isinstance(sources, (list, tuple)):
            raise ConfigError(f"search.sources must be a list, got {sources!r}")
        values["sources"] = tuple(sources)
    return SearchConfig(**values)


class PerplexityClient:
    """Async client for the ask endpoint.

    Holds no per-interaction state; concurrent calls each open their own
    connection and stream.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        version: str = DEFAULT_VERSION,
        cookies: Optional[Cookies] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.version = version
        self.cookies = cookies
        self.user_agent = user_agent
        self.timeout = timeout or httpx.Timeout(connect=5.0, read=None, write=30.0, pool=None)
        self._transport = transport

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "PerplexityClient":
        cookies = config.get("cookies")
        if not cookies and config.get("cookies_file"):
            cookies = load_cookies(config["cookies_file"])
        return cls(
            base_url=config.get("base_url") or DEFAULT_BASE_URL,
            version=config.get("version") or DEFAULT_VERSION,
            cookies=cookies,
            user_agent=config.get("user_agent") or DEFAULT_USER_AGENT,
            timeout=timeout_from_config(config),
            transport=transport,
        )

    # --- Request preparation ---

    def _prepare(self, query: str, config: Optional[SearchConfig]) -> Dict[str, Any]:
        """Validate and build the payload. Raises before any network I/O."""
        config = config or SearchConfig()
        if config.files:
            raise UnsupportedFeatureError("File upload")
        return build_payload(query, config, version=self.version)

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    @asynccontextmanager
    async def _open_stream(self, payload: Dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """POST the payload and hold the response open for streaming.

        The connection is released when the context exits, whether the body
        was fully read or not.
        """
        headers = build_headers(self.cookies, self.user_agent)
        logger.debug("POST %s%s headers=%s", self.base_url, ASK_PATH, redact_headers(headers))

        async with self._http_client() as http:
            async with http.stream("POST", ASK_PATH, json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise TransportStatusError(
                        response.status_code, body.decode("utf-8", errors="replace")
                    )
                yield response

    async def _messages(self, payload: Dict[str, Any]) -> AsyncGenerator[Any, None]:
        count = 0
        async with self._open_stream(payload) as response, \
                aclosing(sse_decode(response.aiter_bytes())) as records:
            async for record in records:
                if record.event == END_OF_STREAM_EVENT:
                    logger.debug("end_of_stream after %d messages", count)
                    return
                if record.event != MESSAGE_EVENT:
                    logger.debug("Ignoring %r record", record.event)
                    continue
                count += 1
                yield decode_record(record)
        logger.debug("Stream closed after %d messages", count)

    # --- Public API ---

    async def search(self, query: str, config: Optional[SearchConfig] = None) -> Any:
        """Run one interaction and return the last decoded message (None if none)."""
        payload = self._prepare(query, config)
        last = None
        async with aclosing(self._messages(payload)) as messages:
            async for message in messages:
                last = message
        return last

    def stream_search(
        self, query: str, config: Optional[SearchConfig] = None
    ) -> AsyncGenerator[Any, None]:
        """Yield each decoded message as soon as it arrives.

        Validation errors raise here, synchronously. Stopping early must go
        through aclose() (or contextlib.aclosing) so the response is released:

            async with aclosing(client.stream_search(q)) as messages:
                async for message in messages:
                    ...
        """
        payload = self._prepare(query, config)
        return self._messages(payload)
