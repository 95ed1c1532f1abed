"""Tests for the interaction driver (collect-final and live-stream).

The transport is an httpx.MockTransport; response bodies are TrackingStream
instances that record whether the client released them.
"""

import asyncio
import json
import os
import sys
from contextlib import aclosing

import httpx
import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from payload_builder import FollowUp, SearchConfig
from pplx_client import (
    ASK_PATH,
    PerplexityClient,
    build_headers,
    search_config_from,
    timeout_from_config,
)
from pplx_errors import (
    ConfigError,
    InvalidModelError,
    PplxError,
    TransportStatusError,
    UnsupportedFeatureError,
)


def run(coro):
    """Run async test in event loop."""
    return asyncio.new_event_loop().run_until_complete(coro)


class TrackingStream(httpx.AsyncByteStream):
    """Response body double: yields fixed chunks, records aclose()."""

    def __init__(self, chunks):
        self.chunks = chunks
        self.chunks_sent = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            self.chunks_sent += 1
            yield chunk

    async def aclose(self):
        self.closed = True


def sse(event, data):
    return f"event: {event}\r\ndata: {data}\r\n\r\n".encode("utf-8")


def message_record(n):
    return sse("message", json.dumps({"text": json.dumps({"answer": f"part {n}"}), "n": n}))


class Backend:
    """Fake backend: captures requests, answers with a TrackingStream."""

    def __init__(self, chunks=(), status=200, body=None):
        self.requests = []
        self.stream = TrackingStream(list(chunks))
        self.status = status
        self.body = body

    def handler(self, request):
        self.requests.append(request)
        if self.body is not None:
            return httpx.Response(self.status, text=self.body)
        return httpx.Response(self.status, stream=self.stream)

    def client(self, **kwargs):
        return PerplexityClient(transport=httpx.MockTransport(self.handler), **kwargs)


# ── Headers and settings ──────────────────────────────────────────────


class TestHeaders:
    def test_default_headers(self):
        headers = build_headers(user_agent="ua/1")
        assert headers == {
            "accept": "text/event-stream, text/plain, */*",
            "content-type": "application/json",
            "user-agent": "ua/1",
        }

    def test_cookie_mapping(self):
        assert build_headers({"a": "1", "b": "2"})["cookie"] == "a=1; b=2"

    def test_cookie_string(self):
        assert build_headers("raw=value")["cookie"] == "raw=value"

    def test_timeout_from_config(self):
        timeout = timeout_from_config({"connect_timeout_ms": 2500, "read_timeout_ms": None})
        assert timeout.connect == 2.5
        assert timeout.read is None

    def test_timeout_from_string_values(self):
        # {env:...} interpolation always yields strings
        timeout = timeout_from_config({"connect_timeout_ms": "2000", "read_timeout_ms": "1500"})
        assert timeout.connect == 2.0
        assert timeout.read == 1.5

    def test_timeout_not_a_number(self):
        with pytest.raises(ConfigError, match="connect_timeout_ms"):
            timeout_from_config({"connect_timeout_ms": "soon"})

    def test_search_config_from(self):
        config = {"search": {"mode": "pro", "model": "sonar", "sources": ["web"], "language": "en-US"}}
        search = search_config_from(config, mode=None, language="fr-FR")
        assert search == SearchConfig(mode="pro", model="sonar", sources=("web",), language="fr-FR")

    def test_search_config_unknown_key(self):
        with pytest.raises(ConfigError, match="modle"):
            search_config_from({"search": {"modle": "pro"}})

    def test_search_config_scalar_sources(self):
        with pytest.raises(ConfigError, match="sources"):
            search_config_from({"search": {"sources": "web"}})

    def test_search_config_section_not_a_mapping(self):
        with pytest.raises(ConfigError):
            search_config_from({"search": "pro"})

    def test_config_error_is_pplx_error(self):
        with pytest.raises(PplxError) as exc_info:
            search_config_from({"search": {"bogus": 1}})
        assert exc_info.value.code == "invalid_config"

    def test_from_config(self):
        client = PerplexityClient.from_config({
            "base_url": "https://example.test/",
            "version": "3.0",
            "cookies": {"s": "1"},
            "user_agent": "ua",
            "connect_timeout_ms": 1000,
            "read_timeout_ms": 2000,
        })
        assert client.base_url == "https://example.test"
        assert client.version == "3.0"
        assert client.cookies == {"s": "1"}
        assert client.timeout.read == 2.0

    def test_from_config_cookie_file(self, tmp_path):
        path = tmp_path / "cookies.json"
        path.write_text(json.dumps([{"name": "s", "value": "v"}]))
        client = PerplexityClient.from_config({"cookies": None, "cookies_file": str(path)})
        assert client.cookies == {"s": "v"}


# ── Request ───────────────────────────────────────────────────────────


class TestRequest:
    def test_posts_payload_to_ask_endpoint(self):
        backend = Backend([message_record(1)])
        client = backend.client(cookies={"session": "abc"}, version="2.99")
        run(client.search("hello", SearchConfig(mode="pro", model="gpt-4o")))

        assert len(backend.requests) == 1
        request = backend.requests[0]
        assert request.method == "POST"
        assert request.url == "https://www.perplexity.ai" + ASK_PATH
        assert request.headers["cookie"] == "session=abc"
        assert request.headers["accept"] == "text/event-stream, text/plain, */*"
        body = json.loads(request.content)
        assert body["query_str"] == "hello"
        assert body["params"]["model_preference"] == "gpt4o"
        assert body["params"]["version"] == "2.99"

    def test_follow_up_linked(self):
        backend = Backend([message_record(1)])
        config = SearchConfig(follow_up=FollowUp(backend_uuid="prev-uuid"))
        run(backend.client().search("again", config))
        body = json.loads(backend.requests[0].content)
        assert body["params"]["last_backend_uuid"] == "prev-uuid"

    def test_invalid_model_raises_before_io(self):
        backend = Backend([message_record(1)])
        with pytest.raises(InvalidModelError):
            run(backend.client().search("q", SearchConfig(mode="pro", model="nope")))
        assert backend.requests == []

    def test_stream_search_validates_synchronously(self):
        backend = Backend([message_record(1)])
        with pytest.raises(InvalidModelError):
            backend.client().stream_search("q", SearchConfig(mode="auto", model="sonar"))
        assert backend.requests == []

    def test_files_unsupported(self):
        backend = Backend([message_record(1)])
        with pytest.raises(UnsupportedFeatureError):
            backend.client().stream_search("q", SearchConfig(files={"a.txt": b"x"}))
        assert backend.requests == []


# ── Collect-final ─────────────────────────────────────────────────────


class TestSearch:
    def test_returns_last_message_before_end_of_stream(self):
        backend = Backend([
            message_record(1), message_record(2), message_record(3),
            sse("end_of_stream", "{}"),
            message_record(4),
        ])
        result = run(backend.client().search("q"))
        assert result == {"text": {"answer": "part 3"}, "n": 3}
        assert backend.stream.closed

    def test_returns_last_message_when_stream_closes(self):
        backend = Backend([message_record(1), message_record(2), message_record(3)])
        result = run(backend.client().search("q"))
        assert result["n"] == 3
        assert backend.stream.closed

    def test_fragmented_stream(self):
        raw = b"".join([message_record(1), message_record(2), sse("end_of_stream", "")])
        chunks = [raw[i:i + 7] for i in range(0, len(raw), 7)]
        result = run(Backend(chunks).client().search("q"))
        assert result["n"] == 2

    def test_no_messages_returns_none(self):
        assert run(Backend([sse("end_of_stream", "")]).client().search("q")) is None
        assert run(Backend([]).client().search("q")) is None

    def test_non_json_message_returned_raw(self):
        backend = Backend([sse("message", "not json"), sse("end_of_stream", "")])
        assert run(backend.client().search("q")) == "not json"

    def test_other_events_ignored(self):
        backend = Backend([message_record(1), sse("heartbeat", "{}")])
        assert run(backend.client().search("q"))["n"] == 1

    def test_error_status_raises_with_excerpt(self):
        backend = Backend(status=403, body="Forbidden " + "x" * 500)
        with pytest.raises(TransportStatusError) as exc_info:
            run(backend.client().search("q"))
        err = exc_info.value
        assert err.status_code == 403
        assert len(err.body_excerpt) == 200
        assert err.body_excerpt.startswith("Forbidden")
        assert str(err).startswith("Request failed 403 - Forbidden")
        assert len(backend.requests) == 1

    def test_error_status_not_retried(self):
        backend = Backend(status=503, body="unavailable")
        with pytest.raises(TransportStatusError):
            run(backend.client().search("q"))
        assert len(backend.requests) == 1

    def test_error_status_releases_stream(self):
        backend = Backend([b"upstream exploded"], status=500)
        with pytest.raises(TransportStatusError, match="upstream exploded"):
            run(backend.client().search("q"))
        assert backend.stream.closed

    def test_transport_error_propagates(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = PerplexityClient(transport=httpx.MockTransport(handler))
        with pytest.raises(httpx.ConnectError):
            run(client.search("q"))


# ── Live-stream ───────────────────────────────────────────────────────


class TestStreamSearch:
    def test_yields_each_message_until_end_of_stream(self):
        backend = Backend([
            message_record(1), message_record(2),
            sse("end_of_stream", ""),
            message_record(3),
        ])

        async def consume():
            return [m["n"] async for m in backend.client().stream_search("q")]

        assert run(consume()) == [1, 2]
        assert backend.stream.closed

    def test_yields_until_stream_ends(self):
        backend = Backend([message_record(1), message_record(2)])

        async def consume():
            return [m["n"] async for m in backend.client().stream_search("q")]

        assert run(consume()) == [1, 2]
        assert backend.stream.closed

    def test_early_stop_releases_stream(self):
        backend = Backend([message_record(n) for n in range(1, 6)])

        async def consume():
            async with aclosing(backend.client().stream_search("q")) as messages:
                async for message in messages:
                    return message

        first = run(consume())
        assert first["n"] == 1
        assert backend.stream.closed
        assert backend.stream.chunks_sent < 5

    def test_explicit_aclose_after_first_element(self):
        backend = Backend([message_record(n) for n in range(1, 6)])

        async def consume():
            messages = backend.client().stream_search("q")
            first = await messages.__anext__()
            assert not backend.stream.closed
            await messages.aclose()
            return first

        assert run(consume())["n"] == 1
        assert backend.stream.closed

    def test_consumer_exception_releases_stream(self):
        backend = Backend([message_record(n) for n in range(1, 4)])

        async def consume():
            async with aclosing(backend.client().stream_search("q")) as messages:
                async for _ in messages:
                    raise RuntimeError("caller gave up")

        with pytest.raises(RuntimeError, match="caller gave up"):
            run(consume())
        assert backend.stream.closed

    def test_error_status_raised_on_first_pull(self):
        backend = Backend(status=429, body="slow down")

        async def consume():
            return [m async for m in backend.client().stream_search("q")]

        with pytest.raises(TransportStatusError) as exc_info:
            run(consume())
        assert exc_info.value.status_code == 429

    def test_concurrent_interactions_independent(self):
        backends = [Backend([message_record(n)]) for n in (1, 2, 3)]

        async def consume():
            return await asyncio.gather(*(b.client().search("q") for b in backends))

        results = run(consume())
        assert [r["n"] for r in results] == [1, 2, 3]
        assert all(b.stream.closed for b in backends)
