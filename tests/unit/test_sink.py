"""Tests for the analytical sink forwarder and signal emitter (httpx MockTransport)."""

import json

import httpx
import pytest

from observa.errors import SinkWriteError
from observa.events import CanonicalEvent
from observa.pipeline.normalizer import normalize_events
from observa.pipeline.scrubber import scrub_events
from observa.pipeline.signals import SignalEmitter, secret_signals
from observa.pipeline.sink import SinkForwarder, to_ndjson
from tests.mocks import llm_call

ROWS = [{"trace_id": "t1", "event_type": "llm_call"}, {"trace_id": "t2", "event_type": "error"}]


def forwarder(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SinkForwarder(host="https://sink.test", token="tok", datasource="events_ds", client=client, **kwargs)


class TestToNdjson:
    def test_one_line_per_row_with_trailing_newline(self):
        body = to_ndjson(ROWS)
        assert body.endswith("\n")
        lines = body.strip("\n").split("\n")
        assert [json.loads(line) for line in lines] == ROWS


class TestSinkForwarder:
    @pytest.mark.asyncio
    async def test_posts_ndjson_batch(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"successful_rows": 2, "quarantined_rows": 0})

        await forwarder(handler).forward(ROWS)

        assert len(seen) == 1
        request = seen[0]
        assert request.url.path == "/v0/events"
        assert request.url.params["name"] == "events_ds"
        assert request.url.params["format"] == "ndjson"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.content.decode() == to_ndjson(ROWS)

    @pytest.mark.asyncio
    async def test_empty_batch_is_noop(self):
        def handler(request):
            raise AssertionError("no request expected")

        await forwarder(handler).forward([])

    @pytest.mark.asyncio
    async def test_non_2xx_raises(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        with pytest.raises(SinkWriteError) as exc_info:
            await forwarder(handler).forward(ROWS)
        assert exc_info.value.status_code == 500
        assert exc_info.value.code == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_error_body_on_2xx_raises(self):
        def handler(request):
            return httpx.Response(200, json={"error": "invalid column type"})

        with pytest.raises(SinkWriteError, match="invalid column type"):
            await forwarder(handler).forward(ROWS)

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(SinkWriteError):
            await forwarder(handler).forward(ROWS)

    @pytest.mark.asyncio
    async def test_non_json_success_body_ok(self):
        def handler(request):
            return httpx.Response(200, text="ok")

        await forwarder(handler).forward(ROWS)


class TestSignalEmitter:
    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        emitter = SignalEmitter(url="")
        assert not emitter.enabled
        assert await emitter.emit(ROWS, []) == 0

    @pytest.mark.asyncio
    async def test_posts_rows_and_secret_signals(self):
        payloads = []

        def handler(request):
            payloads.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        events = scrub_events([CanonicalEvent.model_validate(llm_call(input="mail bob.smith@example.com"))])
        rows = normalize_events(events)

        sent = await SignalEmitter(url="https://signals.test/process", client=client).emit(rows, events)

        assert sent == 1
        assert payloads[0]["events"] == rows
        signal = payloads[0]["signals"][0]
        assert signal["signal_name"] == "contains_secrets"
        assert signal["metadata"]["secret_types"] == ["email"]

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        with pytest.raises(httpx.HTTPStatusError):
            await SignalEmitter(url="https://signals.test/process", client=client).emit(ROWS, [])

    def test_clean_events_produce_no_signals(self):
        events = scrub_events([CanonicalEvent.model_validate(llm_call())])
        assert secret_signals(events) == []
