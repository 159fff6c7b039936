"""
Unit tests for IngestionPipeline orchestration.

Covers the all-or-nothing synchronous phase and isolation of the best-effort
phase.
"""

import json
from unittest.mock import AsyncMock

import pytest

from observa.errors import ForbiddenError, PayloadTooLargeError, SchemaValidationError, SinkWriteError
from observa.pipeline import BackgroundDispatcher, ConversationSessionUpdater, IngestionPipeline
from tests.mocks import (
    OTHER_TENANT_ID,
    PROJECT_ID,
    TENANT_ID,
    FakeConversationStore,
    FakeSummaryStore,
    RecordingSink,
    conversation_trace,
    llm_call,
    make_event,
    new_id,
)

NDJSON = "application/x-ndjson"


def as_ndjson(events):
    return "\n".join(json.dumps(e) for e in events)


class TestSynchronousPhase:
    @pytest.mark.asyncio
    async def test_event_count(self, pipeline, sink, scope):
        result = await pipeline.ingest(json.dumps([llm_call(), llm_call()]), "application/json", scope)
        assert result.event_count == 2
        assert len(sink.rows) == 2
        assert result.to_response() == {
            "success": True,
            "event_count": 2,
            "message": "Events ingested successfully",
        }

    @pytest.mark.asyncio
    async def test_single_foreign_event_rejects_all(self, pipeline, sink, summary_store, scope):
        batch = [llm_call() for _ in range(4)] + [llm_call(tenant_id=OTHER_TENANT_ID)]
        with pytest.raises(ForbiddenError):
            await pipeline.ingest(as_ndjson(batch), NDJSON, scope)
        assert sink.batches == []
        assert summary_store.summaries == {}

    @pytest.mark.asyncio
    async def test_schema_error_before_sink(self, pipeline, sink, scope):
        bad = llm_call()
        bad["attributes"]["llm_call"]["latency_ms"] = "fast"
        with pytest.raises(SchemaValidationError):
            await pipeline.ingest(json.dumps([bad]), "application/json", scope)
        assert sink.batches == []

    @pytest.mark.asyncio
    async def test_oversized_line_no_sink_write(self, pipeline, sink, scope, monkeypatch):
        monkeypatch.setattr("observa.config.MAX_EVENT_BYTES", 2048)
        batch = [llm_call() for _ in range(5)]
        batch[2]["attributes"]["llm_call"]["input"] = "x" * 4096

        with pytest.raises(PayloadTooLargeError) as exc_info:
            await pipeline.ingest(as_ndjson(batch), NDJSON, scope)

        assert "line_3" in exc_info.value.message
        assert sink.batches == []

    @pytest.mark.asyncio
    async def test_sink_failure_propagates_and_skips_best_effort(self, summary_store, scope):
        quota = AsyncMock()
        pipeline = IngestionPipeline(sink=RecordingSink(fail=True), summary_store=summary_store, quota=quota)

        with pytest.raises(SinkWriteError):
            await pipeline.ingest(json.dumps([llm_call()]), "application/json", scope)

        assert summary_store.summaries == {}
        quota.increment_usage.assert_not_called()

    @pytest.mark.asyncio
    async def test_secrets_never_reach_sink(self, pipeline, sink, scope):
        key = "sk-" + "Z" * 40
        await pipeline.ingest(json.dumps([llm_call(input=f"my key is {key}")]), "application/json", scope)
        assert key not in sink.rows[0]["attributes_json"]
        assert "[REDACTED_OPENAI_KEY]" in sink.rows[0]["attributes_json"]


class TestBestEffortPhase:
    @pytest.mark.asyncio
    async def test_trace_summary_stored(self, pipeline, summary_store, scope):
        trace = conversation_trace("conv-1")
        await pipeline.ingest(as_ndjson(trace), NDJSON, scope)

        summary = summary_store.summaries[trace[0]["trace_id"]]
        assert summary.latency_ms == 410
        assert summary.tokens_total == 120
        assert summary.status == 200

    @pytest.mark.asyncio
    async def test_reingest_doubles_conversation(self, pipeline, conversation_store, scope):
        body = as_ndjson(conversation_trace("conv-1", "sess-1"))
        await pipeline.ingest(body, NDJSON, scope)
        once = dict(conversation_store.conversations[(TENANT_ID, "conv-1")])
        await pipeline.ingest(body, NDJSON, scope)
        twice = conversation_store.conversations[(TENANT_ID, "conv-1")]

        assert twice["message_count"] == 2 * once["message_count"] == 2
        assert twice["total_tokens"] == 2 * once["total_tokens"] == 240
        assert twice["total_cost"] == pytest.approx(2 * once["total_cost"])
        assert conversation_store.sessions[(TENANT_ID, "sess-1")]["message_count"] == 2

    @pytest.mark.asyncio
    async def test_issue_detection_end_to_end(self, pipeline, summary_store, scope):
        trace_id = new_id()
        batch = [
            llm_call(trace_id),
            make_event("error", {"error_type": "rate_limit", "error_message": "429"}, trace_id=trace_id),
            make_event("error", {"error_type": "rate_limit", "error_message": "429"}, trace_id=trace_id),
            make_event(
                "tool_call",
                {"tool_name": "search", "result_status": "timeout", "latency_ms": 30000},
                trace_id=trace_id,
            ),
        ]
        await pipeline.ingest(as_ndjson(batch), NDJSON, scope)

        issues = summary_store.summaries[trace_id].metadata["issues"]
        assert issues["has_issues"] is True
        assert issues["error_events"] == 2
        assert issues["tool_timeouts"] == 1

    @pytest.mark.asyncio
    async def test_summary_failure_continues_with_next_trace(self, sink, scope):
        t1, t2 = new_id(), new_id()
        store = FakeSummaryStore(fail_for={t1})
        pipeline = IngestionPipeline(sink=sink, summary_store=store)

        result = await pipeline.ingest(json.dumps([llm_call(t1), llm_call(t2)]), "application/json", scope)

        assert result.event_count == 2
        assert list(store.summaries) == [t2]

    @pytest.mark.asyncio
    async def test_best_effort_failures_hidden(self, sink, scope):
        quota = AsyncMock()
        quota.increment_usage.side_effect = ConnectionError("db down")
        signals = AsyncMock()
        signals.emit.side_effect = RuntimeError("signals down")
        failing_store = AsyncMock()
        failing_store.upsert.side_effect = ConnectionError("db down")
        pipeline = IngestionPipeline(
            sink=sink, summary_store=failing_store, signal_emitter=signals, quota=quota
        )

        result = await pipeline.ingest(json.dumps([llm_call()]), "application/json", scope)

        assert result.event_count == 1
        signals.emit.assert_awaited_once()
        quota.increment_usage.assert_awaited_once_with(TENANT_ID, PROJECT_ID, 1)

    @pytest.mark.asyncio
    async def test_aggregation_crash_is_isolated(self, pipeline, sink, scope, mocker):
        mock_aggregate = mocker.patch.object(
            pipeline, "aggregate", new_callable=mocker.AsyncMock, side_effect=RuntimeError("boom")
        )

        result = await pipeline.ingest(json.dumps([llm_call()]), "application/json", scope)

        assert result.event_count == 1
        assert len(sink.rows) == 1
        mock_aggregate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tenant_key_uses_event_project_for_conversation(self, sink, tenant_scope):
        store = FakeConversationStore()
        pipeline = IngestionPipeline(
            sink=sink,
            summary_store=FakeSummaryStore(),
            conversation_updater=ConversationSessionUpdater(store),
        )
        await pipeline.ingest(as_ndjson(conversation_trace("conv-9")), NDJSON, tenant_scope)
        assert store.conversations[(TENANT_ID, "conv-9")]["project_id"] == PROJECT_ID

    @pytest.mark.asyncio
    async def test_jobs_go_to_running_dispatcher(self, sink, scope):
        dispatcher = BackgroundDispatcher(workers=1, queue_size=10, job_timeout=1)
        await dispatcher.start()
        store = FakeSummaryStore()
        pipeline = IngestionPipeline(sink=sink, summary_store=store, dispatcher=dispatcher)

        trace_id = new_id()
        await pipeline.ingest(json.dumps([llm_call(trace_id)]), "application/json", scope)
        await dispatcher.stop()

        assert trace_id in store.summaries
        assert dispatcher.completed == 1
