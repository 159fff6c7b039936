"""
Trace summary derivation.

Builds one dashboard-ready summary per trace straight from the validated batch,
so a trace is queryable as soon as ingestion returns, without waiting for the
analytical store or the signal pipeline.

A trace only gets a summary when the batch holds its ``llm_call`` event; the
``output``, ``trace_start`` and ``trace_end`` siblings enrich it when present.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from observa.events import CanonicalEvent, EventType

logger = logging.getLogger(__name__)

# USD per 1K tokens; unknown models use the default
MODEL_PRICING_PER_1K = {
    "gpt-4": 0.03,
    "gpt-4-turbo": 0.01,
    "gpt-3.5-turbo": 0.002,
    "gpt-3.5": 0.002,
}
DEFAULT_PRICE_PER_1K = 0.002


def calculate_cost(total_tokens: int | None, model: str | None) -> float:
    """Approximate cost of a call from its token count and model name."""
    if not total_tokens or not model:
        return 0.0
    price = MODEL_PRICING_PER_1K.get(model.lower(), DEFAULT_PRICE_PER_1K)
    return (total_tokens / 1000) * price


@dataclass
class TraceIssues:
    error_events: int = 0
    error_types: dict[str, int] = field(default_factory=dict)
    tool_failures: int = 0
    tool_timeouts: int = 0

    @property
    def has_issues(self) -> bool:
        return self.error_events > 0 or self.tool_failures > 0 or self.tool_timeouts > 0

    @property
    def status(self) -> int:
        return 500 if self.has_issues else 200

    @property
    def status_text(self) -> str:
        if not self.has_issues:
            return "OK"
        first = next(iter(self.error_types), "unknown")
        return f"error:{first}"

    def to_metadata(self) -> dict[str, Any]:
        return {
            "issues": {
                "has_issues": self.has_issues,
                "error_events": self.error_events,
                "error_types": dict(self.error_types),
                "tool_failures": self.tool_failures,
                "tool_timeouts": self.tool_timeouts,
            }
        }


@dataclass
class TraceSummary:
    """Per-trace summary row."""

    trace_id: str
    span_id: str
    parent_span_id: str | None
    timestamp: str
    tenant_id: str
    project_id: str
    environment: str
    query: str
    response: str
    response_length: int
    model: str
    tokens_prompt: int | None
    tokens_completion: int | None
    tokens_total: int | None
    latency_ms: float
    status: int
    status_text: str
    finish_reason: str | None = None
    response_id: str | None = None
    system_fingerprint: str | None = None
    issues: TraceIssues = field(default_factory=TraceIssues)
    conversation_id: str | None = None
    session_id: str | None = None
    user_id: str | None = None
    message_index: int | None = None

    @property
    def has_issues(self) -> bool:
        return self.issues.has_issues

    @property
    def cost(self) -> float:
        return calculate_cost(self.tokens_total, self.model or None)

    @property
    def metadata(self) -> dict[str, Any]:
        return self.issues.to_metadata()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        del data["issues"]
        data["metadata"] = self.metadata
        return data


def group_by_trace(events: list[CanonicalEvent]) -> dict[str, list[CanonicalEvent]]:
    """Group events by trace_id, keeping first-seen trace order."""
    groups: dict[str, list[CanonicalEvent]] = {}
    for event in events:
        groups.setdefault(event.trace_id, []).append(event)
    return groups


def _first(events: list[CanonicalEvent], event_type: EventType) -> CanonicalEvent | None:
    return next((e for e in events if e.event_type == event_type), None)


def detect_issues(events: list[CanonicalEvent]) -> TraceIssues:
    """
    Count error events and failing tool calls.

    A ``timeout`` tool call counts as both a failure and a timeout.
    """
    issues = TraceIssues()
    for event in events:
        if event.event_type == EventType.ERROR:
            issues.error_events += 1
            error = event.attributes.error
            error_type = (error.error_type if error else None) or "error"
            issues.error_types[error_type] = issues.error_types.get(error_type, 0) + 1
        elif event.event_type == EventType.TOOL_CALL:
            tool_call = event.attributes.tool_call
            status = tool_call.result_status if tool_call else None
            if status and status != "success":
                issues.tool_failures += 1
            if status == "timeout":
                issues.tool_timeouts += 1
    return issues


def _message_index(trace_start: CanonicalEvent | None) -> int | None:
    if trace_start is None or trace_start.attributes.trace_start is None:
        return None
    metadata = trace_start.attributes.trace_start.metadata or {}
    value = metadata.get("message_index")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def summarize_trace(
    trace_id: str,
    events: list[CanonicalEvent],
    project_id: str | None = None,
) -> TraceSummary | None:
    """
    Derive the summary for one trace group.

    Returns None when the group has no ``llm_call`` event (or its variant is
    missing). ``project_id`` is the credential's project; tenant-wide keys fall
    back to the anchor event's project.
    """
    anchor = _first(events, EventType.LLM_CALL)
    if anchor is None:
        return None
    llm = anchor.attributes.llm_call
    if llm is None:
        return None

    output_event = _first(events, EventType.OUTPUT)
    trace_start = _first(events, EventType.TRACE_START)
    trace_end = _first(events, EventType.TRACE_END)

    output = output_event.attributes.output if output_event else None
    end = trace_end.attributes.trace_end if trace_end else None

    timestamp = (
        (trace_start.timestamp if trace_start else None)
        or anchor.timestamp
        or datetime.now(timezone.utc).isoformat()
    )

    latency_ms = llm.latency_ms or 0
    if end is not None and end.total_latency_ms:
        latency_ms = end.total_latency_ms

    issues = detect_issues(events)

    return TraceSummary(
        trace_id=trace_id,
        span_id=anchor.span_id,
        parent_span_id=anchor.parent_span_id or None,
        timestamp=timestamp,
        tenant_id=anchor.tenant_id,
        project_id=project_id or anchor.project_id,
        environment=anchor.environment.value,
        query=llm.input or "",
        response=llm.output or (output.final_output if output else None) or "",
        response_length=len(llm.output or "")
        or (output.output_length if output else None)
        or 0,
        model=llm.model or "",
        tokens_prompt=llm.input_tokens or None,
        tokens_completion=llm.output_tokens or None,
        tokens_total=llm.total_tokens or None,
        latency_ms=latency_ms,
        status=issues.status,
        status_text=issues.status_text,
        finish_reason=llm.finish_reason or None,
        response_id=llm.response_id or None,
        system_fingerprint=llm.system_fingerprint or None,
        issues=issues,
        conversation_id=anchor.conversation_id or None,
        session_id=anchor.session_id or None,
        user_id=anchor.user_id or None,
        message_index=_message_index(trace_start),
    )


def summarize_traces(
    events: list[CanonicalEvent],
    project_id: str | None = None,
) -> list[TraceSummary]:
    """Summaries for every trace group that has an ``llm_call`` anchor."""
    summaries = []
    for trace_id, group in group_by_trace(events).items():
        try:
            summary = summarize_trace(trace_id, group, project_id)
        except (ValueError, TypeError, OverflowError) as e:
            logger.error("Failed to summarize trace %s: %s", trace_id, e)
            continue
        if summary is None:
            logger.debug("Trace %s has no llm_call event, skipping summary", trace_id)
            continue
        summaries.append(summary)
    return summaries


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class TraceSummaryStore:
    """Persists trace summaries to PostgreSQL, one row per (tenant_id, trace_id)."""

    UPSERT_QUERY = """
        INSERT INTO trace_summaries (
            trace_id, span_id, parent_span_id, timestamp,
            tenant_id, project_id, environment,
            query, response, response_length, model,
            tokens_prompt, tokens_completion, tokens_total,
            latency_ms, status, status_text,
            finish_reason, response_id, system_fingerprint, metadata_json,
            conversation_id, session_id, user_id, message_index,
            updated_at
        ) VALUES (
            $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13,
            $14, $15, $16, $17, $18, $19, $20, $21, $22, $23, $24, $25, NOW()
        )
        ON CONFLICT (tenant_id, trace_id) DO UPDATE SET
            span_id = EXCLUDED.span_id,
            parent_span_id = EXCLUDED.parent_span_id,
            timestamp = EXCLUDED.timestamp,
            environment = EXCLUDED.environment,
            query = EXCLUDED.query,
            response = EXCLUDED.response,
            response_length = EXCLUDED.response_length,
            model = EXCLUDED.model,
            tokens_prompt = EXCLUDED.tokens_prompt,
            tokens_completion = EXCLUDED.tokens_completion,
            tokens_total = EXCLUDED.tokens_total,
            latency_ms = EXCLUDED.latency_ms,
            status = EXCLUDED.status,
            status_text = EXCLUDED.status_text,
            finish_reason = EXCLUDED.finish_reason,
            response_id = EXCLUDED.response_id,
            system_fingerprint = EXCLUDED.system_fingerprint,
            metadata_json = EXCLUDED.metadata_json,
            conversation_id = EXCLUDED.conversation_id,
            session_id = EXCLUDED.session_id,
            user_id = EXCLUDED.user_id,
            message_index = EXCLUDED.message_index,
            updated_at = NOW()
    """

    def __init__(self, pool: Any):
        self.pool = pool

    async def upsert(self, summary: TraceSummary) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                self.UPSERT_QUERY,
                summary.trace_id,
                summary.span_id,
                summary.parent_span_id,
                _parse_timestamp(summary.timestamp),
                summary.tenant_id,
                summary.project_id,
                summary.environment,
                summary.query,
                summary.response,
                summary.response_length,
                summary.model,
                summary.tokens_prompt,
                summary.tokens_completion,
                summary.tokens_total,
                summary.latency_ms,
                summary.status,
                summary.status_text,
                summary.finish_reason,
                summary.response_id,
                summary.system_fingerprint,
                json.dumps(summary.metadata),
                summary.conversation_id,
                summary.session_id,
                summary.user_id,
                summary.message_index,
            )
