"""
Ingestion pipeline orchestration.

Synchronous phase (must succeed before the client gets a 200)::

    decode -> validate -> scrub -> authorize -> normalize -> sink

Best-effort phase (never affects the response)::

    trace summaries + conversation/session updates
    signal emission
    quota increment

Best-effort jobs go to the BackgroundDispatcher when one is running, otherwise
they are awaited inline, each isolated from the others.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from observa.events import CanonicalEvent
from observa.pipeline.aggregator import TraceSummaryStore, summarize_traces
from observa.pipeline.background import BackgroundDispatcher, JobFactory, run_isolated
from observa.pipeline.conversations import ConversationSessionUpdater
from observa.pipeline.decoder import decode_batch
from observa.pipeline.guard import CredentialScope, authorize_events
from observa.pipeline.normalizer import normalize_events
from observa.pipeline.quota import QuotaAccountant
from observa.pipeline.scrubber import scrub_events
from observa.pipeline.signals import SignalEmitter
from observa.pipeline.sink import SinkForwarder
from observa.pipeline.validator import validate_events

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    event_count: int
    traces_summarized: int = 0

    def to_response(self) -> dict:
        return {
            "success": True,
            "event_count": self.event_count,
            "message": "Events ingested successfully",
        }


class IngestionPipeline:
    """Runs one ingestion call end to end."""

    def __init__(
        self,
        sink: SinkForwarder,
        summary_store: TraceSummaryStore | None = None,
        conversation_updater: ConversationSessionUpdater | None = None,
        signal_emitter: SignalEmitter | None = None,
        quota: QuotaAccountant | None = None,
        dispatcher: BackgroundDispatcher | None = None,
    ):
        self.sink = sink
        self.summary_store = summary_store
        self.conversation_updater = conversation_updater
        self.signal_emitter = signal_emitter
        self.quota = quota
        self.dispatcher = dispatcher

    async def ingest(
        self,
        body: bytes | str,
        content_type: str | None,
        scope: CredentialScope,
    ) -> IngestResult:
        """
        Ingest one raw request body on behalf of ``scope``.

        Raises:
            IngestionError: any synchronous-phase failure; nothing reaches the
                sink unless the whole batch passed every check
        """
        records = decode_batch(body, content_type)
        events = validate_events(records)
        events = scrub_events(events)
        authorize_events(events, scope)
        rows = normalize_events(events)

        await self.sink.forward(rows)
        logger.info(
            "Ingested %d events for tenant=%s project=%s",
            len(events),
            scope.tenant_id,
            scope.project_id or "*",
        )

        await self._schedule_best_effort(events, rows, scope)
        return IngestResult(event_count=len(events))

    async def _schedule_best_effort(
        self,
        events: list[CanonicalEvent],
        rows: list[dict],
        scope: CredentialScope,
    ) -> None:
        jobs: list[tuple[str, JobFactory]] = [
            ("trace_aggregation", lambda: self.aggregate(events, scope)),
        ]
        if self.signal_emitter is not None:
            jobs.append(("signal_emission", lambda: self.signal_emitter.emit(rows, events)))
        if self.quota is not None:
            jobs.append(
                (
                    "quota_increment",
                    lambda: self.quota.increment_usage(
                        scope.tenant_id, scope.project_id, len(events)
                    ),
                )
            )

        if self.dispatcher is not None and self.dispatcher.running:
            for name, factory in jobs:
                self.dispatcher.submit(name, factory)
            return

        for name, factory in jobs:
            await run_isolated(name, factory)

    async def aggregate(self, events: list[CanonicalEvent], scope: CredentialScope) -> int:
        """
        Persist trace summaries and roll them into conversations and sessions.

        A failed summary write skips that trace's conversation/session update
        and moves on to the next trace. Returns the number of summaries stored.
        """
        summaries = summarize_traces(events, scope.project_id)
        stored = 0
        for summary in summaries:
            if self.summary_store is not None:
                try:
                    await self.summary_store.upsert(summary)
                    stored += 1
                except Exception as e:
                    logger.error("Failed to store trace summary %s: %s", summary.trace_id, e)
                    continue
            if self.conversation_updater is not None:
                await self.conversation_updater.apply(summary)

        if summaries:
            logger.debug("Stored %d/%d trace summaries", stored, len(summaries))
        return stored
