"""
Observa ingestion pipeline.

decode -> validate -> scrub -> authorize -> normalize -> sink, followed by
best-effort trace aggregation, signal emission and quota accounting.
"""

from observa.pipeline.aggregator import (
    TraceSummary,
    TraceSummaryStore,
    calculate_cost,
    group_by_trace,
    summarize_trace,
    summarize_traces,
)
from observa.pipeline.background import BackgroundDispatcher
from observa.pipeline.conversations import ConversationSessionUpdater, ConversationStore
from observa.pipeline.decoder import decode_batch
from observa.pipeline.guard import CredentialScope, authorize_events, is_valid_uuid4
from observa.pipeline.ingest import IngestionPipeline, IngestResult
from observa.pipeline.normalizer import normalize_event, normalize_events, strip_nulls
from observa.pipeline.quota import QuotaAccountant
from observa.pipeline.scrubber import scrub_event, scrub_events
from observa.pipeline.signals import SignalEmitter
from observa.pipeline.sink import SinkForwarder
from observa.pipeline.validator import validate_events

__all__ = [
    "BackgroundDispatcher",
    "ConversationSessionUpdater",
    "ConversationStore",
    "CredentialScope",
    "IngestResult",
    "IngestionPipeline",
    "QuotaAccountant",
    "SignalEmitter",
    "SinkForwarder",
    "TraceSummary",
    "TraceSummaryStore",
    "authorize_events",
    "calculate_cost",
    "decode_batch",
    "group_by_trace",
    "is_valid_uuid4",
    "normalize_event",
    "normalize_events",
    "scrub_event",
    "scrub_events",
    "strip_nulls",
    "summarize_trace",
    "summarize_traces",
    "validate_events",
]
