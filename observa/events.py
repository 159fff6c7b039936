"""
Canonical event envelope.

One unified record format for every telemetry kind (LLM calls, tool calls,
retrievals, errors, feedback, lifecycle markers). The envelope is immutable once
validated; ``attributes`` carries one variant per ``event_type``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Union

from pydantic import (
    BaseModel,
    Field,
    NonNegativeFloat,
    NonNegativeInt,
    PrivateAttr,
    field_validator,
)

# Ints stay ints on the wire; floats are accepted where SDKs send them
Number = Union[NonNegativeInt, NonNegativeFloat]


class EventType(str, Enum):
    """Closed set of canonical event types."""

    LLM_CALL = "llm_call"
    TOOL_CALL = "tool_call"
    RETRIEVAL = "retrieval"
    ERROR = "error"
    FEEDBACK = "feedback"
    OUTPUT = "output"
    TRACE_START = "trace_start"
    TRACE_END = "trace_end"
    EMBEDDING = "embedding"
    VECTOR_DB_OPERATION = "vector_db_operation"
    CACHE_OPERATION = "cache_operation"
    AGENT_CREATE = "agent_create"


class Environment(str, Enum):
    DEV = "dev"
    PROD = "prod"


# =============================================================================
# Attribute variants
# =============================================================================


class LLMCallAttributes(BaseModel):
    model: str
    prompt_template_id: str | None = None
    input_tokens: int | None = Field(None, ge=0)
    output_tokens: int | None = Field(None, ge=0)
    total_tokens: int | None = Field(None, ge=0)
    latency_ms: Number
    cost: Number | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    finish_reason: str | None = None
    response_id: str | None = None
    system_fingerprint: str | None = None
    # Input/output (may be redacted or hashed by the SDK)
    input: str | None = None
    output: str | None = None
    input_hash: str | None = None
    output_hash: str | None = None


class ToolCallAttributes(BaseModel):
    tool_name: str
    args_hash: str | None = None
    args: dict[str, Any] | None = None
    result_status: Literal["success", "error", "timeout"]
    result: Any | None = None
    latency_ms: Number
    error_message: str | None = None


class RetrievalAttributes(BaseModel):
    retrieval_context_ids: list[str] | None = None
    retrieval_context_hashes: list[str] | None = None
    k: int | None = None
    latency_ms: Number
    top_k: int | None = None
    similarity_scores: list[float] | None = None


class ErrorAttributes(BaseModel):
    error_type: str
    error_message: str
    stack_trace: str | None = None
    context: dict[str, Any] | None = None


class FeedbackAttributes(BaseModel):
    type: Literal["like", "dislike", "rating", "correction"]
    rating: int | None = Field(None, ge=1, le=5)
    comment: str | None = None
    outcome: Literal["success", "failure", "partial"] | None = None


class OutputAttributes(BaseModel):
    final_output: str | None = None
    final_output_hash: str | None = None
    output_length: int | None = Field(None, ge=0)


class TraceStartAttributes(BaseModel):
    name: str | None = None
    metadata: dict[str, Any] | None = None


class TraceEndAttributes(BaseModel):
    total_latency_ms: Number | None = None
    total_cost: Number | None = None
    total_tokens: int | None = Field(None, ge=0)
    outcome: Literal["success", "error", "timeout"] | None = None


class EmbeddingAttributes(BaseModel):
    model: str
    dimension_count: int | None = Field(None, ge=0)
    input_count: int | None = Field(None, ge=0)
    token_count: int | None = Field(None, ge=0)
    latency_ms: Number | None = None
    cost: Number | None = None


class VectorDBOperationAttributes(BaseModel):
    operation_type: str
    index_name: str | None = None
    vector_dimensions: int | None = Field(None, ge=0)
    results_count: int | None = Field(None, ge=0)
    latency_ms: Number | None = None
    cost: Number | None = None


class CacheOperationAttributes(BaseModel):
    cache_backend: str | None = None
    hit_status: Literal["hit", "miss"]
    latency_ms: Number | None = None
    saved_cost: Number | None = None


class AgentCreateAttributes(BaseModel):
    agent_name: str
    agent_config: dict[str, Any] | None = None
    tools_bound: list[str] | None = None
    model: str | None = None


class EventAttributes(BaseModel):
    """Attribute bag keyed by event type. One variant is expected per event."""

    llm_call: LLMCallAttributes | None = None
    tool_call: ToolCallAttributes | None = None
    retrieval: RetrievalAttributes | None = None
    error: ErrorAttributes | None = None
    feedback: FeedbackAttributes | None = None
    output: OutputAttributes | None = None
    trace_start: TraceStartAttributes | None = None
    trace_end: TraceEndAttributes | None = None
    embedding: EmbeddingAttributes | None = None
    vector_db_operation: VectorDBOperationAttributes | None = None
    cache_operation: CacheOperationAttributes | None = None
    agent_create: AgentCreateAttributes | None = None


ATTRIBUTE_MODELS: dict[EventType, type[BaseModel]] = {
    EventType.LLM_CALL: LLMCallAttributes,
    EventType.TOOL_CALL: ToolCallAttributes,
    EventType.RETRIEVAL: RetrievalAttributes,
    EventType.ERROR: ErrorAttributes,
    EventType.FEEDBACK: FeedbackAttributes,
    EventType.OUTPUT: OutputAttributes,
    EventType.TRACE_START: TraceStartAttributes,
    EventType.TRACE_END: TraceEndAttributes,
    EventType.EMBEDDING: EmbeddingAttributes,
    EventType.VECTOR_DB_OPERATION: VectorDBOperationAttributes,
    EventType.CACHE_OPERATION: CacheOperationAttributes,
    EventType.AGENT_CREATE: AgentCreateAttributes,
}

# Every event type needs a registered variant and a slot in EventAttributes
_unregistered = {e.value for e in EventType} ^ set(EventAttributes.model_fields)
if _unregistered or set(ATTRIBUTE_MODELS) != set(EventType):
    raise RuntimeError(f"Event attribute registry out of sync: {sorted(_unregistered)}")


# =============================================================================
# Envelope
# =============================================================================


@dataclass
class ScrubbingMetadata:
    """Per-event secret scrubbing outcome. Never sent to the sink."""

    contains_secrets: bool = False
    secret_types: list[str] = field(default_factory=list)


class CanonicalEvent(BaseModel):
    """A single observability event."""

    # Required envelope
    tenant_id: str = Field(..., min_length=1, frozen=True)
    project_id: str = Field(..., min_length=1, frozen=True)
    environment: Environment = Field(..., frozen=True)
    trace_id: str = Field(..., min_length=1, frozen=True)
    span_id: str = Field(..., min_length=1, frozen=True)
    parent_span_id: str | None = Field(None, frozen=True)
    timestamp: str = Field(..., frozen=True)
    event_type: EventType = Field(..., frozen=True)

    # Correlation
    conversation_id: str | None = None
    session_id: str | None = None
    user_id: str | None = None
    agent_name: str | None = None
    version: str | None = None
    route: str | None = None

    attributes: EventAttributes

    _scrubbing: ScrubbingMetadata | None = PrivateAttr(default=None)

    @field_validator("timestamp")
    @classmethod
    def _check_iso_timestamp(cls, value: str) -> str:
        try:
            datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError("timestamp must be an ISO-8601 datetime string") from e
        return value

    @property
    def variant(self) -> BaseModel | None:
        """The attribute variant matching ``event_type``, or None if absent."""
        return getattr(self.attributes, self.event_type.value)

    @property
    def scrubbing(self) -> ScrubbingMetadata:
        return self._scrubbing or ScrubbingMetadata()

    def with_attributes(
        self,
        attributes: EventAttributes,
        scrubbing: ScrubbingMetadata | None = None,
    ) -> CanonicalEvent:
        """Copy of this event with replaced attributes; envelope is untouched."""
        updated = self.model_copy(update={"attributes": attributes})
        updated._scrubbing = scrubbing
        return updated
