"""
Error taxonomy for event ingestion.

Every synchronous-phase failure is raised as an IngestionError subclass and
rendered by the route as::

    {"error": {"code": ..., "message": ..., "details": {...}}}
"""

from __future__ import annotations

from typing import Any


class IngestionError(Exception):
    """Base class for errors surfaced to the ingesting client."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_response(self) -> dict[str, Any]:
        """Serialize to the public error envelope."""
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return {"error": body}


class InvalidPayloadError(IngestionError):
    """Malformed JSON/NDJSON, not-an-array, empty batch, malformed ids."""

    code = "INVALID_PAYLOAD"
    status_code = 400

    @classmethod
    def for_field(cls, message: str, field: str, reason: str) -> InvalidPayloadError:
        return cls(
            message,
            {"validation_errors": [{"field": field, "message": reason}]},
        )


class PayloadTooLargeError(InvalidPayloadError):
    """A single record or the whole batch exceeds its byte limit."""

    code = "PAYLOAD_TOO_LARGE"
    status_code = 413


class SchemaValidationError(IngestionError):
    """One or more events violate the canonical event schema."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, validation_errors: list[dict[str, str]]):
        super().__init__(
            "Request validation failed",
            {"validation_errors": validation_errors},
        )
        self.validation_errors = validation_errors


class UnauthorizedError(IngestionError):
    code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenError(IngestionError):
    """Tenant/project scope mismatch between events and credential."""

    code = "FORBIDDEN"
    status_code = 403


class RateLimitError(IngestionError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, message: str, details: dict[str, Any] | None = None, retry_after: int = 0):
        super().__init__(message, details)
        self.retry_after = retry_after


class QuotaExceededError(RateLimitError):
    code = "QUOTA_EXCEEDED"


class SinkWriteError(IngestionError):
    """The analytical sink rejected or failed the batch write."""

    code = "INTERNAL_ERROR"
    status_code = 500
