"""
Tenant/project authorization for event batches.

Every event must belong to the tenant (and, for project-scoped keys, the
project) of the calling credential. A single mismatch rejects the whole batch.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from observa.errors import ForbiddenError, InvalidPayloadError
from observa.events import CanonicalEvent

logger = logging.getLogger(__name__)

UUID_V4_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_uuid4(value: str | None) -> bool:
    if not value or not isinstance(value, str):
        return False
    return bool(UUID_V4_PATTERN.match(value))


@dataclass(frozen=True)
class CredentialScope:
    """What an authenticated API key may write to."""

    tenant_id: str
    project_id: str | None = None
    scopes: frozenset[str] = field(default_factory=lambda: frozenset({"ingest"}))
    key_id: str | None = None

    @property
    def is_project_scoped(self) -> bool:
        return bool(self.project_id)

    @property
    def rate_limit_key(self) -> str:
        return f"{self.tenant_id}:{self.project_id}" if self.project_id else self.tenant_id


def authorize_events(events: list[CanonicalEvent], scope: CredentialScope) -> None:
    """
    Check every event against the credential scope, in order.

    Raises:
        ForbiddenError: tenant or project mismatch (403)
        InvalidPayloadError: trace_id/span_id not a UUIDv4 (400)
    """
    for i, event in enumerate(events):
        if event.tenant_id != scope.tenant_id:
            logger.warning(
                "INGEST_REJECTED: tenant mismatch index=%d event_tenant=%s key_tenant=%s",
                i,
                event.tenant_id,
                scope.tenant_id,
            )
            raise ForbiddenError(
                "Event tenant_id does not match API key tenant",
                {
                    "event_index": i,
                    "event_tenant_id": event.tenant_id,
                    "key_tenant_id": scope.tenant_id,
                },
            )

        # Tenant-level keys may write to any project of the tenant
        if scope.is_project_scoped and event.project_id != scope.project_id:
            logger.warning(
                "INGEST_REJECTED: project mismatch index=%d event_project=%s key_project=%s",
                i,
                event.project_id,
                scope.project_id,
            )
            raise ForbiddenError(
                "Event project_id does not match API key project",
                {
                    "event_index": i,
                    "event_project_id": event.project_id,
                    "key_project_id": scope.project_id,
                },
            )

        if not is_valid_uuid4(event.trace_id) or not is_valid_uuid4(event.span_id):
            raise InvalidPayloadError.for_field(
                "Invalid UUID format",
                f"events[{i}].trace_id or span_id",
                "must be a valid UUIDv4",
            )
