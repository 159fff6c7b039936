"""
Canonical event → analytical sink row.

The sink's column types are strict, which fixes two rules here:

* ``conversation_id``, ``session_id`` and ``user_id`` are non-nullable columns:
  absent or blank values are sent as ``""``, never ``null``.
* ``attributes_json`` is a typed JSON column that rejects literal nulls, so
  every null leaf is stripped before serialization.

Other optional envelope fields (``parent_span_id``, ``agent_name``,
``version``, ``route``) are sent as ``null`` when absent.
"""

from __future__ import annotations

import json
from typing import Any

from observa.events import ATTRIBUTE_MODELS, CanonicalEvent

REQUIRED_STRING_FIELDS = ("conversation_id", "session_id", "user_id")
NULLABLE_FIELDS = ("agent_name", "version", "route")

_STRIPPED = object()


def strip_nulls(value: Any) -> Any:
    """Recursively drop None values from dicts and lists."""
    cleaned = _strip(value)
    return None if cleaned is _STRIPPED else cleaned


def _strip(value: Any) -> Any:
    if value is None:
        return _STRIPPED
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            item = _strip(item)
            if item is not _STRIPPED:
                result[key] = item
        return result
    if isinstance(value, list):
        return [item for item in map(_strip, value) if item is not _STRIPPED]
    return value


def required_string(value: str | None) -> str:
    if value is None or not value.strip():
        return ""
    return value


def attributes_payload(event: CanonicalEvent) -> dict[str, Any]:
    """Attributes as plain JSON data, null leaves removed."""
    if event.event_type not in ATTRIBUTE_MODELS:
        raise ValueError(f"No attribute model registered for {event.event_type!r}")
    return strip_nulls(event.attributes.model_dump(mode="json")) or {}


def normalize_event(event: CanonicalEvent) -> dict[str, Any]:
    row: dict[str, Any] = {
        "tenant_id": event.tenant_id,
        "project_id": event.project_id,
        "environment": event.environment.value,
        "trace_id": event.trace_id,
        "span_id": event.span_id,
        "parent_span_id": event.parent_span_id,
        "timestamp": event.timestamp,
        "event_type": event.event_type.value,
    }
    for name in REQUIRED_STRING_FIELDS:
        row[name] = required_string(getattr(event, name))
    for name in NULLABLE_FIELDS:
        row[name] = getattr(event, name)
    row["attributes_json"] = json.dumps(
        attributes_payload(event), separators=(",", ":"), ensure_ascii=False
    )
    return row


def normalize_events(events: list[CanonicalEvent]) -> list[dict[str, Any]]:
    return [normalize_event(event) for event in events]
