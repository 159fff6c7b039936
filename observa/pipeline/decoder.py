"""
Batch decoding for the ingest endpoint.

Turns a raw request body (NDJSON or JSON array) into an ordered list of untyped
records. Decoding is fail-fast: the first offending record aborts the batch.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any

from observa import config
from observa.errors import InvalidPayloadError, PayloadTooLargeError

logger = logging.getLogger(__name__)

NDJSON_CONTENT_TYPE = "application/x-ndjson"


def is_ndjson(content_type: str | None) -> bool:
    return NDJSON_CONTENT_TYPE in (content_type or "").lower()


def _reject_constant(name: str) -> None:
    raise ValueError(f"Non-standard JSON constant {name}")


def _finite_float(literal: str) -> float:
    value = float(literal)
    if not math.isfinite(value):
        raise ValueError(f"Number out of range {literal}")
    return value


def _loads(text: str) -> Any:
    """``json.loads`` that rejects NaN, Infinity and out-of-range numbers."""
    return json.loads(text, parse_constant=_reject_constant, parse_float=_finite_float)


def _reason(error: ValueError) -> str:
    if isinstance(error, json.JSONDecodeError):
        return f"Invalid JSON: {error.msg}"
    return f"Invalid JSON: {error}"


def check_event_size(size: int, index: int, field: str, limit: int) -> None:
    """Raise PayloadTooLargeError if a single record exceeds ``limit`` bytes."""
    if size > limit:
        raise PayloadTooLargeError(
            f"Event exceeds size limit ({field})",
            {
                "field": field,
                "limit": limit,
                "received": size,
                "limit_type": "event",
                "event_index": index,
            },
        )


def decode_ndjson(text: str, max_event_bytes: int) -> list[Any]:
    """Parse newline-delimited JSON. Blank lines are ignored."""
    lines = [line.strip() for line in text.split("\n")]
    lines = [line for line in lines if line]

    records = []
    for i, line in enumerate(lines):
        field = f"line_{i + 1}"
        check_event_size(len(line.encode("utf-8")), i, field, max_event_bytes)
        try:
            records.append(_loads(line))
        except ValueError as e:
            raise InvalidPayloadError.for_field("Invalid NDJSON format", field, _reason(e)) from e
    return records


def decode_json_array(text: str, max_event_bytes: int) -> list[Any]:
    """Parse a JSON array body and size-check each element."""
    try:
        body = _loads(text)
    except ValueError as e:
        raise InvalidPayloadError.for_field("Invalid JSON body", "body", _reason(e)) from e

    if not isinstance(body, list):
        raise InvalidPayloadError(
            "Request body must be an array of events",
            {"hint": "Send JSON array or NDJSON format (application/x-ndjson)"},
        )

    for i, record in enumerate(body):
        size = len(json.dumps(record, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))
        check_event_size(size, i, f"events[{i}]", max_event_bytes)
    return body


def decode_batch(
    body: bytes | str,
    content_type: str | None,
    max_event_bytes: int | None = None,
    max_batch_bytes: int | None = None,
) -> list[Any]:
    """
    Decode a request body into a list of records.

    Raises:
        PayloadTooLargeError: batch or a single record exceeds its limit (413)
        InvalidPayloadError: malformed body or empty batch (400)
    """
    max_event_bytes = max_event_bytes or config.MAX_EVENT_BYTES
    max_batch_bytes = max_batch_bytes or config.MAX_BATCH_BYTES

    raw = body.encode("utf-8") if isinstance(body, str) else body
    if len(raw) > max_batch_bytes:
        raise PayloadTooLargeError(
            "Event or batch exceeds size limit",
            {"limit": max_batch_bytes, "received": len(raw), "limit_type": "batch"},
        )

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidPayloadError("Request body must be UTF-8 encoded") from e

    if is_ndjson(content_type):
        records = decode_ndjson(text, max_event_bytes)
    else:
        records = decode_json_array(text, max_event_bytes)

    if not records:
        raise InvalidPayloadError("Empty event batch", {"hint": "Send at least one event"})

    logger.debug("Decoded %d records (ndjson=%s)", len(records), is_ndjson(content_type))
    return records
