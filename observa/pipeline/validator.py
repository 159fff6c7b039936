"""Schema validation for decoded event batches."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import TypeAdapter, ValidationError

from observa.errors import SchemaValidationError
from observa.events import CanonicalEvent

logger = logging.getLogger(__name__)

_batch_adapter = TypeAdapter(list[CanonicalEvent])


def format_validation_errors(error: ValidationError) -> list[dict[str, str]]:
    """Flatten pydantic errors into ``{"field": "0.attributes.llm_call.model", ...}``."""
    return [
        {
            "field": ".".join(str(part) for part in issue["loc"]),
            "message": issue["msg"],
        }
        for issue in error.errors()
    ]


def validate_events(records: list[Any]) -> list[CanonicalEvent]:
    """
    Validate the whole batch at once.

    Ingestion is all-or-nothing: any violation rejects every record, and the
    error lists every individual field violation rather than just the first.
    """
    try:
        return _batch_adapter.validate_python(records)
    except ValidationError as e:
        errors = format_validation_errors(e)
        logger.info(
            "INGEST_REJECTED: schema validation failed records=%d violations=%d",
            len(records),
            len(errors),
        )
        raise SchemaValidationError(errors) from e
