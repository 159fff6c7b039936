"""
Event ingestion API.

    POST /api/v1/events/ingest

Accepts a JSON array (``application/json``) or NDJSON
(``application/x-ndjson``) batch of canonical events. Authenticated with a
``Bearer`` API key scoped to ``ingest``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from observa import config
from observa.auth import ApiKeyResolver, RateLimiter, authenticate, check_quota, check_rate_limit
from observa.errors import IngestionError, PayloadTooLargeError, RateLimitError
from observa.pipeline.ingest import IngestionPipeline
from observa.pipeline.quota import QuotaAccountant

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/events", tags=["events"])


@dataclass
class IngestServices:
    """Everything the ingest endpoint needs, wired at startup."""

    pipeline: IngestionPipeline
    resolver: ApiKeyResolver
    rate_limiter: RateLimiter
    quota: QuotaAccountant | None = None


_services: IngestServices | None = None


def configure(services: IngestServices | None) -> None:
    global _services
    _services = services


def get_services() -> IngestServices:
    if _services is None:
        raise HTTPException(status_code=503, detail="Ingestion service not available")
    return _services


def error_response(error: IngestionError, request_id: str | None = None) -> JSONResponse:
    headers = {}
    if isinstance(error, RateLimitError):
        headers["Retry-After"] = str(error.retry_after)
    if request_id:
        headers["X-Request-ID"] = request_id
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_response(),
        headers=headers,
    )


def _batch_too_large(limit: int, received: int) -> PayloadTooLargeError:
    return PayloadTooLargeError(
        "Event or batch exceeds size limit",
        {"limit": limit, "received": received, "limit_type": "batch"},
    )


async def read_body(request: Request, limit: int | None = None) -> bytes:
    """
    Read the request body, refusing more than ``limit`` bytes.

    A declared ``Content-Length`` over the limit is rejected before reading;
    otherwise the stream is read with a running byte cap.
    """
    limit = limit or config.MAX_BATCH_BYTES
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise _batch_too_large(limit, int(declared))

    chunks = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            raise _batch_too_large(limit, received)
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("/ingest")
async def ingest_events(
    request: Request,
    services: IngestServices = Depends(get_services),
) -> JSONResponse:
    """Ingest one batch of canonical events (all or nothing)."""
    request_id = getattr(request.state, "request_id", None)
    try:
        record = await authenticate(
            services.resolver,
            request.headers.get("authorization"),
            origin=request.headers.get("origin"),
            referer=request.headers.get("referer"),
        )
        scope = record.to_scope()
        check_rate_limit(services.rate_limiter, scope)
        await check_quota(services.quota, scope)

        body = await read_body(request)
        result = await services.pipeline.ingest(
            body, request.headers.get("content-type"), scope
        )
    except IngestionError as e:
        if e.status_code >= 500:
            logger.error("Ingestion failed [%s]: %s", request_id, e.message)
        return error_response(e, request_id)
    except Exception:
        logger.exception("Unexpected error during event ingestion [%s]", request_id)
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}},
        )

    return JSONResponse(status_code=200, content=result.to_response())
