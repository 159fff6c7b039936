"""
Observa ingestion service.

Run with::

    uvicorn observa.main:app --host 0.0.0.0 --port 8000
"""

import logging
import uuid
from datetime import datetime, timezone

import asyncpg
import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from observa import __version__, config, routes
from observa.auth import ApiKeyResolver, RateLimiter
from observa.migrations import startup_migrations
from observa.pipeline import (
    BackgroundDispatcher,
    ConversationSessionUpdater,
    ConversationStore,
    IngestionPipeline,
    QuotaAccountant,
    SignalEmitter,
    SinkForwarder,
    TraceSummaryStore,
)

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Observa Ingestion API",
    description="Canonical event ingestion for LLM observability",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Retry-After"],
)

app.include_router(routes.router)

db_pool = None
http_client = None
dispatcher = None


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Tag every request and response with an ``X-Request-ID``."""
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def build_services(pool, client, background=None) -> routes.IngestServices:
    """Wire the pipeline and its gates around a pool and a shared HTTP client."""
    quota = QuotaAccountant(pool)
    pipeline = IngestionPipeline(
        sink=SinkForwarder(client=client),
        summary_store=TraceSummaryStore(pool),
        conversation_updater=ConversationSessionUpdater(ConversationStore(pool)),
        signal_emitter=SignalEmitter(client=client),
        quota=quota,
        dispatcher=background,
    )
    return routes.IngestServices(
        pipeline=pipeline,
        resolver=ApiKeyResolver(pool),
        rate_limiter=RateLimiter(),
        quota=quota,
    )


@app.on_event("startup")
async def startup():
    """Create the pool, migrate, and start the best-effort workers."""
    global db_pool, http_client, dispatcher

    http_client = httpx.AsyncClient(timeout=config.SINK_TIMEOUT_SECONDS)
    dispatcher = BackgroundDispatcher()
    await dispatcher.start()

    try:
        db_pool = await asyncpg.create_pool(config.DATABASE_URL, min_size=2, max_size=10)
        logger.info("Database pool created")
        async with db_pool.acquire() as conn:
            await startup_migrations(conn, config.SQL_DIR)
    except (OSError, asyncpg.PostgresError) as e:
        # Ingest endpoint answers 503 until the database is reachable
        logger.error("Database unavailable at startup: %s", e)
        return

    routes.configure(build_services(db_pool, http_client, dispatcher))
    logger.info("Ingestion service ready (sink datasource=%s)", config.SINK_DATASOURCE)


@app.on_event("shutdown")
async def shutdown():
    """Drain background jobs, then release connections."""
    global db_pool, http_client, dispatcher

    routes.configure(None)
    if dispatcher:
        await dispatcher.stop()
    if http_client:
        await http_client.aclose()
    if db_pool:
        await db_pool.close()


@app.get("/")
async def root():
    """Service info."""
    return {"service": "Observa Ingestion API", "version": __version__, "status": "online"}


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy" if db_pool is not None else "degraded",
        "database": db_pool is not None,
        "background_queue": dispatcher.pending if dispatcher else 0,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
