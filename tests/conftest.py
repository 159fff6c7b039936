"""Pytest configuration and shared fixtures for Observa tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from observa.auth import RateLimiter
from observa.pipeline import (
    ConversationSessionUpdater,
    CredentialScope,
    IngestionPipeline,
)
from tests.mocks import (
    PROJECT_ID,
    TENANT_ID,
    FakeConversationStore,
    FakeResolver,
    FakeSummaryStore,
    RecordingSink,
    mock_pool,
)

if TYPE_CHECKING:
    from fastapi import FastAPI


@pytest.fixture
def scope() -> CredentialScope:
    """Project-scoped ingest credential."""
    return CredentialScope(tenant_id=TENANT_ID, project_id=PROJECT_ID)


@pytest.fixture
def tenant_scope() -> CredentialScope:
    """Tenant-wide ingest credential (no project restriction)."""
    return CredentialScope(tenant_id=TENANT_ID)


@pytest.fixture
def mock_db_pool():
    """(pool, conn) pair where ``pool.acquire()`` yields ``conn``."""
    return mock_pool()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def conversation_store() -> FakeConversationStore:
    return FakeConversationStore()


@pytest.fixture
def summary_store() -> FakeSummaryStore:
    return FakeSummaryStore()


@pytest.fixture
def pipeline(sink, summary_store, conversation_store) -> IngestionPipeline:
    """Pipeline with in-memory collaborators; best-effort jobs run inline."""
    return IngestionPipeline(
        sink=sink,
        summary_store=summary_store,
        conversation_updater=ConversationSessionUpdater(conversation_store),
    )


@pytest.fixture
def app(pipeline) -> Generator[FastAPI, None, None]:
    """FastAPI app wired to the in-memory pipeline."""
    from observa import routes
    from observa.main import app as fastapi_app

    routes.configure(
        routes.IngestServices(
            pipeline=pipeline,
            resolver=FakeResolver(),
            rate_limiter=RateLimiter(requests_per_minute=1000),
        )
    )
    yield fastapi_app
    routes.configure(None)


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing the FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
