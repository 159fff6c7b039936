"""
Conversation and session tracking.

Each trace summary that carries a ``conversation_id`` bumps its conversation's
running totals; one with a ``session_id`` bumps its session. Updates are pure
accumulations (``+`` and ``OR``) so concurrent ingestions may apply them in any
order.
"""

from __future__ import annotations

import logging
from typing import Any

from observa.pipeline.aggregator import TraceSummary

logger = logging.getLogger(__name__)


class ConversationStore:
    """PostgreSQL access for ``conversations`` and ``user_sessions``."""

    def __init__(self, pool: Any):
        self.pool = pool

    async def get_or_create_conversation(
        self,
        conversation_id: str,
        tenant_id: str,
        project_id: str,
        user_id: str | None = None,
    ) -> dict:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO conversations (
                    conversation_id, tenant_id, project_id, user_id,
                    started_at, last_message_at, message_count,
                    total_tokens, total_cost, has_issues
                ) VALUES ($1, $2, $3, $4, NOW(), NOW(), 0, 0, 0, FALSE)
                ON CONFLICT (tenant_id, conversation_id) DO NOTHING
                """,
                conversation_id,
                tenant_id,
                project_id,
                user_id,
            )
            row = await conn.fetchrow(
                """
                SELECT * FROM conversations
                WHERE conversation_id = $1 AND tenant_id = $2
                """,
                conversation_id,
                tenant_id,
            )
        return dict(row) if row else {}

    async def update_conversation_metrics(
        self,
        conversation_id: str,
        tenant_id: str,
        tokens_total: int | None,
        cost: float,
        has_issues: bool,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE conversations
                SET message_count = message_count + 1,
                    last_message_at = NOW(),
                    total_tokens = total_tokens + $1,
                    total_cost = total_cost + $2,
                    has_issues = has_issues OR $3
                WHERE conversation_id = $4 AND tenant_id = $5
                """,
                tokens_total or 0,
                cost,
                has_issues,
                conversation_id,
                tenant_id,
            )

    async def get_or_create_session(
        self,
        session_id: str,
        tenant_id: str,
        project_id: str,
        user_id: str | None = None,
        conversation_id: str | None = None,
    ) -> dict:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_sessions (
                    session_id, conversation_id, tenant_id, project_id, user_id,
                    started_at, last_activity_at, message_count
                ) VALUES ($1, $2, $3, $4, $5, NOW(), NOW(), 0)
                ON CONFLICT (tenant_id, session_id) DO NOTHING
                """,
                session_id,
                conversation_id,
                tenant_id,
                project_id,
                user_id,
            )
            row = await conn.fetchrow(
                """
                SELECT * FROM user_sessions
                WHERE session_id = $1 AND tenant_id = $2
                """,
                session_id,
                tenant_id,
            )
        return dict(row) if row else {}

    async def update_session_metrics(self, session_id: str, tenant_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE user_sessions
                SET message_count = message_count + 1,
                    last_activity_at = NOW()
                WHERE session_id = $1 AND tenant_id = $2
                """,
                session_id,
                tenant_id,
            )


class ConversationSessionUpdater:
    """Applies one trace summary to its conversation and session."""

    def __init__(self, store: ConversationStore):
        self.store = store

    async def apply(self, summary: TraceSummary) -> None:
        """Update conversation then session; each failure is isolated and logged."""
        if summary.conversation_id and summary.project_id:
            try:
                await self.store.get_or_create_conversation(
                    summary.conversation_id,
                    summary.tenant_id,
                    summary.project_id,
                    summary.user_id,
                )
                await self.store.update_conversation_metrics(
                    summary.conversation_id,
                    summary.tenant_id,
                    summary.tokens_total,
                    summary.cost,
                    summary.has_issues,
                )
                logger.debug(
                    "Updated conversation %s from trace %s",
                    summary.conversation_id,
                    summary.trace_id,
                )
            except Exception as e:
                logger.error(
                    "Failed to update conversation %s (trace %s): %s",
                    summary.conversation_id,
                    summary.trace_id,
                    e,
                )

        if summary.session_id and summary.project_id:
            try:
                await self.store.get_or_create_session(
                    summary.session_id,
                    summary.tenant_id,
                    summary.project_id,
                    summary.user_id,
                    summary.conversation_id,
                )
                await self.store.update_session_metrics(summary.session_id, summary.tenant_id)
                logger.debug(
                    "Updated session %s from trace %s", summary.session_id, summary.trace_id
                )
            except Exception as e:
                logger.error(
                    "Failed to update session %s (trace %s): %s",
                    summary.session_id,
                    summary.trace_id,
                    e,
                )
