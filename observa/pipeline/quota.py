"""
Monthly event quota per project.

Quotas are tracked on the ``projects`` row: ``monthly_event_quota``,
``monthly_event_count`` and ``quota_period_start``. A period lasts one calendar
month from its start; an expired period is reset to zero on the next check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from observa import config

logger = logging.getLogger(__name__)


class ProjectNotFoundError(LookupError):
    pass


def add_month(moment: datetime) -> datetime:
    """Same day-of-month next month, clamped to the month's last day."""
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    for day in (moment.day, 30, 29, 28):
        try:
            return moment.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    raise ValueError(f"Cannot advance {moment!r} by one month")


@dataclass
class QuotaStatus:
    allowed: bool
    quota: int
    used: int
    remaining: int
    reset_at: datetime


class QuotaAccountant:
    """Checks and increments per-project monthly event usage."""

    def __init__(self, pool: Any, default_quota: int | None = None):
        self.pool = pool
        self.default_quota = default_quota or config.DEFAULT_MONTHLY_EVENT_QUOTA

    async def check_quota(self, tenant_id: str, project_id: str) -> QuotaStatus:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT monthly_event_quota, monthly_event_count, quota_period_start
                FROM projects
                WHERE id = $1 AND tenant_id = $2
                """,
                project_id,
                tenant_id,
            )
            if row is None:
                raise ProjectNotFoundError(f"Project {project_id} not found")

            quota = row["monthly_event_quota"] or self.default_quota
            used = row["monthly_event_count"] or 0
            now = datetime.now(timezone.utc)
            period_start = row["quota_period_start"] or now
            if period_start.tzinfo is None:
                period_start = period_start.replace(tzinfo=timezone.utc)
            period_end = add_month(period_start)

            if now >= period_end:
                await conn.execute(
                    """
                    UPDATE projects
                    SET monthly_event_count = 0,
                        quota_period_start = NOW()
                    WHERE id = $1 AND tenant_id = $2
                    """,
                    project_id,
                    tenant_id,
                )
                logger.info("Quota period reset for project %s", project_id)
                used = 0
                period_end = add_month(now)

        remaining = max(0, quota - used)
        return QuotaStatus(
            allowed=remaining > 0,
            quota=quota,
            used=used,
            remaining=remaining,
            reset_at=period_end,
        )

    async def increment_usage(self, tenant_id: str, project_id: str | None, count: int) -> None:
        """Add ``count`` events to the project's usage. Tenant-wide keys are not tracked."""
        if not project_id:
            logger.warning("No project_id for tenant %s, skipping quota increment", tenant_id)
            return

        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE projects
                SET monthly_event_count = monthly_event_count + $1
                WHERE id = $2 AND tenant_id = $3
                """,
                count,
                project_id,
                tenant_id,
            )
