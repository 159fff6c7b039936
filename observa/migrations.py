"""
Startup migrations for the Observa relational store.

Numbered files in ``sql/`` (``001_ingestion_tables.sql``, ...) are applied in
order and recorded in ``schema_migrations``. After migrating, the columns the
ingestion pipeline writes are checked; a missing column stops startup.
"""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path

from observa import config

logger = logging.getLogger(__name__)

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Columns written by the best-effort phase and read by the gates
REQUIRED_SCHEMA = {
    "public.trace_summaries": [
        "trace_id",
        "span_id",
        "tenant_id",
        "project_id",
        "latency_ms",
        "status",
        "status_text",
        "metadata_json",
        "conversation_id",
        "message_index",
    ],
    "public.conversations": [
        "conversation_id",
        "tenant_id",
        "message_count",
        "total_tokens",
        "total_cost",
        "has_issues",
    ],
    "public.user_sessions": [
        "session_id",
        "tenant_id",
        "message_count",
        "last_activity_at",
    ],
    "public.api_keys": [
        "key_hash",
        "tenant_id",
        "project_id",
        "key_prefix",
        "scopes",
        "allowed_origins",
        "revoked_at",
    ],
    "public.projects": [
        "id",
        "tenant_id",
        "monthly_event_quota",
        "monthly_event_count",
        "quota_period_start",
    ],
}


def checksum(sql: str) -> str:
    return hashlib.sha256(sql.encode()).hexdigest()[:16]


def discover_migrations(sql_dir: Path) -> list[tuple[int, Path]]:
    """Numbered migration files in ``sql_dir``, sorted by number."""
    if not sql_dir.exists():
        logger.warning("Migration directory %s does not exist", sql_dir)
        return []
    found = []
    for path in sql_dir.iterdir():
        match = MIGRATION_PATTERN.match(path.name)
        if match:
            found.append((int(match.group(1)), path))
    return sorted(found, key=lambda item: item[0])


async def ensure_migrations_table(conn) -> None:
    """Create ``schema_migrations`` if missing (safe under concurrent startup)."""
    await conn.execute("""
        DO $$
        BEGIN
            CREATE TABLE IF NOT EXISTS schema_migrations (
                id SERIAL PRIMARY KEY,
                filename VARCHAR(255) NOT NULL UNIQUE,
                applied_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
                checksum VARCHAR(64)
            );
        EXCEPTION
            WHEN duplicate_table THEN NULL;
            WHEN unique_violation THEN NULL;
        END $$;
    """)


async def get_applied_migrations(conn) -> set[str]:
    rows = await conn.fetch("SELECT filename FROM schema_migrations")
    return {row["filename"] for row in rows}


async def _record(conn, filename: str, digest: str) -> None:
    await conn.execute(
        """
        INSERT INTO schema_migrations (filename, checksum)
        VALUES ($1, $2)
        ON CONFLICT (filename) DO NOTHING
        """,
        filename,
        digest,
    )


async def apply_migration(conn, filepath: Path) -> bool:
    """
    Execute one migration file and record it.

    "already exists"/"duplicate" errors mean the objects are in place; the file
    is recorded as applied. Any other error propagates.
    """
    sql = filepath.read_text()
    try:
        await conn.execute(sql)
    except Exception as e:
        message = str(e).lower()
        if "already exists" not in message and "duplicate" not in message:
            logger.error("Failed to apply migration %s: %s", filepath.name, e)
            raise
        logger.info("Migration %s: objects already present", filepath.name)
        await _record(conn, filepath.name, "idempotent")
        return True

    await _record(conn, filepath.name, checksum(sql))
    logger.info("Applied migration: %s", filepath.name)
    return True


async def run_all_migrations(conn, sql_dir: Path | None = None) -> int:
    """Apply every pending numbered migration. Returns how many were applied."""
    sql_dir = sql_dir or config.SQL_DIR
    await ensure_migrations_table(conn)
    applied = await get_applied_migrations(conn)

    count = 0
    for number, path in discover_migrations(sql_dir):
        if path.name in applied:
            continue
        logger.info("Applying migration %03d: %s", number, path.name)
        await apply_migration(conn, path)
        count += 1

    if count:
        logger.info("Applied %d migrations", count)
    else:
        logger.info("All migrations already applied")
    return count


async def validate_schema(conn) -> list[str]:
    """List every missing required table or column. Empty means valid."""
    errors = []
    for table, columns in REQUIRED_SCHEMA.items():
        schema, name = table.split(".")
        exists = await conn.fetchval(
            """
            SELECT EXISTS (
                SELECT FROM information_schema.tables
                WHERE table_schema = $1 AND table_name = $2
            )
            """,
            schema,
            name,
        )
        if not exists:
            errors.append(f"CRITICAL: Table {table} does not exist!")
            continue

        rows = await conn.fetch(
            """
            SELECT column_name FROM information_schema.columns
            WHERE table_schema = $1 AND table_name = $2
            """,
            schema,
            name,
        )
        present = {row["column_name"] for row in rows}
        errors.extend(
            f"CRITICAL: Column {table}.{column} does not exist! Run migration to add it."
            for column in columns
            if column not in present
        )
    return errors


async def startup_migrations(conn, sql_dir: Path | None = None) -> None:
    """
    Migrate, then validate.

    Raises:
        RuntimeError: required tables/columns are still missing
    """
    await run_all_migrations(conn, sql_dir)

    errors = await validate_schema(conn)
    if errors:
        for error in errors:
            logger.error(error)
        raise RuntimeError(
            f"Schema validation failed with {len(errors)} errors. "
            "Database schema is incompatible with this release."
        )
    logger.info("Schema validation passed")
