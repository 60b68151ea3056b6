"""
Database helpers — connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  The pool's ``max_size`` is
the upper bound on concurrent storage work, including the per-channel
catch-up tasks of a full resync.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")

_SCHEMA_SQL = """
CREATE SCHEMA IF NOT EXISTS figaro;

CREATE TABLE IF NOT EXISTS figaro.users (
    user_id     TEXT PRIMARY KEY,
    name        TEXT NOT NULL DEFAULT '',
    full_name   TEXT NOT NULL DEFAULT '',
    email       TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS figaro.channels (
    channel_id  TEXT PRIMARY KEY,
    name        TEXT NOT NULL DEFAULT '',
    ok          BOOLEAN NOT NULL DEFAULT FALSE,
    archived    BOOLEAN NOT NULL DEFAULT FALSE
);
CREATE INDEX IF NOT EXISTS channels_name_idx ON figaro.channels (name);

CREATE TABLE IF NOT EXISTS figaro.messages (
    user_id      TEXT NOT NULL,
    channel_id   TEXT NOT NULL,
    created_at   TIMESTAMPTZ NOT NULL,
    message_text TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (user_id, channel_id, created_at)
);
CREATE INDEX IF NOT EXISTS messages_channel_id_created_at_idx
    ON figaro.messages (channel_id, created_at DESC);

CREATE TABLE IF NOT EXISTS figaro.audit_log (
    id        BIGSERIAL PRIMARY KEY,
    timestamp TIMESTAMPTZ DEFAULT NOW(),
    service   TEXT NOT NULL,
    action    TEXT NOT NULL,
    details   JSONB,
    success   BOOLEAN NOT NULL
);
"""


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys:
                ``host``, ``port``, ``database``, ``user``, ``password``,
                and optionally ``min_size``, ``max_size``.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
        OSError: If the server is unreachable.
    """
    pool = await asyncpg.create_pool(
        host=config.get("host"),
        port=int(config.get("port", 5432)),
        database=config["database"],
        user=config.get("user"),
        password=config.get("password"),
        min_size=int(config.get("min_size", 2)),
        max_size=int(config.get("max_size", 10)),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user"),
        config.get("host") or "localhost",
        config["database"],
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create the ``figaro`` schema and its tables if they do not exist.

    Executed once at service startup.  Idempotent (uses IF NOT EXISTS).

    Tables:
        - ``users``: Slack users keyed by ``user_id``.
        - ``channels``: Slack channels keyed by ``channel_id``.
        - ``messages``: messages keyed by (user_id, channel_id, created_at).
        - ``audit_log``: structured audit events.
    """
    async with pool.acquire() as conn:
        await conn.execute(_SCHEMA_SQL)
    logger.info("Database schema initialised.")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Return ``True`` if a trivial query succeeds, ``False`` otherwise."""
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except Exception:
        logger.exception("Database health check failed")
        return False
