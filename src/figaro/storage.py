"""
PostgreSQL storage for users, channels and messages.

Uses ``asyncpg``; every query is parameterised.  Bulk writes run inside a
single transaction with ``executemany`` and are idempotent upserts keyed by
natural identity:

- users by ``user_id``
- channels by ``channel_id`` (only ``name`` and ``archived`` are ever
  written by sync; the ``ok`` column is not part of any sync statement)
- messages by ``(user_id, channel_id, created_at)``; a changed text
  replaces the stored one
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import asyncpg

from figaro.errors import MalformedRecord, StorageError, StorageWriteError
from figaro.models import Channel, Message, User

logger = logging.getLogger("figaro.storage")

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

_UPSERT_USER_SQL = """
    INSERT INTO figaro.users (user_id, name, full_name, email)
    VALUES ($1, $2, $3, $4)
    ON CONFLICT (user_id)
    DO UPDATE SET
        name = EXCLUDED.name,
        full_name = EXCLUDED.full_name,
        email = EXCLUDED.email
    WHERE
        users.name IS DISTINCT FROM EXCLUDED.name
        OR users.full_name IS DISTINCT FROM EXCLUDED.full_name
        OR users.email IS DISTINCT FROM EXCLUDED.email
"""

_UPSERT_CHANNEL_SQL = """
    INSERT INTO figaro.channels (channel_id, name, archived)
    VALUES ($1, $2, $3)
    ON CONFLICT (channel_id)
    DO UPDATE SET
        name = EXCLUDED.name,
        archived = EXCLUDED.archived
    WHERE
        channels.name IS DISTINCT FROM EXCLUDED.name
        OR channels.archived IS DISTINCT FROM EXCLUDED.archived
"""

_UPSERT_MESSAGE_SQL = """
    INSERT INTO figaro.messages (user_id, channel_id, created_at, message_text)
    VALUES ($1, $2, $3, $4)
    ON CONFLICT (user_id, channel_id, created_at)
    DO UPDATE SET message_text = EXCLUDED.message_text
    WHERE messages.message_text IS DISTINCT FROM EXCLUDED.message_text
"""

_SET_ARCHIVED_SQL = "UPDATE figaro.channels SET archived = $2 WHERE channel_id = $1"
_RENAME_SQL = "UPDATE figaro.channels SET name = $2 WHERE channel_id = $1"

_CHANNELS_WITH_MESSAGES_SQL = """
    SELECT c.channel_id, c.name, c.ok, c.archived
    FROM figaro.channels AS c
    WHERE EXISTS (
        SELECT 1 FROM figaro.messages AS m WHERE m.channel_id = c.channel_id
    )
    ORDER BY c.channel_id
"""

_RECENT_MESSAGES_SQL = """
    SELECT user_id, channel_id, created_at, message_text
    FROM (
        SELECT
            user_id, channel_id, created_at, message_text,
            ROW_NUMBER() OVER (
                PARTITION BY channel_id
                ORDER BY created_at DESC, user_id
            ) AS rn
        FROM figaro.messages
        WHERE channel_id = ANY($1::text[])
    ) AS ranked
    WHERE rn <= $2
    ORDER BY channel_id, created_at DESC, user_id
"""


def _decode_channel(row: Any) -> Channel:
    channel_id = row["channel_id"]
    if not isinstance(channel_id, str) or not channel_id:
        raise MalformedRecord(channel_id, "missing channel_id")
    return Channel(
        id=channel_id,
        name=row["name"] or "",
        archived=bool(row["archived"]),
    )


def _decode_message(row: Any) -> Message:
    key = (row["user_id"], row["channel_id"], row["created_at"])
    created_at = row["created_at"]
    if not isinstance(created_at, datetime):
        raise MalformedRecord(key, "created_at is not a timestamp")
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if not isinstance(row["channel_id"], str):
        raise MalformedRecord(key, "channel_id is not a string")
    return Message(
        user_id=row["user_id"] or "",
        channel_id=row["channel_id"],
        created_at=created_at,
        text=row["message_text"] or "",
    )


def _decode_user(row: Any) -> User:
    user_id = row["user_id"]
    if not isinstance(user_id, str) or not user_id:
        raise MalformedRecord(user_id, "missing user_id")
    return User(
        id=user_id,
        name=row["name"] or "",
        full_name=row["full_name"] or "",
        email=row["email"] or "",
    )


class Storage:
    """Users, channels and messages in PostgreSQL.

    Args:
        pool: An ``asyncpg`` pool created by
              :func:`shared.db.get_connection_pool`.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # ------------------------------------------------------------------
    # Sync write path
    # ------------------------------------------------------------------

    async def _write_many(self, what: str, sql: str, rows: List[tuple]) -> int:
        if not rows:
            return 0
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(sql, rows)
        except _DB_ERRORS as exc:
            raise StorageWriteError(f"Cannot upsert {len(rows)} {what}: {exc}") from exc
        logger.debug("Upserted %d %s", len(rows), what)
        return len(rows)

    async def upsert_users(self, users: Iterable[User]) -> int:
        rows = [(u.id, u.name, u.full_name, u.email) for u in users]
        return await self._write_many("users", _UPSERT_USER_SQL, rows)

    async def upsert_channels(self, channels: Iterable[Channel]) -> int:
        """Upsert channel name and archived flag; ``ok`` is never touched."""
        rows = [(c.id, c.name, c.archived) for c in channels]
        return await self._write_many("channels", _UPSERT_CHANNEL_SQL, rows)

    async def upsert_messages(self, messages: Iterable[Message]) -> int:
        rows = [(m.user_id, m.channel_id, m.created_at, m.text) for m in messages]
        return await self._write_many("messages", _UPSERT_MESSAGE_SQL, rows)

    async def _update_channel(self, sql: str, channel_id: str, value: Any) -> None:
        try:
            status = await self._pool.execute(sql, channel_id, value)
        except _DB_ERRORS as exc:
            raise StorageWriteError(f"Cannot update channel {channel_id}: {exc}") from exc
        if status.endswith(" 0"):
            logger.info("Channel %s is not stored yet; update skipped", channel_id)

    async def set_channel_archived(self, channel_id: str, archived: bool) -> None:
        await self._update_channel(_SET_ARCHIVED_SQL, channel_id, archived)

    async def rename_channel(self, channel_id: str, name: str) -> None:
        await self._update_channel(_RENAME_SQL, channel_id, name)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def last_message_timestamp(self, channel_id: str) -> Optional[datetime]:
        """Return the newest stored message time for a channel, or ``None``."""
        try:
            ts = await self._pool.fetchval(
                """
                SELECT created_at
                FROM figaro.messages
                WHERE channel_id = $1
                ORDER BY created_at DESC
                LIMIT 1
                """,
                channel_id,
            )
        except _DB_ERRORS as exc:
            raise StorageError(f"Cannot read watermark for {channel_id}: {exc}") from exc
        if ts is not None and ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts

    async def channels_matching(self, pattern: str, message_limit: int) -> List[Channel]:
        """Return channels whose name matches ``pattern`` and that have messages.

        Each channel carries up to ``message_limit`` most recent messages,
        newest first.  Channels are ordered by id.  Rows that cannot be
        decoded are logged and skipped.

        Raises:
            re.error: If ``pattern`` is not a valid regular expression.
            StorageError: If the queries fail.
        """
        regex = re.compile(pattern)
        limit = max(1, int(message_limit))
        try:
            async with self._pool.acquire() as conn:
                channel_rows = await conn.fetch(_CHANNELS_WITH_MESSAGES_SQL)
                channels: Dict[str, Channel] = {}
                for row in channel_rows:
                    try:
                        channel = _decode_channel(row)
                    except MalformedRecord as exc:
                        logger.warning("Skipping channel row: %s", exc)
                        continue
                    if regex.search(channel.name):
                        channels[channel.id] = channel

                if not channels:
                    return []
                message_rows = await conn.fetch(
                    _RECENT_MESSAGES_SQL, list(channels), limit
                )
        except _DB_ERRORS as exc:
            raise StorageError(f"Cannot read channels: {exc}") from exc

        for row in message_rows:
            try:
                msg = _decode_message(row)
            except MalformedRecord as exc:
                logger.warning("Skipping message row: %s", exc)
                continue
            channel = channels.get(msg.channel_id)
            if channel is not None:
                channel.messages.append(msg)

        return [c for c in channels.values() if c.messages]

    async def users_by_id(self, ids: Sequence[str]) -> List[User]:
        if not ids:
            return []
        try:
            rows = await self._pool.fetch(
                """
                SELECT user_id, name, full_name, email
                FROM figaro.users
                WHERE user_id = ANY($1::text[])
                ORDER BY user_id
                """,
                sorted(set(ids)),
            )
        except _DB_ERRORS as exc:
            raise StorageError(f"Cannot read users: {exc}") from exc

        users: List[User] = []
        for row in rows:
            try:
                users.append(_decode_user(row))
            except MalformedRecord as exc:
                logger.warning("Skipping user row: %s", exc)
        return users

    async def get_sync_stats(self) -> Dict[str, Any]:
        """Return summary counts for monitoring."""
        try:
            async with self._pool.acquire() as conn:
                total_users = await conn.fetchval("SELECT COUNT(*) FROM figaro.users")
                total_channels = await conn.fetchval("SELECT COUNT(*) FROM figaro.channels")
                total_messages = await conn.fetchval("SELECT COUNT(*) FROM figaro.messages")
                newest = await conn.fetchval("SELECT MAX(created_at) FROM figaro.messages")
        except _DB_ERRORS as exc:
            raise StorageError(f"Cannot read stats: {exc}") from exc

        return {
            "total_users": total_users or 0,
            "total_channels": total_channels or 0,
            "total_messages": total_messages or 0,
            "newest_message": newest.isoformat() if newest else None,
        }
