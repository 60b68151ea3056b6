"""
Synchronizer — keeps storage an eventually-consistent mirror of Slack.

Two entry points:

``full_resync()``
    Users, then channels, then an incremental catch-up of every channel
    in parallel.  Only the user and channel steps can fail the resync;
    a failing channel catch-up is logged and its siblings carry on.

``apply_live_event(event)``
    One storage mutation for one live message event.  Errors are logged
    and never raised.

Both are idempotent: every write is an upsert on a natural key.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, List, Optional, Protocol, Sequence

from figaro.errors import FigaroError
from figaro.models import (
    SUBTYPE_CHANNEL_ARCHIVE,
    SUBTYPE_CHANNEL_NAME,
    SUBTYPE_CHANNEL_UNARCHIVE,
    SUBTYPE_MESSAGE_CHANGED,
    Channel,
    Message,
    MessagePage,
    User,
)
from figaro.progress import ChannelProgress, ResyncProgress
from shared.audit import AuditLogger

logger = logging.getLogger("figaro.synchronizer")


class ChatSource(Protocol):
    async def all_users(self) -> List[User]: ...

    async def all_channels(self) -> List[Channel]: ...

    def messages_since(
        self, channel_id: str, since: Optional[datetime]
    ) -> AsyncIterator[MessagePage]: ...


class SyncStorage(Protocol):
    """Write side of storage used by sync; never touches ``ok``."""

    async def upsert_users(self, users: Sequence[User]) -> int: ...

    async def upsert_channels(self, channels: Sequence[Channel]) -> int: ...

    async def upsert_messages(self, messages: Sequence[Message]) -> int: ...

    async def set_channel_archived(self, channel_id: str, archived: bool) -> None: ...

    async def rename_channel(self, channel_id: str, name: str) -> None: ...

    async def last_message_timestamp(self, channel_id: str) -> Optional[datetime]: ...


@dataclass(slots=True)
class ResyncResult:
    users: int = 0
    channels: int = 0
    messages: int = 0
    failed_channels: List[str] = field(default_factory=list)


class Synchronizer:
    """Applies Slack data to storage.

    Args:
        source: Chat source (see :class:`figaro.slack_source.SlackSource`).
        storage: Storage write path (see :class:`figaro.storage.Storage`).
        audit: Optional audit logger for resync and live-event outcomes.
    """

    def __init__(
        self,
        source: ChatSource,
        storage: SyncStorage,
        audit: AuditLogger | None = None,
    ) -> None:
        self._source = source
        self._storage = storage
        self._audit = audit

    async def _audit_log(self, action: str, details: dict[str, Any], success: bool) -> None:
        if self._audit is not None:
            await self._audit.log("synchronizer", action, details, success=success)

    # ------------------------------------------------------------------
    # Full resync
    # ------------------------------------------------------------------

    async def full_resync(self) -> ResyncResult:
        """Mirror all users and channels, then catch up every channel.

        Raises:
            SourceFetchError: If users or channels cannot be fetched.
            StorageWriteError: If users or channels cannot be stored.
        """
        logger.info("Full resync started.")
        result = ResyncResult()
        try:
            users = await self._source.all_users()
            result.users = await self._storage.upsert_users(users)
            logger.info("Users updated: %d", result.users)

            channels = await self._source.all_channels()
            result.channels = await self._storage.upsert_channels(channels)
            logger.info("Channels updated: %d", result.channels)
        except FigaroError as exc:
            logger.error("Full resync aborted: %s", exc)
            await self._audit_log("full_resync", {"error": str(exc)}, success=False)
            raise

        if not channels:
            logger.info("No channels found; nothing to catch up.")
        else:
            progress = ResyncProgress(total_channels=len(channels))
            counts = await asyncio.gather(
                *(self._catch_up_guarded(channel, progress) for channel in channels)
            )
            for channel, count in zip(channels, counts):
                if count is None:
                    result.failed_channels.append(channel.id)
                else:
                    result.messages += count

        logger.info(
            "Full resync complete: %d users, %d channels, %d messages, %d channels failed",
            result.users,
            result.channels,
            result.messages,
            len(result.failed_channels),
        )
        await self._audit_log(
            "full_resync",
            {
                "users": result.users,
                "channels": result.channels,
                "messages": result.messages,
                "failed_channels": result.failed_channels,
            },
            success=not result.failed_channels,
        )
        return result

    async def _catch_up_guarded(
        self, channel: Channel, progress: ResyncProgress
    ) -> Optional[int]:
        try:
            tracker = await self._catch_up(channel)
        except Exception:
            logger.exception("Catch-up failed for channel %s (%s)", channel.id, channel.name)
            progress.channel_failed()
            return None
        progress.channel_done(tracker)
        return tracker.stored

    async def catch_up_channel(self, channel: Channel) -> int:
        """Fetch and store messages newer than the channel's watermark.

        Each page is stored as soon as it arrives.  Only ordinary
        (empty-subtype) messages are stored; channel metadata comes from
        the channel snapshot.

        Returns:
            Number of messages written.
        """
        tracker = await self._catch_up(channel)
        return tracker.stored

    async def _catch_up(self, channel: Channel) -> ChannelProgress:
        tracker = ChannelProgress(channel.id, channel.name)
        since = await self._storage.last_message_timestamp(channel.id)
        async for page in self._source.messages_since(channel.id, since):
            texts = sorted(
                (m for m in page.messages if not m.subtype),
                key=lambda m: m.created_at,
            )
            tracker.update(await self._storage.upsert_messages(texts))
        tracker.log_complete()
        return tracker

    # ------------------------------------------------------------------
    # Live events
    # ------------------------------------------------------------------

    async def apply_live_event(self, event: Message) -> bool:
        """Apply one live event to storage.

        Returns:
            ``True`` if storage was mutated, ``False`` if the event was
            ignored or failed.
        """
        subtype = event.subtype
        try:
            if subtype in ("", SUBTYPE_MESSAGE_CHANGED):
                await self._storage.upsert_messages([event])
                logger.debug("Stored message %s in %s", event.created_at, event.channel_id)
            elif subtype == SUBTYPE_CHANNEL_ARCHIVE:
                await self._storage.set_channel_archived(event.channel_id, True)
                logger.info("Channel archived: %s", event.channel_id)
            elif subtype == SUBTYPE_CHANNEL_UNARCHIVE:
                await self._storage.set_channel_archived(event.channel_id, False)
                logger.info("Channel unarchived: %s", event.channel_id)
            elif subtype == SUBTYPE_CHANNEL_NAME:
                await self._storage.rename_channel(event.channel_id, event.name)
                logger.info("Channel %s renamed to %s", event.channel_id, event.name)
            else:
                logger.debug("Ignoring live event subtype=%r in %s", subtype, event.channel_id)
                return False
        except Exception as exc:
            logger.exception(
                "Cannot apply live event subtype=%r channel=%s", subtype, event.channel_id
            )
            await self._audit_log(
                "live_event",
                {"channel_id": event.channel_id, "subtype": subtype, "error": str(exc)},
                success=False,
            )
            return False
        return True
