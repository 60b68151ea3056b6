"""
Channel classifier — builds the ok/bad :class:`ChannelPair` from storage.

A channel is "ok" when the author of its most recent message has an email
address in one of the recognised domains.  Classification is recomputed
from stored state every time and never written back.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from typing import Iterable, List, Optional, Protocol, Sequence

from figaro.models import Channel, ChannelPair, Message, User

logger = logging.getLogger("figaro.classifier")


class ViewStorage(Protocol):
    async def channels_matching(self, pattern: str, message_limit: int) -> List[Channel]: ...

    async def users_by_id(self, ids: Sequence[str]) -> List[User]: ...


def is_in_domains(email: str, domains: Iterable[str]) -> bool:
    """Case-sensitive ``@domain`` suffix match."""
    return any(domain and email.endswith("@" + domain) for domain in domains)


def _latest_time(channel: Channel):
    return channel.messages[0].created_at


def sort_by_last_message(channels: List[Channel]) -> None:
    """Sort in place, oldest latest-message first.  Stable on ties."""
    channels.sort(key=_latest_time)


def _truncate(message: Message, limit: int) -> Message:
    if limit <= 0 or len(message.text) <= limit:
        return message
    return dataclasses.replace(message, text=message.text[:limit])


class Classifier:
    """Computes the classified view.

    Args:
        storage: Read side of storage.
        domains: Recognised email domains, e.g. ``["corp.com"]``.
        channel_pattern: Regular expression channel names must match.
        message_limit: Recent messages attached to each channel.
        message_chars: Max characters of message text in the view;
            ``0`` keeps full text.

    Raises:
        re.error: If ``channel_pattern`` is not a valid regular expression.
    """

    def __init__(
        self,
        storage: ViewStorage,
        domains: Sequence[str],
        channel_pattern: str = ".*",
        message_limit: int = 3,
        message_chars: int = 256,
    ) -> None:
        self._storage = storage
        self._domains = tuple(domains)
        self._pattern = re.compile(channel_pattern).pattern
        self._message_limit = max(1, message_limit)
        self._message_chars = max(0, message_chars)

    async def classify(self) -> ChannelPair:
        channels = await self._storage.channels_matching(self._pattern, self._message_limit)
        author_ids = sorted({c.messages[0].user_id for c in channels if c.messages})
        users = await self._storage.users_by_id(author_ids)
        email_by_id = {user.id: user.email for user in users}

        pair = ChannelPair()
        for channel in channels:
            if not channel.messages:
                continue
            email: Optional[str] = email_by_id.get(channel.messages[0].user_id)
            if email is None:
                logger.debug(
                    "No stored user %s for channel %s", channel.messages[0].user_id, channel.id
                )
            channel.ok = is_in_domains(email or "", self._domains)
            channel.messages = [_truncate(m, self._message_chars) for m in channel.messages]
            if channel.ok:
                pair.ok.append(channel)
            else:
                pair.bad.append(channel)

        sort_by_last_message(pair.ok)
        sort_by_last_message(pair.bad)
        logger.debug("Classified %d ok / %d bad channels", len(pair.ok), len(pair.bad))
        return pair

    async def render(self) -> bytes:
        """Classify and serialise.

        Raises:
            SerializationError: If the view cannot be encoded.
        """
        return (await self.classify()).to_json()
