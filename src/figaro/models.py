"""
Data model shared by the sync, classification and push layers.

Timestamps are timezone-aware UTC datetimes with microsecond precision,
which is exactly what a Slack ``ts`` string ("1700000000.123456") carries.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from figaro.errors import SerializationError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Message subtypes with special handling.
SUBTYPE_CHANNEL_ARCHIVE = "channel_archive"
SUBTYPE_CHANNEL_UNARCHIVE = "channel_unarchive"
SUBTYPE_CHANNEL_NAME = "channel_name"
SUBTYPE_MESSAGE_CHANGED = "message_changed"


def parse_ts(ts: str) -> datetime:
    """Convert a Slack timestamp string to an aware UTC datetime.

    Raises:
        ValueError: If ``ts`` is not of the form ``<seconds>[.<micros>]``.
    """
    seconds, _, fraction = str(ts).partition(".")
    micros = int((fraction + "000000")[:6]) if fraction else 0
    return EPOCH + timedelta(seconds=int(seconds), microseconds=micros)


def format_ts(dt: Optional[datetime]) -> str:
    """Convert a datetime to a Slack timestamp string.

    ``None`` maps to the epoch, so a channel without a watermark is read
    from its very first message.
    """
    if dt is None:
        dt = EPOCH
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - EPOCH
    seconds = delta // timedelta(seconds=1)
    return f"{seconds:010d}.{dt.microsecond:06d}"


def _format_rfc3339(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class User:
    id: str
    name: str = ""
    full_name: str = ""
    email: str = ""


@dataclass(frozen=True, slots=True)
class Message:
    """A Slack message or message-shaped event.

    ``subtype`` is empty for ordinary text messages.  ``name`` is only set
    for ``channel_name`` events and carries the new channel name.
    """

    user_id: str
    channel_id: str
    created_at: datetime
    text: str = ""
    subtype: str = ""
    name: str = ""

    @property
    def key(self) -> tuple[str, str, datetime]:
        return (self.user_id, self.channel_id, self.created_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "UserID": self.user_id,
            "ChannelID": self.channel_id,
            "CreatedAt": _format_rfc3339(self.created_at),
            "Text": self.text,
            "Type": self.subtype,
            "Name": self.name,
        }


@dataclass(slots=True)
class Channel:
    """A channel with an optional, newest-first list of recent messages."""

    id: str
    name: str = ""
    archived: bool = False
    ok: bool = False
    messages: List[Message] = field(default_factory=list)

    @property
    def latest(self) -> Optional[Message]:
        return self.messages[0] if self.messages else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ID": self.id,
            "Name": self.name,
            "Ok": self.ok,
            "Archived": self.archived,
            "Messages": [m.to_dict() for m in self.messages],
        }


@dataclass(slots=True)
class ChannelPair:
    """The classified view pushed to subscribers."""

    ok: List[Channel] = field(default_factory=list)
    bad: List[Channel] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Bad": [c.to_dict() for c in self.bad],
            "Ok": [c.to_dict() for c in self.ok],
        }

    def to_json(self) -> bytes:
        """Serialise to compact UTF-8 JSON.

        Key order is fixed by :meth:`to_dict`, so equal views always
        produce equal bytes.

        Raises:
            SerializationError: If the view contains unencodable values.
        """
        try:
            return json.dumps(
                self.to_dict(),
                ensure_ascii=False,
                separators=(",", ":"),
                allow_nan=False,
            ).encode("utf-8")
        except (TypeError, ValueError, UnicodeEncodeError) as exc:
            raise SerializationError(f"Cannot serialise channel pair: {exc}") from exc


@dataclass(slots=True)
class MessagePage:
    """One page of channel history returned by the chat source."""

    messages: List[Message]
    has_more: bool
    next_cursor: Optional[str] = None
