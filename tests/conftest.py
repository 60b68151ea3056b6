"""
In-memory fakes of the storage and chat-source boundaries, shared by the
synchronizer, classifier and orchestrator tests.
"""

import dataclasses
import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytest

from figaro.errors import SourceFetchError, StorageWriteError
from figaro.models import EPOCH, Channel, Message, MessagePage, User


def at(seconds: float) -> datetime:
    """UTC datetime ``seconds`` after the epoch."""
    return EPOCH + timedelta(seconds=seconds)


class InMemoryStorage:
    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.channels: Dict[str, dict] = {}
        self.messages: Dict[Tuple[str, str, datetime], Message] = {}
        self.fail_writes: set = set()
        self.upsert_calls: List[int] = []

    def _check(self, what: str) -> None:
        if what in self.fail_writes:
            raise StorageWriteError(f"{what} write failed")

    async def upsert_users(self, users):
        self._check("users")
        users = list(users)
        for user in users:
            self.users[user.id] = user
        return len(users)

    async def upsert_channels(self, channels):
        self._check("channels")
        channels = list(channels)
        for ch in channels:
            row = self.channels.setdefault(ch.id, {"ok": False})
            row.update(name=ch.name, archived=ch.archived)
        return len(channels)

    async def upsert_messages(self, messages):
        self._check("messages")
        messages = list(messages)
        self.upsert_calls.append(len(messages))
        for m in messages:
            self.messages[m.key] = Message(m.user_id, m.channel_id, m.created_at, m.text)
        return len(messages)

    async def set_channel_archived(self, channel_id, archived):
        self._check("channel")
        if channel_id in self.channels:
            self.channels[channel_id]["archived"] = archived

    async def rename_channel(self, channel_id, name):
        self._check("channel")
        if channel_id in self.channels:
            self.channels[channel_id]["name"] = name

    async def last_message_timestamp(self, channel_id) -> Optional[datetime]:
        times = [k[2] for k in self.messages if k[1] == channel_id]
        return max(times) if times else None

    async def channels_matching(self, pattern, message_limit):
        regex = re.compile(pattern)
        result = []
        for channel_id in sorted(self.channels):
            row = self.channels[channel_id]
            if not regex.search(row["name"]):
                continue
            msgs = sorted(
                (m for m in self.messages.values() if m.channel_id == channel_id),
                key=lambda m: (m.created_at, m.user_id),
                reverse=True,
            )[:message_limit]
            if msgs:
                result.append(
                    Channel(channel_id, row["name"], row["archived"], messages=list(msgs))
                )
        return result

    async def users_by_id(self, ids):
        return [self.users[i] for i in sorted(set(ids)) if i in self.users]

    async def get_sync_stats(self):
        return {
            "total_users": len(self.users),
            "total_channels": len(self.channels),
            "total_messages": len(self.messages),
        }

    def snapshot(self):
        return (
            dict(self.users),
            {k: dict(v) for k, v in self.channels.items()},
            dict(self.messages),
        )


class FakeSource:
    def __init__(self, page_size: int = 2) -> None:
        self.users: List[User] = []
        self.channels: List[Channel] = []
        self.history: Dict[str, List[Message]] = {}
        self.page_size = page_size
        self.fail: set = set()
        self.fail_after_pages: Dict[str, int] = {}
        self.calls: List[Tuple[str, Optional[datetime]]] = []
        self.live: List[Message] = []

    async def all_users(self):
        if "users" in self.fail:
            raise SourceFetchError("users.list failed")
        return list(self.users)

    async def all_channels(self):
        if "channels" in self.fail:
            raise SourceFetchError("conversations.list failed")
        return [dataclasses.replace(c, messages=[]) for c in self.channels]

    async def messages_since(self, channel_id, since):
        self.calls.append((channel_id, since))
        if channel_id in self.fail:
            raise SourceFetchError(f"history failed for {channel_id}")
        newer = sorted(
            (m for m in self.history.get(channel_id, []) if since is None or m.created_at > since),
            key=lambda m: m.created_at,
        )
        if not newer:
            yield MessagePage(messages=[], has_more=False)
            return
        page_limit = self.fail_after_pages.get(channel_id)
        for start in range(0, len(newer), self.page_size):
            if page_limit is not None and start // self.page_size >= page_limit:
                raise SourceFetchError(f"history failed mid-channel for {channel_id}")
            chunk = newer[start:start + self.page_size]
            yield MessagePage(messages=chunk, has_more=start + self.page_size < len(newer))

    async def live_events(self):
        for event in self.live:
            yield event


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def source():
    src = FakeSource()
    src.users = [
        User("U1", "alice", "Alice A", "alice@corp.com"),
        User("U2", "bob", "Bob B", "bob@other.com"),
    ]
    src.channels = [Channel("C1", "support-acme"), Channel("C2", "support-globex")]
    src.history = {
        "C1": [
            Message("U1", "C1", at(100), "hello"),
            Message("U2", "C1", at(200), "hi there"),
            Message("U1", "C1", at(150), "", subtype="channel_join"),
        ],
        "C2": [
            Message("U1", "C2", at(50), "ping"),
        ],
    }
    return src
