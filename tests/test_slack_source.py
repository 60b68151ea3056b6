"""
Tests for the Slack chat source: payload parsing, pagination, history
watermarks and Socket Mode event handling.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from slack_sdk.errors import SlackApiError
from slack_sdk.socket_mode.request import SocketModeRequest

from conftest import at
from figaro.errors import SourceFetchError
from figaro.models import format_ts
from figaro.slack_source import (
    SlackSource,
    channel_from_api,
    message_from_api,
    user_from_api,
)


@pytest.fixture
def web_client():
    client = MagicMock()
    client.auth_test = AsyncMock(return_value={"ok": True, "team": "acme", "user": "figaro"})
    client.users_list = AsyncMock()
    client.conversations_list = AsyncMock()
    client.conversations_history = AsyncMock()
    return client


@pytest.fixture
def slack(web_client):
    return SlackSource(web_client, page_size=2)


def _page(key, items, cursor=""):
    return {"ok": True, key: items, "response_metadata": {"next_cursor": cursor}}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParsing:
    def test_user_from_api(self):
        user = user_from_api(
            {
                "id": "U1",
                "name": "alice",
                "real_name": "Alice A",
                "profile": {"email": "alice@corp.com"},
            }
        )
        assert (user.id, user.name, user.full_name, user.email) == (
            "U1",
            "alice",
            "Alice A",
            "alice@corp.com",
        )

    def test_user_without_profile(self):
        user = user_from_api({"id": "B1", "name": "bot"})
        assert user.email == ""

    def test_channel_from_api(self):
        ch = channel_from_api({"id": "C1", "name": "support", "is_archived": True})
        assert ch.id == "C1" and ch.name == "support" and ch.archived is True
        assert ch.ok is False

    def test_plain_message(self):
        msg = message_from_api({"type": "message", "user": "U1", "text": "hi", "ts": "100.000000"}, "C1")
        assert msg.key == ("U1", "C1", at(100))
        assert msg.text == "hi"
        assert msg.subtype == ""

    def test_message_changed_is_unwrapped(self):
        raw = {
            "type": "message",
            "subtype": "message_changed",
            "ts": "300.000000",
            "message": {"user": "U2", "text": "edited", "ts": "200.000000"},
        }
        msg = message_from_api(raw, "C1")
        assert msg.key == ("U2", "C1", at(200))
        assert msg.text == "edited"
        assert msg.subtype == "message_changed"

    def test_channel_name_event(self):
        raw = {
            "type": "message",
            "subtype": "channel_name",
            "user": "U1",
            "ts": "5.000000",
            "old_name": "old",
            "name": "new",
        }
        msg = message_from_api(raw, "C1")
        assert msg.subtype == "channel_name"
        assert msg.name == "new"

    def test_missing_ts_dropped(self):
        assert message_from_api({"type": "message", "text": "x"}, "C1") is None

    def test_malformed_ts_dropped(self):
        assert message_from_api({"type": "message", "ts": "abc"}, "C1") is None


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_users_follow_cursor(self, slack, web_client):
        web_client.users_list.side_effect = [
            _page("members", [{"id": "U1"}, {"id": "U2"}], cursor="next"),
            _page("members", [{"id": "U3"}, {"name": "no id"}]),
        ]

        users = await slack.all_users()

        assert [u.id for u in users] == ["U1", "U2", "U3"]
        assert web_client.users_list.await_count == 2
        assert web_client.users_list.call_args_list[1].kwargs["cursor"] == "next"

    @pytest.mark.asyncio
    async def test_channels_include_archived(self, slack, web_client):
        web_client.conversations_list.return_value = _page(
            "channels", [{"id": "C1", "name": "a", "is_archived": True}]
        )

        channels = await slack.all_channels()

        assert channels[0].archived is True
        kwargs = web_client.conversations_list.call_args.kwargs
        assert kwargs["types"] == "public_channel"
        assert kwargs["exclude_archived"] is False
        assert kwargs["limit"] == 2

    @pytest.mark.asyncio
    async def test_api_error_becomes_source_fetch_error(self, slack, web_client):
        web_client.users_list.side_effect = SlackApiError("ratelimited", {"ok": False})
        with pytest.raises(SourceFetchError):
            await slack.all_users()


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestMessagesSince:
    @pytest.mark.asyncio
    async def test_no_watermark_starts_at_epoch(self, slack, web_client):
        web_client.conversations_history.return_value = {"ok": True, "messages": [], "has_more": False}

        pages = [p async for p in slack.messages_since("C1", None)]

        assert len(pages) == 1
        assert pages[0].messages == []
        assert web_client.conversations_history.call_args.kwargs["oldest"] == "0000000000.000000"

    @pytest.mark.asyncio
    async def test_watermark_is_oldest(self, slack, web_client):
        web_client.conversations_history.return_value = {"ok": True, "messages": []}
        [p async for p in slack.messages_since("C1", at(200))]
        assert web_client.conversations_history.call_args.kwargs["oldest"] == format_ts(at(200))

    @pytest.mark.asyncio
    async def test_pages_until_has_more_is_false(self, slack, web_client):
        web_client.conversations_history.side_effect = [
            {
                "ok": True,
                "messages": [{"type": "message", "user": "U1", "text": "a", "ts": "1.0"}],
                "has_more": True,
                "response_metadata": {"next_cursor": "c2"},
            },
            {
                "ok": True,
                "messages": [
                    {"type": "message", "user": "U1", "text": "b", "ts": "2.0"},
                    {"type": "not_a_message", "ts": "3.0"},
                    {"type": "message", "text": "no ts"},
                ],
                "has_more": False,
            },
        ]

        pages = [p async for p in slack.messages_since("C1", None)]

        assert [[m.text for m in p.messages] for p in pages] == [["a"], ["b"]]
        assert pages[0].has_more is True
        assert pages[1].has_more is False
        assert web_client.conversations_history.call_args.kwargs["cursor"] == "c2"

    @pytest.mark.asyncio
    async def test_has_more_without_cursor_stops(self, slack, web_client):
        web_client.conversations_history.return_value = {"ok": True, "messages": [], "has_more": True}
        pages = [p async for p in slack.messages_since("C1", None)]
        assert len(pages) == 1
        assert pages[0].has_more is False

    @pytest.mark.asyncio
    async def test_timeout_becomes_source_fetch_error(self, slack, web_client):
        web_client.conversations_history.side_effect = asyncio.TimeoutError()
        with pytest.raises(SourceFetchError, match="C1"):
            [p async for p in slack.messages_since("C1", None)]


# ---------------------------------------------------------------------------
# Live events
# ---------------------------------------------------------------------------


class TestLiveEvents:
    @pytest.mark.asyncio
    async def test_connect_without_app_token(self, slack, web_client):
        await slack.connect()
        web_client.auth_test.assert_awaited_once()
        await slack.close()  # Should not raise

    @pytest.mark.asyncio
    async def test_auth_failure(self, slack, web_client):
        web_client.auth_test.side_effect = SlackApiError("invalid_auth", {"ok": False})
        with pytest.raises(SourceFetchError, match="auth.test"):
            await slack.connect()

    @pytest.mark.asyncio
    async def test_message_event_is_acked_and_queued(self, slack):
        socket = MagicMock()
        socket.send_socket_mode_response = AsyncMock()
        req = SocketModeRequest(
            type="events_api",
            envelope_id="env-1",
            payload={
                "event": {
                    "type": "message",
                    "channel": "C1",
                    "user": "U1",
                    "text": "live",
                    "ts": "42.000001",
                }
            },
        )

        await slack._on_request(socket, req)

        socket.send_socket_mode_response.assert_awaited_once()
        ack = socket.send_socket_mode_response.call_args.args[0]
        assert ack.envelope_id == "env-1"

        events = slack.live_events()
        msg = await asyncio.wait_for(events.__anext__(), timeout=1)
        assert msg.channel_id == "C1"
        assert msg.text == "live"
        await events.aclose()

    @pytest.mark.asyncio
    async def test_other_requests_are_acked_only(self, slack):
        socket = MagicMock()
        socket.send_socket_mode_response = AsyncMock()
        await slack._on_request(
            socket, SocketModeRequest(type="slash_commands", envelope_id="env-2", payload={})
        )
        await slack._on_request(
            socket,
            SocketModeRequest(
                type="events_api",
                envelope_id="env-3",
                payload={"event": {"type": "reaction_added", "channel": "C1"}},
            ),
        )

        assert socket.send_socket_mode_response.await_count == 2
        assert slack._events.empty()
