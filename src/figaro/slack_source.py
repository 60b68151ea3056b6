"""
Slack chat source — snapshots of users and channels, paginated channel
history since a watermark, and a live stream of message events.

Web API calls go through :class:`ReadOnlySlackClient`.  Live events arrive
over Socket Mode; every envelope is acknowledged immediately and message
events are parsed into :class:`Message` objects and queued for
:meth:`SlackSource.live_events`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp
from slack_sdk.errors import SlackApiError
from slack_sdk.socket_mode.aiohttp import SocketModeClient
from slack_sdk.socket_mode.request import SocketModeRequest
from slack_sdk.socket_mode.response import SocketModeResponse
from slack_sdk.web.async_client import AsyncWebClient

from figaro.errors import SourceFetchError
from figaro.models import (
    SUBTYPE_MESSAGE_CHANGED,
    Channel,
    Message,
    MessagePage,
    User,
    format_ts,
    parse_ts,
)
from figaro.readonly_client import ReadOnlySlackClient

logger = logging.getLogger("figaro.slack_source")

_FETCH_ERRORS = (SlackApiError, aiohttp.ClientError, asyncio.TimeoutError)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def user_from_api(raw: Dict[str, Any]) -> User:
    profile = raw.get("profile") or {}
    return User(
        id=raw["id"],
        name=raw.get("name", "") or "",
        full_name=raw.get("real_name", "") or profile.get("real_name", "") or "",
        email=profile.get("email", "") or "",
    )


def channel_from_api(raw: Dict[str, Any]) -> Channel:
    return Channel(
        id=raw["id"],
        name=raw.get("name", "") or "",
        archived=bool(raw.get("is_archived", False)),
    )


def message_from_api(raw: Dict[str, Any], channel_id: str) -> Optional[Message]:
    """Build a :class:`Message` from a history entry or a message event.

    ``message_changed`` events are unwrapped into the edited message, which
    keeps its original ``ts``.  Returns ``None`` when the entry has no
    usable timestamp.
    """
    subtype = raw.get("subtype", "") or ""
    source = raw
    if subtype == SUBTYPE_MESSAGE_CHANGED:
        source = raw.get("message") or {}

    ts = source.get("ts")
    if not ts:
        logger.warning(
            "Dropping message without ts in channel %s (subtype=%r)", channel_id, subtype
        )
        return None
    try:
        created_at = parse_ts(ts)
    except ValueError:
        logger.warning("Dropping message with malformed ts=%r in channel %s", ts, channel_id)
        return None

    return Message(
        user_id=source.get("user", "") or "",
        channel_id=channel_id,
        created_at=created_at,
        text=source.get("text", "") or "",
        subtype=subtype,
        name=raw.get("name", "") or "",
    )


def _next_cursor(resp: Any) -> Optional[str]:
    metadata = resp.get("response_metadata") or {}
    return metadata.get("next_cursor") or None


# ---------------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------------


class SlackSource:
    """Chat source backed by the Slack Web API and Socket Mode.

    Args:
        web_client: Bot-token ``AsyncWebClient``; wrapped read-only.
        app_token: App-level token for Socket Mode.  Without it no live
            events are produced.
        page_size: ``limit`` used for every paginated Web API call.
        queue_size: Max buffered live events before the socket listener
            waits for the consumer.
    """

    def __init__(
        self,
        web_client: AsyncWebClient,
        app_token: Optional[str] = None,
        page_size: int = 200,
        queue_size: int = 1024,
    ) -> None:
        self._web_client = web_client
        self._api = ReadOnlySlackClient(web_client)
        self._app_token = app_token
        self._page_size = max(1, page_size)
        self._events: asyncio.Queue[Message] = asyncio.Queue(maxsize=max(1, queue_size))
        self._socket: SocketModeClient | None = None

    # ----- lifecycle -----------------------------------------------------

    async def __aenter__(self) -> "SlackSource":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Verify the bot token and open the Socket Mode connection."""
        try:
            auth = await self._api.auth_test()
        except _FETCH_ERRORS as exc:
            raise SourceFetchError(f"Slack auth.test failed: {exc}") from exc
        logger.info("Connected to Slack team %s as %s", auth.get("team"), auth.get("user"))

        if not self._app_token:
            logger.warning("No Slack app token configured; live events disabled.")
            return
        self._socket = SocketModeClient(app_token=self._app_token, web_client=self._web_client)
        self._socket.socket_mode_request_listeners.append(self._on_request)
        await self._socket.connect()
        logger.info("Slack Socket Mode connected.")

    async def close(self) -> None:
        if self._socket is not None:
            await self._socket.close()
            self._socket = None
            logger.info("Slack Socket Mode disconnected.")

    # ----- snapshots -----------------------------------------------------

    async def all_users(self) -> List[User]:
        users: List[User] = []
        async for raw in self._paginate("users_list", "members"):
            if raw.get("id"):
                users.append(user_from_api(raw))
        logger.info("Fetched %d users from Slack", len(users))
        return users

    async def all_channels(self) -> List[Channel]:
        channels: List[Channel] = []
        async for raw in self._paginate(
            "conversations_list",
            "channels",
            types="public_channel",
            exclude_archived=False,
        ):
            if raw.get("id"):
                channels.append(channel_from_api(raw))
        logger.info("Fetched %d channels from Slack", len(channels))
        return channels

    async def _paginate(self, method: str, key: str, **params: Any) -> AsyncIterator[Dict[str, Any]]:
        cursor: Optional[str] = None
        call = getattr(self._api, method)
        while True:
            try:
                resp = await call(limit=self._page_size, cursor=cursor, **params)
            except _FETCH_ERRORS as exc:
                raise SourceFetchError(f"Slack {method} failed: {exc}") from exc
            for item in resp.get(key) or []:
                yield item
            cursor = _next_cursor(resp)
            if not cursor:
                break

    # ----- history -------------------------------------------------------

    async def messages_since(
        self,
        channel_id: str,
        since: Optional[datetime],
    ) -> AsyncIterator[MessagePage]:
        """Yield pages of messages strictly newer than ``since``.

        ``since=None`` starts from the epoch.  Iteration ends after the
        page whose ``has_more`` flag is false.
        """
        oldest = format_ts(since)
        cursor: Optional[str] = None
        while True:
            try:
                resp = await self._api.conversations_history(
                    channel=channel_id,
                    oldest=oldest,
                    limit=self._page_size,
                    cursor=cursor,
                )
            except _FETCH_ERRORS as exc:
                raise SourceFetchError(
                    f"Slack conversations.history failed for {channel_id}: {exc}"
                ) from exc

            messages: List[Message] = []
            for raw in resp.get("messages") or []:
                if raw.get("type", "message") != "message":
                    continue
                msg = message_from_api(raw, channel_id)
                if msg is not None:
                    messages.append(msg)

            cursor = _next_cursor(resp)
            has_more = bool(resp.get("has_more")) and cursor is not None
            yield MessagePage(messages=messages, has_more=has_more, next_cursor=cursor)
            if not has_more:
                break

    # ----- live events ---------------------------------------------------

    async def _on_request(self, client: SocketModeClient, req: SocketModeRequest) -> None:
        await client.send_socket_mode_response(SocketModeResponse(envelope_id=req.envelope_id))
        if req.type != "events_api":
            logger.debug("Ignoring socket mode request type=%s", req.type)
            return

        event = (req.payload or {}).get("event") or {}
        if event.get("type") != "message" or not event.get("channel"):
            return
        msg = message_from_api(event, event["channel"])
        if msg is not None:
            await self._events.put(msg)

    async def live_events(self) -> AsyncIterator[Message]:
        """Yield live message events one at a time; never ends on its own."""
        while True:
            yield await self._events.get()
