"""
Push server — the browser-facing transport for the broadcaster.

Routes:
    ``GET /ws``      WebSocket; each delivered view is sent as a text frame.
    ``GET /``        Last published view as JSON (204 before the first one).
    ``GET /health``  Database health, storage stats and subscriber count.

A WebSocket subscriber is deregistered when the client closes the socket
or when a write fails or exceeds the write timeout.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import asyncpg
from aiohttp import WSMsgType, web

from figaro.broadcaster import Broadcaster, Subscription
from figaro.storage import Storage
from shared.db import health_check

logger = logging.getLogger("figaro.push_server")


class PushServer:
    """aiohttp server exposing the classified view.

    Args:
        broadcaster: Source of views for WebSocket subscribers.
        storage: Optional storage for ``/health`` stats.
        pool: Optional pool for the ``/health`` database probe.
        host: Bind address.
        port: Bind port.
        write_timeout: Seconds allowed for one WebSocket write.
    """

    def __init__(
        self,
        broadcaster: Broadcaster,
        storage: Optional[Storage] = None,
        pool: Optional[asyncpg.Pool] = None,
        host: str = "localhost",
        port: int = 8080,
        write_timeout: float = 30.0,
    ) -> None:
        self._broadcaster = broadcaster
        self._storage = storage
        self._pool = pool
        self._host = host
        self._port = port
        self._write_timeout = write_timeout
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self.handle_view)
        app.router.add_get("/ws", self.handle_ws)
        app.router.add_get("/health", self.handle_health)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("Push server listening on %s:%d", self._host, self._port)

    async def close(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Push server stopped.")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_view(self, request: web.Request) -> web.Response:
        data = self._broadcaster.last_published
        if data is None:
            return web.Response(status=204)
        return web.Response(body=data, content_type="application/json")

    async def handle_health(self, request: web.Request) -> web.Response:
        db_ok = True
        if self._pool is not None:
            db_ok = await health_check(self._pool)

        stats: Dict[str, Any] = {}
        if self._storage is not None and db_ok:
            try:
                stats = await self._storage.get_sync_stats()
            except Exception:
                logger.warning("Cannot read storage stats", exc_info=True)

        return web.json_response(
            {
                "database": db_ok,
                "subscribers": self._broadcaster.subscriber_count,
                "stats": stats,
            },
            status=200 if db_ok else 503,
        )

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        peer = request.remote or "unknown"
        logger.info("WebSocket subscriber connected: %s", peer)

        try:
            async with self._broadcaster.subscription(name=peer) as sub:
                closed = asyncio.create_task(self._wait_closed(ws))
                try:
                    await self._push_views(ws, sub, closed, peer)
                finally:
                    closed.cancel()
                    await asyncio.gather(closed, return_exceptions=True)
        finally:
            # Unsubscribed before the close handshake.
            await ws.close()

        logger.info("WebSocket subscriber disconnected: %s", peer)
        return ws

    async def _push_views(
        self,
        ws: web.WebSocketResponse,
        sub: Subscription,
        closed: asyncio.Task[None],
        peer: str,
    ) -> None:
        while not ws.closed:
            receive = asyncio.create_task(sub.receive())
            try:
                await asyncio.wait({receive, closed}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                pending = not receive.done()
                if pending:
                    receive.cancel()
            if pending:
                return
            try:
                await asyncio.wait_for(
                    ws.send_str(receive.result().decode("utf-8")),
                    timeout=self._write_timeout,
                )
            except (ConnectionError, RuntimeError, asyncio.TimeoutError) as exc:
                logger.info("Cannot write to WebSocket %s: %r", peer, exc)
                return

    @staticmethod
    async def _wait_closed(ws: web.WebSocketResponse) -> None:
        # Client frames carry no commands; read only to notice the close.
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.debug("WebSocket error: %r", ws.exception())
                break
