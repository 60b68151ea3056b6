"""
Tests for the aiohttp push server: WebSocket delivery, the last-view
endpoint and the health endpoint.
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import test_utils

from conftest import InMemoryStorage
from figaro.broadcaster import Broadcaster
from figaro.push_server import PushServer


async def _client(server: PushServer) -> test_utils.TestClient:
    client = test_utils.TestClient(test_utils.TestServer(server.build_app()))
    await client.start_server()
    return client


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestViewEndpoint:
    @pytest.mark.asyncio
    async def test_no_content_before_first_publish(self):
        bc = Broadcaster()
        client = await _client(PushServer(bc))
        try:
            resp = await client.get("/")
            assert resp.status == 204
        finally:
            await client.close()
            await bc.close()

    @pytest.mark.asyncio
    async def test_returns_last_published_view(self):
        bc = Broadcaster()
        await bc.publish(b'{"Bad":[],"Ok":[]}')
        await _wait_for(lambda: bc.last_published is not None)
        client = await _client(PushServer(bc))
        try:
            resp = await client.get("/")
            assert resp.status == 200
            assert resp.content_type == "application/json"
            assert await resp.json() == {"Bad": [], "Ok": []}
        finally:
            await client.close()
            await bc.close()


class TestHealthEndpoint:
    @pytest.mark.asyncio
    async def test_healthy(self):
        bc = Broadcaster()
        storage = InMemoryStorage()
        client = await _client(PushServer(bc, storage=storage, pool=object()))
        try:
            with patch("figaro.push_server.health_check", AsyncMock(return_value=True)):
                resp = await client.get("/health")
            body = await resp.json()
            assert resp.status == 200
            assert body["database"] is True
            assert body["subscribers"] == 0
            assert body["stats"]["total_channels"] == 0
        finally:
            await client.close()
            await bc.close()

    @pytest.mark.asyncio
    async def test_database_down(self):
        bc = Broadcaster()
        client = await _client(PushServer(bc, storage=InMemoryStorage(), pool=object()))
        try:
            with patch("figaro.push_server.health_check", AsyncMock(return_value=False)):
                resp = await client.get("/health")
            assert resp.status == 503
            assert (await resp.json())["stats"] == {}
        finally:
            await client.close()
            await bc.close()


class TestWebSocket:
    @pytest.mark.asyncio
    async def test_subscriber_receives_current_and_new_views(self):
        bc = Broadcaster()
        await bc.publish(b'{"Bad":[],"Ok":[]}')
        client = await _client(PushServer(bc))
        try:
            ws = await client.ws_connect("/ws")
            first = await ws.receive_str(timeout=2)
            assert json.loads(first) == {"Bad": [], "Ok": []}

            await bc.publish(b'{"Bad":[{"ID":"C1"}],"Ok":[]}')
            second = await ws.receive_str(timeout=2)
            assert json.loads(second)["Bad"][0]["ID"] == "C1"
            await ws.close()
        finally:
            await client.close()
            await bc.close()

    @pytest.mark.asyncio
    async def test_client_close_unsubscribes(self):
        bc = Broadcaster()
        client = await _client(PushServer(bc))
        try:
            ws = await client.ws_connect("/ws")
            await _wait_for(lambda: bc.subscriber_count == 1)

            await ws.close()

            await _wait_for(lambda: bc.subscriber_count == 0)
        finally:
            await client.close()
            await bc.close()

    @pytest.mark.asyncio
    async def test_write_timeout_drops_subscriber(self):
        bc = Broadcaster()
        server = PushServer(bc, write_timeout=0.05)
        client = await _client(server)

        async def stalled_send(self, data, compress=None):
            await asyncio.sleep(10)

        try:
            with patch("aiohttp.web.WebSocketResponse.send_str", stalled_send):
                ws = await client.ws_connect("/ws")
                await _wait_for(lambda: bc.subscriber_count == 1)
                await bc.publish(b"{}")
                await _wait_for(lambda: bc.subscriber_count == 0)
                await ws.close()
        finally:
            await client.close()
            await bc.close()
