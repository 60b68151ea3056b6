"""
Broadcaster — fans the latest classified view out to every subscriber.

All registry changes and publishes go through one command queue drained
by a single arbitration task, so the subscriber set has exactly one
owner.  Each publish starts a new generation: the delivery tasks of the
previous generation are cancelled, then one delivery task per subscriber
is spawned for the new payload.

Delivery is a rendezvous: a payload is handed over only when the
subscriber is actually waiting in :meth:`Subscription.receive`.  A slow
subscriber therefore never sees a stale view after a newer one is
published; it may miss intermediate views entirely.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Dict, Optional, Set

logger = logging.getLogger("figaro.broadcaster")

_PUBLISH = "publish"
_ADD = "add"
_REMOVE = "remove"
_STOP = "stop"


class Subscription:
    """A subscriber's personal delivery handle."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self.received = 0
        self._waiters: asyncio.Queue[asyncio.Future[bytes]] = asyncio.Queue()

    async def receive(self) -> bytes:
        """Wait for the next payload addressed to this subscriber."""
        waiter: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()
        self._waiters.put_nowait(waiter)
        try:
            data = await waiter
        finally:
            if not waiter.done():
                waiter.cancel()
        self.received += 1
        return data

    async def _deliver(self, data: bytes) -> None:
        while True:
            waiter = await self._waiters.get()
            # Receivers that gave up leave cancelled futures behind.
            if not waiter.done():
                waiter.set_result(data)
                return

    def __repr__(self) -> str:
        return f"<Subscription {self.name or hex(id(self))}>"


class Broadcaster:
    """Latest-wins fan-out of serialised views."""

    def __init__(self) -> None:
        self._commands: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        # Owned by the arbitration task.
        self._subscribers: Set[Subscription] = set()
        self._inflight: Dict[Subscription, asyncio.Task[None]] = {}
        self._last: Optional[bytes] = None
        self._generation = 0

    @property
    def last_published(self) -> Optional[bytes]:
        return self._last

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _ensure_started(self) -> bool:
        """Start the arbitration task on first use; False once closed."""
        if self._closed:
            return False
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(
                self._serve(), name="figaro-broadcaster"
            )
        return True

    # ----- public API ----------------------------------------------------

    async def publish(self, data: bytes) -> None:
        """Supersede any delivery in progress with ``data``."""
        if not self._ensure_started():
            logger.debug("Publish after close dropped (%d bytes)", len(data))
            return
        await self._commands.put((_PUBLISH, data))

    async def subscribe(self, name: str = "") -> Subscription:
        """Register a subscriber; it is offered the latest view at once.

        After :meth:`close` the returned subscription is never registered
        and receives nothing.
        """
        sub = Subscription(name)
        if not self._ensure_started():
            logger.debug("Subscribe after close ignored: %r", sub)
            return sub
        await self._commands.put((_ADD, sub))
        return sub

    async def unsubscribe(self, sub: Subscription) -> None:
        if not self._ensure_started():
            return
        await self._commands.put((_REMOVE, sub))

    @contextlib.asynccontextmanager
    async def subscription(self, name: str = "") -> AsyncIterator[Subscription]:
        sub = await self.subscribe(name)
        try:
            yield sub
        finally:
            await self.unsubscribe(sub)

    async def close(self) -> None:
        """Stop the arbitration task and cancel in-flight deliveries.

        Idempotent.  Later calls to the public API are no-ops.
        """
        self._closed = True
        if self._task is None:
            return
        await self._commands.put((_STOP, None))
        await self._task
        self._task = None

    # ----- arbitration loop ----------------------------------------------

    async def _serve(self) -> None:
        logger.info("Broadcaster started.")
        while True:
            command, arg = await self._commands.get()
            if command == _PUBLISH:
                self._distribute(arg)
            elif command == _ADD:
                self._subscribers.add(arg)
                logger.debug("Subscriber added: %r (%d total)", arg, len(self._subscribers))
                if self._last is not None:
                    self._spawn(arg, self._last)
            elif command == _REMOVE:
                self._subscribers.discard(arg)
                task = self._inflight.pop(arg, None)
                if task is not None:
                    task.cancel()
                logger.debug("Subscriber removed: %r (%d total)", arg, len(self._subscribers))
            elif command == _STOP:
                self._cancel_inflight()
                self._subscribers.clear()
                logger.info("Broadcaster stopped.")
                return

    def _cancel_inflight(self) -> None:
        for task in self._inflight.values():
            task.cancel()
        self._inflight = {}

    def _distribute(self, data: bytes) -> None:
        self._cancel_inflight()
        self._generation += 1
        self._last = data
        for sub in self._subscribers:
            self._spawn(sub, data)
        logger.debug(
            "Publish generation %d: %d bytes to %d subscribers",
            self._generation,
            len(data),
            len(self._subscribers),
        )

    def _spawn(self, sub: Subscription, data: bytes) -> None:
        self._inflight[sub] = asyncio.get_running_loop().create_task(
            sub._deliver(data),
            name=f"figaro-push-{self._generation}",
        )
