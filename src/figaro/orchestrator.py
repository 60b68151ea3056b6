"""
Orchestrator — the single sequential loop that drives sync and push.

Two producer tasks feed one trigger queue:

- the resync timer, which enqueues a full-resync trigger every
  ``resync_interval`` seconds;
- the live-event pump, which forwards each Slack event as it arrives.

The loop handles one trigger at a time, then recomputes the classified
view and publishes it when its bytes differ from the last published
view.  Startup runs one full resync before anything else; if it fails the
service does not start.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import AsyncIterator, Callable, Optional, Union

from figaro.broadcaster import Broadcaster
from figaro.classifier import Classifier
from figaro.models import Message
from figaro.synchronizer import Synchronizer
from shared.audit import AuditLogger

logger = logging.getLogger("figaro.orchestrator")

_RESYNC = object()

Trigger = Union[Message, object]


async def sleep_with_shutdown(seconds: float, shutdown: threading.Event) -> bool:
    """Sleep for up to ``seconds`` while remaining responsive to shutdown.

    Returns:
        ``True`` if shutdown was requested.
    """
    remaining = max(0.0, seconds)
    while remaining > 0:
        if shutdown.is_set():
            return True
        tick = min(0.5, remaining)
        await asyncio.sleep(tick)
        remaining -= tick
    return shutdown.is_set()


class Orchestrator:
    """Sequences resyncs, live events and view publishing.

    Args:
        synchronizer: Applies Slack data to storage.
        classifier: Computes the classified view.
        broadcaster: Fans views out to subscribers.
        live_events: Zero-argument callable returning the live event stream.
        resync_interval: Seconds between periodic full resyncs.
        shutdown: Event set when the service should stop.
        audit: Optional audit logger.
        queue_size: Max pending triggers before the producers wait.
    """

    def __init__(
        self,
        synchronizer: Synchronizer,
        classifier: Classifier,
        broadcaster: Broadcaster,
        live_events: Callable[[], AsyncIterator[Message]],
        resync_interval: float = 3600.0,
        shutdown: Optional[threading.Event] = None,
        audit: AuditLogger | None = None,
        queue_size: int = 1024,
    ) -> None:
        self._sync = synchronizer
        self._classifier = classifier
        self._broadcaster = broadcaster
        self._live_events = live_events
        self._resync_interval = max(1.0, float(resync_interval))
        self._shutdown = shutdown or threading.Event()
        self._audit = audit
        self._triggers: asyncio.Queue[Trigger] = asyncio.Queue(maxsize=max(1, queue_size))
        self._last_view: Optional[bytes] = None

    @property
    def last_view(self) -> Optional[bytes]:
        return self._last_view

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run the mandatory startup resync and publish the first view.

        Raises:
            FigaroError: If the startup resync fails.
        """
        logger.info("Starting Figaro...")
        result = await self._sync.full_resync()
        if self._audit is not None:
            await self._audit.log(
                "orchestrator",
                "startup",
                {"users": result.users, "channels": result.channels},
                success=True,
            )
        await self.notify_subscribers()
        logger.info("Figaro started.")

    async def run(self) -> None:
        """Process triggers until shutdown is requested."""
        producers = [
            asyncio.create_task(self._resync_timer(), name="figaro-resync-timer"),
            asyncio.create_task(self._pump_live_events(), name="figaro-live-events"),
        ]
        try:
            while not self._shutdown.is_set():
                try:
                    trigger = await asyncio.wait_for(self._triggers.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                await self.handle(trigger)
        finally:
            for task in producers:
                task.cancel()
            await asyncio.gather(*producers, return_exceptions=True)
            logger.info("Orchestrator loop stopped.")

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def _resync_timer(self) -> None:
        while not await sleep_with_shutdown(self._resync_interval, self._shutdown):
            await self._triggers.put(_RESYNC)

    async def _pump_live_events(self) -> None:
        while not self._shutdown.is_set():
            try:
                async for event in self._live_events():
                    await self._triggers.put(event)
            except Exception:
                logger.exception("Live event stream failed; reconnecting")
            if await sleep_with_shutdown(5.0, self._shutdown):
                return

    # ------------------------------------------------------------------
    # Trigger handling
    # ------------------------------------------------------------------

    async def handle(self, trigger: Trigger) -> None:
        """Handle one trigger, then refresh subscribers."""
        if trigger is _RESYNC:
            try:
                await self._sync.full_resync()
            except Exception:
                logger.exception("Cannot update storage during periodic resync")
        elif isinstance(trigger, Message):
            await self._sync.apply_live_event(trigger)
        else:
            logger.warning("Ignoring unknown trigger %r", trigger)
            return
        await self.notify_subscribers()

    async def notify_subscribers(self) -> bool:
        """Recompute the view and publish it if it changed.

        Returns:
            ``True`` if a new view was published.

        Raises:
            SerializationError: If the view cannot be serialised.
        """
        try:
            pair = await self._classifier.classify()
        except Exception:
            logger.exception("Cannot notify subscribers: classification failed")
            return False

        data = pair.to_json()
        if data == self._last_view:
            logger.debug("View unchanged; publish suppressed")
            return False
        self._last_view = data
        await self._broadcaster.publish(data)
        logger.info("Published view: %d ok, %d bad channels", len(pair.ok), len(pair.bad))
        if self._audit is not None:
            await self._audit.log(
                "orchestrator",
                "publish",
                {"ok": len(pair.ok), "bad": len(pair.bad), "bytes": len(data)},
                success=True,
            )
        return True

