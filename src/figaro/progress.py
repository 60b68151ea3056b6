"""
Catch-up progress tracking for full resyncs.

``ChannelProgress`` follows one channel's history pagination;
``ResyncProgress`` aggregates all channels of a resync.  Channels are
caught up concurrently, so pass-level lines report completion counts
rather than a position in a sequence.
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("figaro.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds, e.g. ``"45s"``, ``"2m 30s"``, ``"1h 15m"``."""
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


class ChannelProgress:
    """Tracks pages and stored messages for one channel's catch-up."""

    def __init__(self, channel_id: str, channel_name: str = "") -> None:
        self.channel_id = channel_id
        self.channel_name = channel_name or channel_id
        self.pages = 0
        self.stored = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    def update(self, stored: int) -> None:
        """Count one flushed page."""
        self.pages += 1
        self.stored += stored

    def log_complete(self) -> None:
        if self.stored:
            logger.info(
                '  Caught up "%s": %d messages in %d pages (%s)',
                self.channel_name,
                self.stored,
                self.pages,
                _format_duration(self.elapsed_seconds),
            )
        else:
            logger.debug('  "%s" is up to date', self.channel_name)


class ResyncProgress:
    """Aggregates catch-up results across every channel of a resync.

    Args:
        total_channels: Number of channels scheduled for catch-up.
        log_every: Emit a pass line after this many finished channels.
    """

    def __init__(self, total_channels: int, log_every: int = 25) -> None:
        self.total_channels = total_channels
        self.completed = 0
        self.failed = 0
        self.stored = 0
        self._log_every = max(1, log_every)
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def finished(self) -> int:
        return self.completed + self.failed

    def channel_done(self, channel: ChannelProgress) -> None:
        self.completed += 1
        self.stored += channel.stored
        self._maybe_log()

    def channel_failed(self) -> None:
        self.failed += 1
        self._maybe_log()

    def _maybe_log(self) -> None:
        if self.finished % self._log_every == 0 or self.finished == self.total_channels:
            self.log_pass_progress()

    def log_pass_progress(self) -> None:
        logger.info(
            "  Catch-up: %d/%d channels (%d failed), %d messages stored in %s",
            self.finished,
            self.total_channels,
            self.failed,
            self.stored,
            _format_duration(self.elapsed_seconds),
        )
