"""
Audit trail — records service-level events (startup, full resyncs,
failed live events, view publishes) to a JSON Lines file and to the
``figaro.audit_log`` table.

Events are queued and written by a single background task so callers on
the orchestrator loop never wait on disk or database I/O.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("/var/log/figaro/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO figaro.audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)


@dataclass(slots=True)
class _AuditRecord:
    json_line: str
    service: str
    action: str
    details_json: str
    success: bool

    def as_row(self) -> tuple[str, str, str, bool]:
        return (self.service, self.action, self.details_json, self.success)


class AuditLogger:
    """Queue-backed audit writer.

    Args:
        pool: ``asyncpg`` pool used for the ``audit_log`` inserts.
        log_path: JSON Lines file; ``None`` disables the file sink.
        queue_size: Max queued events before :meth:`log` waits.
        flush_batch_size: Max events written per batch.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        log_path: Optional[Path] = _DEFAULT_LOG_PATH,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._log_path = log_path
        self._queue: asyncio.Queue[_AuditRecord | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False

    def _ensure_worker(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.get_running_loop().create_task(
                self._worker(), name="figaro-audit-writer"
            )

    def _append_file(self, batch: list[_AuditRecord]) -> None:
        if self._log_path is None:
            return
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write("".join(item.json_line for item in batch))
        except OSError:
            logger.exception("Failed to write audit log file %s", self._log_path)

    async def _insert_rows(self, batch: list[_AuditRecord]) -> None:
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(_INSERT_AUDIT_SQL, [item.as_row() for item in batch])
        except Exception:
            logger.exception("Failed to write %d audit events to database", len(batch))

    async def _worker(self) -> None:
        while True:
            record = await self._queue.get()
            if record is None:
                self._queue.task_done()
                return

            batch = [record]
            stop = False
            while len(batch) < self._flush_batch_size and not self._queue.empty():
                item = self._queue.get_nowait()
                if item is None:
                    self._queue.task_done()
                    stop = True
                    break
                batch.append(item)

            self._append_file(batch)
            await self._insert_rows(batch)
            for _ in batch:
                self._queue.task_done()
            if stop:
                return

    async def log(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Queue an audit event.

        Args:
            service: Originating component, e.g. ``"synchronizer"``.
            action: Action identifier, e.g. ``"full_resync"``.
            details: JSON-serialisable metadata.
            success: Whether the action succeeded.
        """
        if self._closed:
            logger.debug("Dropping audit event after close: %s/%s", service, action)
            return
        payload = details or {}
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": service,
            "action": action,
            "details": payload,
            "success": success,
        }
        record = _AuditRecord(
            json_line=json.dumps(event, default=str) + "\n",
            service=service,
            action=action,
            details_json=json.dumps(payload, default=str),
            success=success,
        )
        self._ensure_worker()
        await self._queue.put(record)

    async def close(self) -> None:
        """Flush queued events and stop the writer task."""
        if self._closed:
            return
        self._closed = True
        if self._worker_task is not None:
            await self._queue.put(None)
            await self._worker_task
            self._worker_task = None
