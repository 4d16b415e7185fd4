"""Search activity logging for downstream analytics.

``ActivityLogger.log_search`` is synchronous and only enqueues; a single
worker task owns all writes. Write failures are logged inside the worker,
so nothing about logging can reach the request that produced the event.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from knowledge_engine.config import settings
from knowledge_engine.db import connect
from knowledge_engine.knowledge.models import utc_now_iso

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS search_activity (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id     TEXT NOT NULL,
    query        TEXT NOT NULL,
    mode         TEXT NOT NULL,
    result_count INTEGER NOT NULL,
    created_at   TEXT NOT NULL
)
"""

FLUSH_TIMEOUT_SECONDS = 5.0


class SearchActivityRecord(BaseModel):
    """Append-only log entry for one search request."""

    owner_id: str
    query: str
    mode: str
    result_count: int
    created_at: str = Field(default_factory=utc_now_iso)

    def to_row(self) -> tuple:
        return (self.owner_id, self.query, self.mode, self.result_count, self.created_at)


class ActivityLogger:
    """Fire-and-forget writer for search activity.

    Call ``start()`` once inside the running event loop and ``stop()`` on
    shutdown. Events logged before ``start()`` wait in the queue.
    """

    def __init__(self, db_path: Path | None = None, queue_size: int | None = None) -> None:
        self._db_path = db_path
        self._queue: asyncio.Queue[SearchActivityRecord] = asyncio.Queue(
            maxsize=queue_size if queue_size is not None else settings.activity_queue_size
        )
        self._worker: asyncio.Task | None = None
        self._initialised = False
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def log_search(self, owner_id: str, query: str, mode: str, result_count: int) -> None:
        """Queue a search event. Never blocks and never raises."""
        record = SearchActivityRecord(
            owner_id=owner_id, query=query, mode=mode, result_count=result_count
        )
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Activity queue full, dropping search event for %s", owner_id)

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="activity-logger")
        logger.info("Activity logger started")

    async def flush(self, timeout: float = FLUSH_TIMEOUT_SECONDS) -> None:
        """Wait until every queued event has been handled (or *timeout* passes)."""
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except TimeoutError:
            logger.warning("Activity flush timed out with %d events pending", self._queue.qsize())

    async def stop(self) -> None:
        """Drain pending events, then stop the worker."""
        if self._worker is None:
            return
        if self.running:
            await self.flush()
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.info("Activity logger stopped")

    # -- Worker ----------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await self._write(record)
            except Exception:
                logger.warning(
                    "Failed to log search activity for %s", record.owner_id, exc_info=True
                )
            finally:
                self._queue.task_done()

    async def _write(self, record: SearchActivityRecord) -> None:
        async with connect(self._db_path) as db:
            if not self._initialised:
                await db.execute_script((_CREATE_TABLE,))
                self._initialised = True
            await db.execute(
                """
                INSERT INTO search_activity (owner_id, query, mode, result_count, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                record.to_row(),
            )
            await db.commit()
