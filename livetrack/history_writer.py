"""
Background writer that moves GPS history entries off the ingest path
"""

import asyncio
import logging
import time
from typing import List, Optional

from .history_store import HistoryStore
from .models import HistoryEntry

logger = logging.getLogger(__name__)


class HistoryWriter:
    """Drains a bounded queue of HistoryEntries into the history store"""

    def __init__(
        self,
        store: HistoryStore,
        max_queue_size: int = 10000,
        batch_size: int = 25
    ):
        self.store = store
        self.batch_size = batch_size
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)

        self.is_running = False
        self.records_processed = 0
        self.error_count = 0
        self.dropped_count = 0
        self.last_record_time = None
        self._task: Optional[asyncio.Task] = None

    def submit(self, entry: HistoryEntry) -> bool:
        """Queue an entry without waiting; returns False if it was dropped"""
        try:
            self.queue.put_nowait(entry)
            return True
        except asyncio.QueueFull:
            self.dropped_count += 1
            logger.warning(f"History queue full, dropped entry for bus {entry.bus_id}")
            return False

    def start(self) -> None:
        """Start consuming in the background"""
        if self._task is not None:
            return
        self.is_running = True
        self._task = asyncio.create_task(self._consume())
        logger.info("Started history writer")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Flush what is queued (bounded by drain_timeout) and stop"""
        logger.info("Stopping history writer...")
        try:
            await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"History writer stopped with {self.queue.qsize()} entries unwritten")
        self.is_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def flush(self) -> None:
        """Wait until everything queued so far has been handled"""
        await self.queue.join()

    def is_healthy(self) -> bool:
        """Running, and the last batch did not leave the queue backed up"""
        if not self.is_running:
            return False
        return self.queue.qsize() < self.queue.maxsize

    def get_lag_ms(self) -> Optional[int]:
        """Milliseconds since the last successful write"""
        if not self.last_record_time:
            return None
        return int((time.time() - self.last_record_time) * 1000)

    async def _next_batch(self) -> List[HistoryEntry]:
        batch = [await self.queue.get()]
        while len(batch) < self.batch_size:
            try:
                batch.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return batch

    async def _consume(self) -> None:
        while self.is_running:
            batch = await self._next_batch()
            try:
                stored_count = await self.store.append_many(batch)
                self.records_processed += stored_count
                self.last_record_time = time.time()
                logger.debug(f"Wrote {stored_count} history entries")
            except Exception as e:
                # History is best effort; the live cache stays authoritative
                logger.error(f"Error writing GPS history: {str(e)}")
                self.error_count += len(batch)
            finally:
                for _ in batch:
                    self.queue.task_done()
