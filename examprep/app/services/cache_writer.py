"""Background cache write queue.

Cache-aside reads populate the cache after returning data to the caller.
Those writes go through this bounded queue, drained by a single worker task,
so the asynchrony is an explicit contract with its own error counters rather
than an unawaited coroutine.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from examprep.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)

# (key, value, ttl) -> True when stored
WriteFn = Callable[[str, Any, Optional[int]], Awaitable[bool]]


@dataclass
class PendingWrite:
    """A cache write waiting for the worker."""
    key: str
    value: Any
    ttl: Optional[int] = None


@dataclass
class CacheWriteStats:
    """Snapshot of the write queue counters."""
    submitted: int = 0
    written: int = 0
    failed: int = 0
    dropped: int = 0
    pending: int = 0
    last_error: Optional[str] = None
    last_error_time: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "submitted": self.submitted,
            "written": self.written,
            "failed": self.failed,
            "dropped": self.dropped,
            "pending": self.pending,
            "last_error": self.last_error,
            "last_error_time": self.last_error_time,
        }


class CacheWriteQueue:
    """Bounded queue of cache writes drained by a background worker.

    Features:
    - Non-blocking submit: callers never wait on the store
    - Bounded: when full, new writes are dropped and counted
    - Error channel: failed writes are counted and logged, never raised
    - Graceful shutdown: drains pending writes before stopping

    Example:
        queue = CacheWriteQueue(store.set_value, max_size=1000)
        queue.submit("domains:all", domains, ttl=300)

        # In tests or on application shutdown:
        await queue.flush()
        await queue.shutdown()
    """

    def __init__(self, write: WriteFn, max_size: int = 1000):
        """Initialize the write queue.

        Args:
            write: Coroutine function performing one write, returning success
            max_size: Maximum number of pending writes
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._write = write
        self.max_size = max_size
        self._queue: asyncio.Queue[PendingWrite] = asyncio.Queue(maxsize=max_size)
        self._worker_task: Optional[asyncio.Task] = None
        self._stats = CacheWriteStats()

    @property
    def started(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def start(self) -> None:
        """Start the background worker. Requires a running event loop."""
        if not self.started:
            self._worker_task = asyncio.create_task(self._worker_loop())
            logger.debug("CacheWriteQueue started")

    def submit(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Enqueue a write without waiting for it.

        Returns:
            True if queued, False if the queue was full and the write dropped.
        """
        if not self.started:
            self.start()

        try:
            self._queue.put_nowait(PendingWrite(key=key, value=value, ttl=ttl))
        except asyncio.QueueFull:
            self._stats.dropped += 1
            logger.warning(
                "Cache write queue full, dropping write",
                extra=get_log_context(cache_key=key, max_size=self.max_size),
            )
            return False

        self._stats.submitted += 1
        return True

    async def _worker_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._process(item)
            finally:
                self._queue.task_done()

    async def _process(self, item: PendingWrite) -> None:
        try:
            stored = await self._write(item.key, item.value, item.ttl)
        except Exception as e:
            self._record_failure(item.key, str(e) or type(e).__name__)
            return

        if stored:
            self._stats.written += 1
        else:
            self._record_failure(item.key, "write rejected by cache store")

    def _record_failure(self, key: str, error: str) -> None:
        self._stats.failed += 1
        self._stats.last_error = error
        self._stats.last_error_time = time.time()
        logger.error(
            f"Failed to cache key {key}: {error}",
            extra=get_log_context(cache_key=key),
        )

    async def flush(self) -> None:
        """Wait until every queued write has been processed."""
        if not self.started:
            return
        await self._queue.join()

    async def shutdown(self) -> None:
        """Drain pending writes and stop the worker."""
        logger.debug("CacheWriteQueue shutting down...")
        await self.flush()
        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
        logger.debug("CacheWriteQueue shutdown complete")

    def get_stats(self) -> CacheWriteStats:
        """Return a copy of the counters."""
        return CacheWriteStats(
            submitted=self._stats.submitted,
            written=self._stats.written,
            failed=self._stats.failed,
            dropped=self._stats.dropped,
            pending=self._queue.qsize(),
            last_error=self._stats.last_error,
            last_error_time=self._stats.last_error_time,
        )
