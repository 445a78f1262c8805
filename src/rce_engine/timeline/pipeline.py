"""
Event pipeline - bounded hand-off from browser callbacks to the store.

Producers (one per tab, running as browser binding callbacks) submit events
into a bounded ``asyncio.Queue``; a single consumer task feeds them to the
sink one at a time, so the sink never sees concurrent calls.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# Queue item that tells the consumer to exit
_STOP = object()


class BackpressurePolicy(str, Enum):
    """What a producer does when the queue is full."""
    BLOCK = "block"
    DROP_NEWEST = "drop_newest"


@dataclass
class PipelineStats:
    submitted: int = 0
    processed: int = 0
    dropped: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "submitted": self.submitted,
            "processed": self.processed,
            "dropped": self.dropped,
            "failed": self.failed,
        }


class EventPipeline:
    """
    Bounded single-consumer event queue.

    Example:
        >>> pipeline = EventPipeline(store.record, maxsize=10000)
        >>> pipeline.start()
        >>> await pipeline.submit(0, event)
        >>> await pipeline.close()
    """

    def __init__(
        self,
        sink: Callable[[int, Dict[str, Any]], Any],
        maxsize: int = 10000,
        policy: BackpressurePolicy = BackpressurePolicy.BLOCK,
        run_in_thread: bool = True,
    ):
        """
        Args:
            sink: Called as ``sink(tab_id, payload)`` for every event
            maxsize: Queue capacity
            policy: Behaviour when the queue is full
            run_in_thread: Run the sink in a worker thread so blocking
                writes (fsync) do not stall the event loop
        """
        self._sink = sink
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)
        self._policy = BackpressurePolicy(policy)
        self._run_in_thread = run_in_thread
        self._consumer: Optional[asyncio.Task] = None
        self._closed = False
        self.stats = PipelineStats()
        self.last_error: Optional[BaseException] = None

    @property
    def policy(self) -> BackpressurePolicy:
        return self._policy

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def start(self) -> None:
        """Start the consumer task (idempotent)."""
        if self.is_running:
            return
        self._consumer = asyncio.create_task(self._consume(), name="rce-event-pipeline")

    async def submit(self, tab_id: int, payload: Dict[str, Any]) -> bool:
        """
        Queue one event.

        Returns:
            True if queued, False if dropped (full queue under DROP_NEWEST,
            or pipeline closed)
        """
        if self._closed:
            logger.warning(f"Event from tab {tab_id} submitted after pipeline close, dropped")
            self.stats.dropped += 1
            return False

        item: Tuple[int, Dict[str, Any]] = (tab_id, payload)
        if self._policy == BackpressurePolicy.BLOCK:
            await self._queue.put(item)
        else:
            try:
                self._queue.put_nowait(item)
            except asyncio.QueueFull:
                self.stats.dropped += 1
                if self.stats.dropped == 1 or self.stats.dropped % 100 == 0:
                    logger.warning(
                        f"Event queue full ({self._queue.maxsize}), dropped "
                        f"{self.stats.dropped} event(s) so far"
                    )
                return False
        self.stats.submitted += 1
        return True

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                tab_id, payload = item
                try:
                    if self._run_in_thread:
                        await asyncio.to_thread(self._sink, tab_id, payload)
                    else:
                        self._sink(tab_id, payload)
                    self.stats.processed += 1
                except Exception as e:
                    self.stats.failed += 1
                    self.last_error = e
                    logger.error(f"Failed to store event from tab {tab_id}: {e}")
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handed to the sink."""
        if not self.is_running:
            return
        await self._queue.join()

    async def close(self) -> PipelineStats:
        """Stop accepting events, drain the queue and stop the consumer."""
        if self._closed:
            return self.stats
        self._closed = True
        if self.is_running:
            await self._queue.put(_STOP)
            await self._consumer
        self._consumer = None
        logger.info(f"Event pipeline closed: {self.stats.to_dict()}")
        return self.stats
