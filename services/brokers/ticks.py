"""Bounded tick channel between a broker stream and its consumers."""

import asyncio
from typing import Any, Dict, List

from core.logging import get_market_data_logger_safe

OVERFLOW_POLICIES = ("drop_oldest", "drop_newest")


class TickChannel:
    """
    Bounded FIFO of ticks for one connection.

    Writers never block: when the queue is full, ``drop_oldest`` discards the
    oldest buffered tick to make room, ``drop_newest`` discards the incoming
    one. Either way the ``dropped`` counter is incremented. Must be written
    from the event loop thread; stream threads marshal through
    ``loop.call_soon_threadsafe``.
    """

    def __init__(self, maxsize: int = 10000, overflow_policy: str = "drop_oldest"):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"overflow_policy must be one of {OVERFLOW_POLICIES}")
        self.maxsize = maxsize
        self.overflow_policy = overflow_policy
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.published = 0
        self.dropped = 0
        self._logger = get_market_data_logger_safe("tick_channel")

    def publish(self, tick: Dict[str, Any]) -> bool:
        """Enqueue one tick. Returns False if a tick had to be dropped."""
        self.published += 1
        try:
            self._queue.put_nowait(tick)
            return True
        except asyncio.QueueFull:
            pass

        self.dropped += 1
        if self.overflow_policy == "drop_oldest":
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self._queue.put_nowait(tick)

        if self.dropped == 1 or self.dropped % 1000 == 0:
            self._logger.warning("Tick channel full, dropping ticks",
                                 policy=self.overflow_policy, total_dropped=self.dropped)
        return False

    def publish_many(self, ticks: List[Dict[str, Any]]) -> int:
        """Enqueue a batch; returns how many ticks were dropped."""
        before = self.dropped
        for tick in ticks:
            self.publish(tick)
        return self.dropped - before

    async def get(self) -> Dict[str, Any]:
        return await self._queue.get()

    def get_nowait(self) -> Dict[str, Any]:
        return self._queue.get_nowait()

    def drain(self, max_items: int = 1000) -> List[Dict[str, Any]]:
        """Take up to max_items buffered ticks without waiting."""
        items = []
        while len(items) < max_items:
            try:
                items.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return items

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()

    def stats(self) -> Dict[str, Any]:
        return {
            "queue_size": self._queue.qsize(),
            "maxsize": self.maxsize,
            "overflow_policy": self.overflow_policy,
            "published": self.published,
            "dropped": self.dropped,
        }
