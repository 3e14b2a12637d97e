"""
Single-flight guard against cache stampedes.

When a hot key misses, only the first caller runs the expensive compute; every
concurrent caller for the same key awaits that same future. A key that piles
up more than `waiter_limit` concurrent callers is reported as a stampede.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from app.config import settings
from app.monitoring.health_monitor import AlgorithmMonitor, algorithm_monitor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StampedeProtection:
    def __init__(
        self,
        monitor: Optional[AlgorithmMonitor] = None,
        waiter_limit: Optional[int] = None,
    ) -> None:
        self.monitor = monitor or algorithm_monitor
        self.waiter_limit = waiter_limit or settings.stampede_waiter_limit
        self._inflight: dict[str, asyncio.Future] = {}
        self._waiters: dict[str, int] = {}

    async def get_or_compute(self, key: str, compute: Callable[[], Awaitable[T]]) -> T:
        existing = self._inflight.get(key)
        if existing is not None:
            waiters = self._waiters.get(key, 0) + 1
            self._waiters[key] = waiters
            if waiters == self.waiter_limit + 1:
                logger.warning("STAMPEDE DETECTED for %s: %d concurrent requests", key, waiters)
                self.monitor.record_stampede()
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(compute())
        self._inflight[key] = task
        self._waiters[key] = 1
        try:
            return await asyncio.shield(task)
        finally:
            self._inflight.pop(key, None)
            self._waiters.pop(key, None)

    def clear(self) -> None:
        self._inflight.clear()
        self._waiters.clear()

    @property
    def lock_count(self) -> int:
        return len(self._inflight)
