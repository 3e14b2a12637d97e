"""
Staggered feed cache invalidation on new content.

Invalidating thousands of feeds at once makes every one of them miss on the
next read, a recomputation stampede. Instead:

  1. resolve interested users (grade / subject match)
  2. split them into batches of `batch_size` (100)
  3. soft-invalidate a batch concurrently: existing feed pages get their
     TTL shortened to 60 s, never deleted, so in-flight reads still succeed
  4. wait `delay_ms` (500 ms) after the batch settles, then run the next one

Batch N+1 never starts before batch N has settled and the delay has elapsed,
which caps how fast recomputations can reach the feed generator. A failure for
one user is logged and counted; it never aborts the batch or the sweep.
"""
import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from pydantic import BaseModel

from app.clients.redis_client import FeedCache
from app.config import settings
from app.monitoring.health_monitor import AlgorithmMonitor, algorithm_monitor
from app.telemetry import INVALIDATION_SWEEP_LATENCY

logger = logging.getLogger(__name__)


class Content(BaseModel):
    id: str
    subject: Optional[str] = None
    grade: Optional[str] = None


class InterestDirectory(Protocol):
    async def get_users_by_interest(
        self, subject: Optional[str] = None, grade: Optional[str] = None
    ) -> list[str]: ...


class SoftInvalidator(Protocol):
    async def soft_invalidate(self, user_id: str, ttl: Optional[int] = None) -> bool: ...


@dataclass
class InvalidationReport:
    content_id: str
    users: int = 0
    batches: int = 0
    invalidated: int = 0
    skipped: int = 0       # no cached feed pages for the user
    failed: int = 0
    cancelled: bool = False
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class FixedDelayBatchScheduler:
    """
    Runs `handler` over `items` in fixed-size batches. Items inside a batch run
    concurrently; batches run one after another with `delay_ms` between the
    end of one and the start of the next. `stop()` ends the run at the next
    batch boundary, including while waiting out the delay.
    """

    def __init__(self, batch_size: Optional[int] = None, delay_ms: Optional[int] = None) -> None:
        self.batch_size = batch_size or settings.invalidation_batch_size
        self.delay = (settings.invalidation_delay_ms if delay_ms is None else delay_ms) / 1000
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def run(
        self,
        items: Sequence[Any],
        handler: Callable[[Any], Awaitable[Any]],
    ) -> list[list[Any]]:
        results: list[list[Any]] = []

        for start in range(0, len(items), self.batch_size):
            if self.stopped:
                break

            batch = items[start : start + self.batch_size]
            results.append(await asyncio.gather(*[handler(item) for item in batch]))

            if start + self.batch_size < len(items):
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.delay)
                except asyncio.TimeoutError:
                    pass

        return results


class SmartCacheManager:
    def __init__(
        self,
        feeds: Optional[SoftInvalidator] = None,
        monitor: Optional[AlgorithmMonitor] = None,
        batch_size: Optional[int] = None,
        delay_ms: Optional[int] = None,
        soft_ttl: Optional[int] = None,
    ) -> None:
        self.feeds = feeds or FeedCache()
        self.monitor = monitor or algorithm_monitor
        self.batch_size = batch_size
        self.delay_ms = delay_ms
        self.soft_ttl = soft_ttl or settings.soft_invalidation_ttl
        self._active: set[FixedDelayBatchScheduler] = set()

    async def find_interested_users(
        self, content: Content, directory: InterestDirectory
    ) -> list[str]:
        return await directory.get_users_by_interest(content.subject, content.grade)

    async def on_new_content(
        self, content: Content, directory: InterestDirectory
    ) -> InvalidationReport:
        t0 = time.perf_counter()
        user_ids = await self.find_interested_users(content, directory)
        report = InvalidationReport(content_id=content.id, users=len(user_ids))

        scheduler = FixedDelayBatchScheduler(self.batch_size, self.delay_ms)
        self._active.add(scheduler)
        try:
            batches = await scheduler.run(user_ids, self.invalidate_user_feed_gracefully)
        finally:
            self._active.discard(scheduler)

        report.batches = len(batches)
        for outcome in (o for batch in batches for o in batch):
            if outcome == "ok":
                report.invalidated += 1
            elif outcome == "skipped":
                report.skipped += 1
            else:
                report.failed += 1
        report.cancelled = report.invalidated + report.skipped + report.failed < report.users

        elapsed = time.perf_counter() - t0
        report.duration_ms = round(elapsed * 1000, 2)
        INVALIDATION_SWEEP_LATENCY.observe(elapsed)
        logger.info(
            "Invalidation sweep for content %s: %d users, %d batches, "
            "%d invalidated, %d skipped, %d failed%s (%.1fms)",
            content.id, report.users, report.batches, report.invalidated,
            report.skipped, report.failed,
            " [cancelled]" if report.cancelled else "", report.duration_ms,
        )
        return report

    async def invalidate_user_feed_gracefully(self, user_id: str) -> str:
        try:
            shortened = await self.feeds.soft_invalidate(user_id, self.soft_ttl)
        except Exception as exc:
            logger.error("Failed to invalidate cache for %s: %s", user_id, exc)
            self.monitor.record_invalidation("soft", "error")
            return "error"

        outcome = "ok" if shortened else "skipped"
        self.monitor.record_invalidation("soft", outcome)
        return outcome

    def stop(self) -> None:
        """Cancel every sweep in progress at its next batch boundary."""
        for scheduler in list(self._active):
            scheduler.stop()

    @property
    def active_sweeps(self) -> int:
        return len(self._active)


# Singleton
smart_cache_manager = SmartCacheManager()
