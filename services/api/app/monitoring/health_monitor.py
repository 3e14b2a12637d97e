"""
Algorithm health monitor.

Collects in-process counters and timings from the vector / drift /
invalidation paths, exposes them as a snapshot for the admin endpoint, and
decides when a threshold is breached. Delivering an alert (email, Slack,
pager) belongs to the AlertNotifier handed in by the caller; the default one
only logs.

Everything recorded here is also mirrored to Prometheus so the same numbers
can be scraped from /metrics.
"""
import logging
from collections import deque
from typing import Optional, Protocol

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from app.config import settings
from app.telemetry import (
    ALGORITHM_ALERTS_TOTAL,
    DRIFT_CHECKS_TOTAL,
    DRIFT_RATE,
    FEED_INVALIDATIONS_TOTAL,
    STAMPEDES_TOTAL,
    VECTOR_CACHE_ACCESS_TOTAL,
    VECTOR_CALCULATION_LATENCY,
    VECTOR_RECALCULATIONS_TOTAL,
)

logger = logging.getLogger(__name__)

MAX_SAMPLES = 1000
EMA_ALPHA = 0.1


class AlgorithmHealthMetrics(BaseModel):
    avg_calculation_time: float = 0.0
    p95_calculation_time: float = 0.0
    p99_calculation_time: float = 0.0
    cache_hit_rate: float = 0.0
    error_rate: float = 0.0
    diversity_score: float = 0.0
    drift_detection_rate: float = 0.0
    drift_checks: int = 0
    recalculation_count: int = 0
    invalidation_count: int = 0
    invalidation_failures: int = 0
    stampede_count: int = 0

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class AlertNotifier(Protocol):
    async def send(self, alerts: list[str]) -> None: ...


class LoggingAlertNotifier:
    async def send(self, alerts: list[str]) -> None:
        logger.error("=== ALGORITHM HEALTH ALERTS ===")
        for alert in alerts:
            logger.error("  %s", alert)


class AlgorithmMonitor:
    def __init__(self, notifier: Optional[AlertNotifier] = None) -> None:
        self.notifier = notifier or LoggingAlertNotifier()
        self.reset()
        self._drift_rate = 0.0
        self._drift_checks = 0
        self._diversity_score: Optional[float] = None
        self._stampedes = 0

    # ── Recording ──────────────────────────────────────────────────────────

    def record_calculation_time(self, time_ms: float) -> None:
        self._calculation_times.append(time_ms)
        VECTOR_CALCULATION_LATENCY.observe(time_ms / 1000)

    def record_cache_access(self, hit: bool) -> None:
        if hit:
            self._cache_hits += 1
        else:
            self._cache_misses += 1
        VECTOR_CACHE_ACCESS_TOTAL.labels(result="hit" if hit else "miss").inc()

    def record_success(self) -> None:
        self._requests += 1

    def record_error(self) -> None:
        self._errors += 1
        self._requests += 1

    def record_diversity_score(self, score: float) -> None:
        self._diversity_score = score

    def record_drift_detection(self, drifted: bool) -> None:
        self._drift_checks += 1
        self._drift_rate = EMA_ALPHA * (1.0 if drifted else 0.0) + (1 - EMA_ALPHA) * self._drift_rate
        DRIFT_CHECKS_TOTAL.labels(outcome="drift" if drifted else "stable").inc()
        DRIFT_RATE.set(self._drift_rate)

    def record_recalculation(self, reason: str = "manual") -> None:
        self._recalculations += 1
        VECTOR_RECALCULATIONS_TOTAL.labels(reason=reason).inc()

    def record_invalidation(self, mode: str, outcome: str) -> None:
        if outcome == "error":
            self._invalidation_failures += 1
        elif outcome == "ok":
            self._invalidations += 1
        FEED_INVALIDATIONS_TOTAL.labels(mode=mode, outcome=outcome).inc()

    def record_stampede(self) -> None:
        self._stampedes += 1
        STAMPEDES_TOTAL.inc()

    # ── Reading ────────────────────────────────────────────────────────────

    def get_metrics(self) -> AlgorithmHealthMetrics:
        times = list(self._calculation_times)
        avg = p95 = p99 = 0.0
        if times:
            ordered = sorted(times)
            avg = sum(times) / len(times)
            p95 = ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)]
            p99 = ordered[min(int(len(ordered) * 0.99), len(ordered) - 1)]

        cache_total = self._cache_hits + self._cache_misses
        return AlgorithmHealthMetrics(
            avg_calculation_time=round(avg, 2),
            p95_calculation_time=p95,
            p99_calculation_time=p99,
            cache_hit_rate=self._cache_hits / cache_total if cache_total else 0.0,
            error_rate=self._errors / self._requests if self._requests else 0.0,
            diversity_score=self._diversity_score or 0.0,
            drift_detection_rate=round(self._drift_rate, 4),
            drift_checks=self._drift_checks,
            recalculation_count=self._recalculations,
            invalidation_count=self._invalidations,
            invalidation_failures=self._invalidation_failures,
            stampede_count=self._stampedes,
        )

    def evaluate_thresholds(self) -> list[str]:
        """Threshold breaches for the current snapshot, without notifying."""
        m = self.get_metrics()
        alerts: list[str] = []

        if self._calculation_times and m.avg_calculation_time > settings.alert_avg_calculation_ms:
            alerts.append(
                f"SLOW: Avg {m.avg_calculation_time:.0f}ms "
                f"(threshold: {settings.alert_avg_calculation_ms:.0f}ms)"
            )
        if (self._cache_hits + self._cache_misses) and m.cache_hit_rate < settings.alert_min_cache_hit_rate:
            alerts.append(f"LOW CACHE: {m.cache_hit_rate * 100:.1f}%")
        if self._drift_checks and m.drift_detection_rate > settings.alert_max_drift_rate:
            alerts.append(f"HIGH DRIFT: {m.drift_detection_rate * 100:.1f}% users drifting")
        if m.stampede_count > settings.alert_max_stampedes:
            alerts.append(f"STAMPEDE WARNING: {m.stampede_count} incidents since the last daily reset")
        if self._diversity_score is not None and m.diversity_score < settings.alert_min_diversity:
            alerts.append(f"ECHO CHAMBER: {m.diversity_score * 100:.1f}%")
        if self._requests and m.error_rate > settings.alert_max_error_rate:
            alerts.append(f"HIGH ERROR RATE: {m.error_rate * 100:.1f}%")

        return alerts

    async def check_thresholds_and_alert(self) -> list[str]:
        alerts = self.evaluate_thresholds()
        if alerts:
            ALGORITHM_ALERTS_TOTAL.inc(len(alerts))
            await self.notifier.send(alerts)
        return alerts

    # ── Housekeeping ───────────────────────────────────────────────────────

    def reset_stampede_count(self) -> None:
        self._stampedes = 0

    def reset(self) -> None:
        """Clear the windowed counters (the daily maintenance job calls this)."""
        self._calculation_times: deque[float] = deque(maxlen=MAX_SAMPLES)
        self._cache_hits = 0
        self._cache_misses = 0
        self._errors = 0
        self._requests = 0
        self._recalculations = 0
        self._invalidations = 0
        self._invalidation_failures = 0


# Singleton
algorithm_monitor = AlgorithmMonitor()
