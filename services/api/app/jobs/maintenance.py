"""
Scheduled algorithm maintenance, triggered by GET /cron/algorithm-maintenance.

Daily:
  1. Delete interactions past the retention window (90 days; the drift
     detector's historical window must survive the cleanup)
  2. Drift check every user active in the last 7 days; on drift recompute
     the vector and drop the user's feed cache
  3. Prune stored vectors with more than 50 subjects

Weekly:
  1. Delete similar-user entries older than 30 days
  2. Count users active in the last 30 days (similarity recalculation is
     still run by hand for now)
"""
import logging
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.algorithms.drift import DriftDetector
from app.algorithms.interest_vector import prune_vector, utcnow
from app.algorithms.vector_store import InterestVectorStore
from app.config import settings
from app.models import Interaction, SimilarUser, User, UserInterestVector
from app.monitoring.health_monitor import AlgorithmMonitor, algorithm_monitor

logger = logging.getLogger(__name__)


@dataclass
class DailyReport:
    deleted_interactions: int = 0
    users_checked: int = 0
    users_drifted: int = 0
    drift_failures: int = 0
    vectors_pruned: int = 0
    duration_s: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class WeeklyReport:
    deleted_similar_users: int = 0
    active_users: int = 0
    duration_s: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


async def run_daily_maintenance(
    db: AsyncSession,
    store: Optional[InterestVectorStore] = None,
    detector: Optional[DriftDetector] = None,
    monitor: Optional[AlgorithmMonitor] = None,
) -> DailyReport:
    logger.info("Starting daily algorithm maintenance")
    t0 = time.perf_counter()
    store = store or InterestVectorStore(db)
    detector = detector or DriftDetector()
    monitor = monitor or algorithm_monitor
    report = DailyReport()
    now = utcnow()

    # The monitor window covers one day of traffic
    monitor.reset()
    monitor.reset_stampede_count()

    # 1. Interaction retention
    cutoff = now - timedelta(days=settings.interaction_retention_days)
    result = await db.execute(delete(Interaction).where(Interaction.created_at < cutoff))
    report.deleted_interactions = result.rowcount or 0
    logger.info("Deleted %d interactions older than %d days",
                report.deleted_interactions, settings.interaction_retention_days)

    # 2. Drift detection for recently active users
    since = now - timedelta(days=settings.active_user_days)
    rows = await db.execute(
        select(User.user_id).where(User.updated_at >= since).order_by(User.user_id)
    )
    active_ids = list(rows.scalars().all())
    report.users_checked = len(active_ids)
    logger.info("Checking %d active users for drift", len(active_ids))

    for user_id in active_ids:
        try:
            # Savepoint per user: a failure rolls back only that user's writes
            async with db.begin_nested():
                analysis = await detector.detect_concept_drift(user_id, store.interactions)
                if analysis.has_drift:
                    await store.force_recalculate_vector(user_id, reason="drift")
                    await store.invalidate_user_feed(user_id)
            if analysis.has_drift:
                report.users_drifted += 1
                logger.info("Drift detected for user %s (similarity=%.2f), vector recalculated",
                            user_id, analysis.similarity)
            monitor.record_drift_detection(analysis.has_drift)
            monitor.record_success()
        except Exception as exc:
            report.drift_failures += 1
            monitor.record_error()
            logger.error("Failed to check drift for user %s: %s", user_id, exc)

    logger.info("Drift detection complete: %d/%d users updated",
                report.users_drifted, report.users_checked)

    # 3. Vector pruning
    pruned_ids = []
    rows = await db.execute(select(UserInterestVector))
    for vector in rows.scalars().all():
        subjects = vector.subjects or {}
        if len(subjects) > settings.vector_max_subjects:
            vector.subjects = prune_vector(subjects, settings.vector_max_subjects)
            pruned_ids.append(vector.user_id)
    await db.flush()
    report.vectors_pruned = len(pruned_ids)

    # Cached copies still hold the unpruned subjects
    for user_id in pruned_ids:
        try:
            await store.evict_cached_vector(user_id)
        except Exception as exc:
            logger.warning("Could not evict cached vector for %s: %s", user_id, exc)
    if report.vectors_pruned:
        logger.info("Pruned %d user vectors", report.vectors_pruned)

    report.duration_s = round(time.perf_counter() - t0, 2)
    logger.info("Daily maintenance completed in %.2fs", report.duration_s)
    return report


async def run_weekly_maintenance(db: AsyncSession) -> WeeklyReport:
    logger.info("Starting weekly algorithm maintenance")
    t0 = time.perf_counter()
    report = WeeklyReport()
    now = utcnow()

    cutoff = now - timedelta(days=settings.similar_users_retention_days)
    result = await db.execute(delete(SimilarUser).where(SimilarUser.updated_at < cutoff))
    report.deleted_similar_users = result.rowcount or 0
    logger.info("Deleted %d old similar user entries", report.deleted_similar_users)

    active_since = now - timedelta(days=30)
    report.active_users = await db.scalar(
        select(func.count()).select_from(User).where(User.updated_at >= active_since)
    ) or 0
    logger.info("Found %d active users for similarity recalculation", report.active_users)

    report.duration_s = round(time.perf_counter() - t0, 2)
    logger.info("Weekly maintenance completed in %.2fs", report.duration_s)
    return report
