"""
Interest vector store.

Two tiers:
  Redis  uiv:{user_id}              fast path, TTL adapted to user activity
  TiDB   user_interest_vectors row  source of truth, one row per user

Reads try Redis first and fall back to the row (re-syncing Redis). Concurrent
misses for the same user share one DB load through the stampede guard.
Writes go to both tiers, replacing whatever vector the user had. The row is
written with a single upsert, so two first writes for the same user (a grade
transition racing the daily drift job) cannot collide on the primary key.
"""
import logging
import time
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.algorithms.activity import get_adaptive_ttl, get_user_activity_level
from app.algorithms.interest_vector import (
    Interaction,
    UserInterestVector,
    VectorMetadata,
    calculate_diversity_score,
    calculate_user_interest_vector,
    utcnow,
)
from app.algorithms.stampede import StampedeProtection
from app.clients.redis_client import CacheKeys, FeedCache, get_json, get_redis, set_json
from app.config import settings
from app.models import Interaction as InteractionRow
from app.models import User
from app.models import UserInterestVector as VectorRow
from app.monitoring.health_monitor import AlgorithmMonitor, algorithm_monitor

logger = logging.getLogger(__name__)

# Cold-start profiles for users with a grade but no interactions yet
GRADE_DEFAULT_SUBJECTS = {
    "9th Grade": {"math": 0.3, "science": 0.3, "literature": 0.2, "history": 0.1, "english": 0.1},
    "10th Grade": {"physics": 0.3, "chemistry": 0.2, "math": 0.3, "biology": 0.1, "literature": 0.1},
    "11th Grade": {"math": 0.25, "physics": 0.25, "chemistry": 0.2, "biology": 0.15, "literature": 0.15},
    "12th Grade": {"math": 0.2, "physics": 0.2, "chemistry": 0.2, "literature": 0.2, "english": 0.2},
    "University": {"general": 0.5, "specialized": 0.3, "research": 0.2},
    "Teacher": {"pedagogy": 0.3, "general": 0.4, "specialized": 0.3},
}

vector_stampede = StampedeProtection()


def default_vector_for_grade(grade: str) -> UserInterestVector:
    subjects = dict(GRADE_DEFAULT_SUBJECTS.get(grade, {"general": 1.0}))
    return UserInterestVector(
        subjects=subjects,
        grades={grade: 1.0},
        metadata=VectorMetadata(diversity_score=calculate_diversity_score(subjects)),
    )


def _upsert_vector(dialect: str, values: dict):
    """INSERT ... ON DUPLICATE KEY UPDATE (TiDB) or ON CONFLICT (SQLite)."""
    updates = [k for k in values if k != "user_id"]
    if dialect == "sqlite":
        stmt = sqlite_insert(VectorRow).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=[VectorRow.user_id],
            set_={k: stmt.excluded[k] for k in updates},
        )
    stmt = mysql_insert(VectorRow).values(**values)
    return stmt.on_duplicate_key_update({k: stmt.inserted[k] for k in updates})


def _row_to_vector(row: VectorRow) -> UserInterestVector:
    return UserInterestVector(
        subjects=row.subjects or {},
        grades=row.grades or {},
        metadata=VectorMetadata(
            last_updated=row.last_updated,
            drift_score=row.drift_score,
            diversity_score=row.diversity_score,
        ),
    )


class SqlInteractionSource:
    """Reads interaction windows from the interactions table."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_interactions(
        self, user_id: str, start_days: int, end_days: Optional[int] = None
    ) -> list[Interaction]:
        now = utcnow()
        query = select(InteractionRow).where(
            InteractionRow.user_id == user_id,
            InteractionRow.created_at <= now - timedelta(days=start_days),
        )
        if end_days is not None:
            query = query.where(InteractionRow.created_at > now - timedelta(days=end_days))

        rows = await self.db.execute(query.order_by(InteractionRow.created_at.desc()))
        return [
            Interaction(
                id=r.id,
                type=r.type,
                subject=r.subject or "",
                grade=r.grade or "",
                created_at=r.created_at,
            )
            for r in rows.scalars().all()
        ]


class InterestVectorStore:
    def __init__(
        self,
        db: AsyncSession,
        feeds: Optional[FeedCache] = None,
        monitor: Optional[AlgorithmMonitor] = None,
        stampede: Optional[StampedeProtection] = None,
    ) -> None:
        self.db = db
        self.interactions = SqlInteractionSource(db)
        self.feeds = feeds or FeedCache()
        self.monitor = monitor or algorithm_monitor
        self.stampede = stampede or vector_stampede

    # ── Read ───────────────────────────────────────────────────────────────

    async def get_user_interest_vector(self, user_id: str) -> UserInterestVector:
        key = CacheKeys.user_vector(user_id)
        try:
            cached = await get_json(key)
        except Exception as exc:
            logger.warning("Redis read failed for %s (%s), falling back to DB", key, exc)
            cached = None

        if cached:
            self.monitor.record_cache_access(True)
            return UserInterestVector.model_validate(cached)

        self.monitor.record_cache_access(False)
        return await self.stampede.get_or_compute(key, lambda: self._load_from_db(user_id))

    async def _load_from_db(self, user_id: str) -> UserInterestVector:
        row = await self.db.get(VectorRow, user_id)
        if row is None:
            return UserInterestVector()

        vector = _row_to_vector(row)
        try:
            await set_json(
                CacheKeys.user_vector(user_id),
                vector.model_dump(mode="json"),
                await self.vector_ttl(user_id),
            )
        except Exception as exc:
            logger.warning("Could not re-sync vector for %s to Redis: %s", user_id, exc)
        return vector

    async def vector_ttl(self, user_id: str) -> int:
        user = await self.db.get(User, user_id)
        if user is None or user.created_at is None:
            return settings.redis_vector_ttl
        age_days = (utcnow() - user.created_at).days
        return get_adaptive_ttl(get_user_activity_level(user.total_interactions, age_days))

    # ── Write ──────────────────────────────────────────────────────────────

    async def cache_user_interest_vector(
        self, user_id: str, vector: UserInterestVector
    ) -> None:
        values = {
            "user_id": user_id,
            "subjects": dict(vector.subjects),
            "grades": dict(vector.grades),
            "drift_score": vector.metadata.drift_score,
            "diversity_score": vector.metadata.diversity_score,
            "last_updated": vector.metadata.last_updated,
        }
        await self.db.execute(_upsert_vector(self.db.get_bind().dialect.name, values))

        # A row already loaded in this session is now stale
        loaded = self.db.identity_map.get(self.db.identity_key(VectorRow, user_id))
        if loaded is not None:
            self.db.expire(loaded)

        await set_json(
            CacheKeys.user_vector(user_id),
            vector.model_dump(mode="json"),
            await self.vector_ttl(user_id),
        )

    async def force_recalculate_vector(
        self, user_id: str, reason: str = "manual"
    ) -> UserInterestVector:
        """
        Rebuild the vector from the recent interaction window. Users without
        interactions get their grade's cold-start profile; users with neither
        get an empty vector that is not stored.
        """
        t0 = time.perf_counter()
        interactions = await self.interactions.get_interactions(
            user_id, 0, settings.drift_recent_days
        )

        if interactions:
            vector = calculate_user_interest_vector(
                interactions,
                settings.drift_recent_days,
                max_subjects=settings.vector_max_subjects,
            )
        else:
            user = await self.db.get(User, user_id)
            if user is None or not user.grade:
                return UserInterestVector()
            vector = default_vector_for_grade(user.grade)

        await self.cache_user_interest_vector(user_id, vector)

        self.monitor.record_calculation_time((time.perf_counter() - t0) * 1000)
        self.monitor.record_recalculation(reason)
        self.monitor.record_diversity_score(vector.metadata.diversity_score)
        return vector

    async def evict_cached_vector(self, user_id: str) -> None:
        """Drop the Redis copy so the next read re-syncs from the row."""
        await get_redis().delete(CacheKeys.user_vector(user_id))

    async def invalidate_user_feed(self, user_id: str) -> None:
        await self.feeds.invalidate_user_feed(user_id)
        self.monitor.record_invalidation("hard", "ok")

    # ── Lookup ─────────────────────────────────────────────────────────────

    async def get_users_by_interest(
        self, subject: Optional[str] = None, grade: Optional[str] = None
    ) -> list[str]:
        """Users in the content's grade, or who engaged with its subject lately."""
        conditions = []
        if grade:
            conditions.append(User.grade == grade)
        if subject:
            since = utcnow() - timedelta(days=settings.interest_lookback_days)
            engaged = select(InteractionRow.user_id).where(
                InteractionRow.subject == subject,
                InteractionRow.created_at > since,
            )
            conditions.append(User.user_id.in_(engaged))
        if not conditions:
            return []

        rows = await self.db.execute(
            select(User.user_id).where(or_(*conditions)).order_by(User.user_id)
        )
        return list(rows.scalars().all())
