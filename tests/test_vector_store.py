"""Tests for InterestVectorStore against SQLite and the fake Redis."""

import json

import pytest
from sqlalchemy import select

pytestmark = pytest.mark.asyncio

from app.algorithms.interest_vector import UserInterestVector
from app.algorithms.stampede import StampedeProtection
from app.algorithms.vector_store import (
    GRADE_DEFAULT_SUBJECTS,
    InterestVectorStore,
    SqlInteractionSource,
    default_vector_for_grade,
)
from app.clients.redis_client import set_redis
from app.models import UserInterestVector as VectorRow
from tests.conftest import add_interactions, days_ago, make_user


@pytest.fixture
def store(db, redis, monitor):
    return InterestVectorStore(db, monitor=monitor, stampede=StampedeProtection(monitor=monitor))


class TestInteractionWindows:
    async def test_windows_split_on_age(self, db):
        user = await make_user(db)
        await add_interactions(db, user.user_id, "math", 2, days_ago=5)
        await add_interactions(db, user.user_id, "history", 3, days_ago=50)
        await add_interactions(db, user.user_id, "art", 1, days_ago=120)

        source = SqlInteractionSource(db)
        recent = await source.get_interactions(user.user_id, 0, 30)
        historical = await source.get_interactions(user.user_id, 30, 90)

        assert [i.subject for i in recent] == ["math", "math"]
        assert [i.subject for i in historical] == ["history"] * 3


class TestCacheUserInterestVector:
    async def test_writes_row_and_redis(self, db, redis, store):
        user = await make_user(db, total_interactions=0, age_days=30)
        vector = UserInterestVector(subjects={"math": 1.0}, grades={"9th Grade": 1.0})

        await store.cache_user_interest_vector(user.user_id, vector)

        row = await db.get(VectorRow, user.user_id)
        assert row.subjects == {"math": 1.0}
        cached = json.loads(await redis.get(f"uiv:{user.user_id}"))
        assert cached["subjects"] == {"math": 1.0}

    async def test_replaces_previous_vector(self, db, store):
        user = await make_user(db)
        await store.cache_user_interest_vector(user.user_id, UserInterestVector(subjects={"math": 1.0}))
        await store.cache_user_interest_vector(user.user_id, UserInterestVector(subjects={"art": 1.0}))

        row = await db.get(VectorRow, user.user_id)
        assert row.subjects == {"art": 1.0}

    async def test_overwrites_row_written_elsewhere(self, db, store):
        user = await make_user(db)
        db.add(VectorRow(user_id=user.user_id, subjects={"math": 1.0}, grades={}, last_updated=days_ago(1)))
        await db.flush()

        await store.cache_user_interest_vector(user.user_id, UserInterestVector(subjects={"art": 1.0}))

        rows = (await db.execute(select(VectorRow).where(VectorRow.user_id == user.user_id))).scalars().all()
        assert len(rows) == 1
        assert rows[0].subjects == {"art": 1.0}

    @pytest.mark.parametrize(
        "total,age,expected_ttl",
        [
            (0, 30, 14400),     # inactive
            (90, 30, 3600),     # 3/day
            (300, 30, 900),     # 10/day
            (1000, 10, 180),    # 100/day
        ],
    )
    async def test_ttl_follows_activity(self, db, redis, store, total, age, expected_ttl):
        user = await make_user(db, total_interactions=total, age_days=age)

        await store.cache_user_interest_vector(user.user_id, UserInterestVector(subjects={"math": 1.0}))

        ttl = await redis.ttl(f"uiv:{user.user_id}")
        assert expected_ttl - 2 <= ttl <= expected_ttl


class TestGetUserInterestVector:
    async def test_redis_hit(self, db, redis, store, monitor):
        user = await make_user(db)
        await redis.set(
            f"uiv:{user.user_id}",
            UserInterestVector(subjects={"physics": 1.0}).model_dump_json(),
            ex=60,
        )

        vector = await store.get_user_interest_vector(user.user_id)

        assert vector.subjects == {"physics": 1.0}
        assert monitor.get_metrics().cache_hit_rate == 1.0

    async def test_miss_falls_back_to_db_and_resyncs(self, db, redis, store, monitor):
        user = await make_user(db)
        await store.cache_user_interest_vector(user.user_id, UserInterestVector(subjects={"math": 1.0}))
        await redis.delete(f"uiv:{user.user_id}")

        vector = await store.get_user_interest_vector(user.user_id)

        assert vector.subjects == {"math": 1.0}
        assert await redis.exists(f"uiv:{user.user_id}") == 1
        assert monitor.get_metrics().cache_hit_rate == 0.0

    async def test_unknown_user_gets_empty_vector(self, store):
        vector = await store.get_user_interest_vector("missing")
        assert vector.is_empty

    async def test_redis_outage_falls_back_to_db(self, db, store):
        user = await make_user(db)
        await store.cache_user_interest_vector(user.user_id, UserInterestVector(subjects={"math": 1.0}))
        set_redis(None)

        vector = await store.get_user_interest_vector(user.user_id)

        assert vector.subjects == {"math": 1.0}


class TestForceRecalculate:
    async def test_from_recent_interactions(self, db, store, monitor):
        user = await make_user(db, grade="10th Grade")
        await add_interactions(db, user.user_id, "math", 3, days_ago=2, type="LIKE")
        await add_interactions(db, user.user_id, "physics", 1, days_ago=2, type="SHARE")
        await add_interactions(db, user.user_id, "history", 5, days_ago=60)

        vector = await store.force_recalculate_vector(user.user_id, reason="drift")

        assert vector.subjects == pytest.approx({"math": 9 / 16, "physics": 7 / 16})
        row = await db.get(VectorRow, user.user_id)
        assert row.subjects == pytest.approx(vector.subjects)
        assert monitor.get_metrics().recalculation_count == 1

    async def test_grade_default_without_interactions(self, db, store):
        user = await make_user(db, grade="11th Grade")

        vector = await store.force_recalculate_vector(user.user_id)

        assert vector.subjects == GRADE_DEFAULT_SUBJECTS["11th Grade"]
        assert vector.grades == {"11th Grade": 1.0}
        assert await db.get(VectorRow, user.user_id) is not None

    async def test_unknown_grade_gets_general_profile(self):
        assert default_vector_for_grade("Kindergarten").subjects == {"general": 1.0}

    async def test_no_grade_no_interactions_is_not_stored(self, db, store, monitor):
        user = await make_user(db, grade=None)

        vector = await store.force_recalculate_vector(user.user_id)

        assert vector.is_empty
        assert await db.get(VectorRow, user.user_id) is None
        assert monitor.get_metrics().recalculation_count == 0


class TestGetUsersByInterest:
    async def test_grade_or_recent_subject(self, db, store):
        same_grade = await make_user(db, grade="11th Grade")
        engaged = await make_user(db, grade="9th Grade")
        await add_interactions(db, engaged.user_id, "physics", 1, days_ago=3)
        lapsed = await make_user(db, grade="9th Grade")
        await add_interactions(db, lapsed.user_id, "physics", 1, days_ago=60)
        await make_user(db, grade="12th Grade")

        user_ids = await store.get_users_by_interest("physics", "11th Grade")

        assert user_ids == sorted([same_grade.user_id, engaged.user_id])

    async def test_no_criteria_matches_nobody(self, db, store):
        await make_user(db, grade="11th Grade")
        assert await store.get_users_by_interest(None, None) == []


class TestHardInvalidation:
    async def test_drops_feed_pages(self, db, redis, store, monitor):
        for page in (1, 2):
            await redis.set(f"feed:u1:{page}", "[]", ex=300)

        await store.invalidate_user_feed("u1")

        assert await redis.exists("feed:u1:1") == 0
        assert await redis.exists("feed:u1:2") == 0
        assert monitor.get_metrics().invalidation_count == 1
