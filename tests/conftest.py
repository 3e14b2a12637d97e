"""
Feed Algorithm Test Suite - Shared Fixtures and Configuration

Environment is pinned BEFORE any `app` import: app.config builds its settings
and app.database its engine at import time.
"""
import os
import tempfile
from pathlib import Path

_TMP_DIR = Path(tempfile.mkdtemp(prefix="edufeed-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR / 'test.db'}"
os.environ["OTEL_ENABLED"] = "false"
os.environ["CRON_SECRET"] = "test-cron-secret"

import time
import uuid
from datetime import datetime, timedelta
from typing import Optional

import httpx
import pytest
import pytest_asyncio

from app.algorithms.interest_vector import utcnow
from app.clients.redis_client import session_store, set_redis
from app.database import AsyncSessionLocal, Base, engine
from app.models import Interaction, User
from app.monitoring.health_monitor import AlgorithmMonitor, algorithm_monitor

CRON_SECRET = "test-cron-secret"


# =============================================================================
# In-memory async Redis
# =============================================================================


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops: list = []

    def expire(self, key: str, seconds: int, lt: bool = False):
        self._ops.append((self._redis.expire, (key, seconds), {"lt": lt}))
        return self

    async def execute(self) -> list:
        return [await fn(*args, **kwargs) for fn, args, kwargs in self._ops]


class FakeRedis:
    """
    The subset of redis.asyncio.Redis used by the service, with real TTL
    semantics (EXPIRE LT treats a persistent key as an infinite TTL, like
    Redis 7).
    """

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    def _alive(self, key: str) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[key]
            return False
        return True

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._data[key][0] if self._alive(key) else None

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._data[key] = (value, time.monotonic() + ex if ex else None)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                del self._data[key]
                removed += 1
        return removed

    async def exists(self, key: str) -> int:
        return int(self._alive(key))

    async def ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        expires_at = self._data[key][1]
        if expires_at is None:
            return -1
        return int(round(expires_at - time.monotonic()))

    async def expire(self, key: str, seconds: int, lt: bool = False) -> bool:
        if not self._alive(key):
            return False
        value, expires_at = self._data[key]
        new_expiry = time.monotonic() + seconds
        if lt and expires_at is not None and new_expiry >= expires_at:
            return False
        self._data[key] = (value, new_expiry)
        return True

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self._data.clear()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def redis():
    fake = FakeRedis()
    set_redis(fake)
    yield fake
    set_redis(None)


@pytest_asyncio.fixture
async def tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(tables):
    async with AsyncSessionLocal() as session:
        yield session
        await session.rollback()


@pytest.fixture
def monitor() -> AlgorithmMonitor:
    return AlgorithmMonitor()


@pytest.fixture
def global_monitor():
    """The process-wide monitor the routes record into, cleared per test."""
    algorithm_monitor.reset()
    algorithm_monitor.reset_stampede_count()
    yield algorithm_monitor
    algorithm_monitor.reset()


@pytest_asyncio.fixture
async def client(tables, redis, global_monitor):
    from app.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


# =============================================================================
# Data helpers
# =============================================================================


async def make_user(
    db,
    grade: Optional[str] = None,
    role: str = "USER",
    total_interactions: int = 0,
    age_days: int = 30,
    updated_days_ago: int = 0,
) -> User:
    now = utcnow()
    user = User(
        user_id=str(uuid.uuid4()),
        email=f"{uuid.uuid4().hex[:8]}@school.test",
        role=role,
        grade=grade,
        total_interactions=total_interactions,
        created_at=now - timedelta(days=age_days),
        updated_at=now - timedelta(days=updated_days_ago),
    )
    db.add(user)
    await db.flush()
    return user


async def add_interactions(
    db,
    user_id: str,
    subject: str,
    count: int,
    days_ago: float,
    type: str = "LIKE",
    grade: str = "10th Grade",
) -> None:
    created = utcnow() - timedelta(days=days_ago)
    for _ in range(count):
        db.add(
            Interaction(
                user_id=user_id,
                type=type,
                subject=subject,
                grade=grade,
                created_at=created,
            )
        )
    await db.flush()


async def login(user_id: str) -> dict:
    token = uuid.uuid4().hex
    await session_store.put(token, user_id)
    return {"Authorization": f"Bearer {token}"}


def days_ago(days: float) -> datetime:
    return utcnow() - timedelta(days=days)
