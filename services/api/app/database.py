"""
Async SQLAlchemy engine + session factory for TiDB (MySQL-protocol).

TiDB is wire-compatible with MySQL 5.7, so we use the aiomysql driver.
Local development and the test suite point DATABASE_URL at SQLite
(aiosqlite), which does not take pool sizing arguments.
The engine is created once at startup and reused across all requests.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"echo": False}
    return {"pool_pre_ping": True, "pool_size": 20, "max_overflow": 10, "echo": False}


engine = create_async_engine(settings.db_url, **_engine_options(settings.db_url))

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def init_db() -> None:
    """Create all tables if they don't exist (idempotent)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def get_db():
    """FastAPI dependency that yields an async DB session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
