"""
Redis client wrapper.

Responsibilities:
  • Interest vector — STRING (JSON) keyed by uiv:{user_id}, adaptive TTL
  • Feed pages      — keyed by feed:{user_id}:{page}, written by the feed
                      generator; this service only shortens or drops them
  • Expiring KV     — session tokens and short-lived secrets, keyed by
                      {namespace}:{key}, always written with a TTL

Soft invalidation uses EXPIRE … LT so a TTL is only ever shortened. Two
concurrent sweeps over the same user can never extend a feed page's life.
"""
import json
import logging
from typing import Optional

import redis.asyncio as aioredis

from app.config import settings

logger = logging.getLogger(__name__)

_redis: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    global _redis
    _redis = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        decode_responses=True,
    )
    await _redis.ping()
    logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def set_redis(client: Optional[aioredis.Redis]) -> None:
    """Swap the module client (used by tests and one-off scripts)."""
    global _redis
    _redis = client


def get_redis() -> aioredis.Redis:
    if _redis is None:
        raise RuntimeError("Redis not initialised — call init_redis() at startup")
    return _redis


# ─────────────────────────── Cache Keys ──────────────────────────────────

class CacheKeys:
    @staticmethod
    def user_vector(user_id: str) -> str:
        return f"uiv:{user_id}"

    @staticmethod
    def similar_users(user_id: str) -> str:
        return f"su:{user_id}"

    @staticmethod
    def user_feed(user_id: str, page: int) -> str:
        return f"feed:{user_id}:{page}"

    @staticmethod
    def content_score(content_id: str, user_id: str) -> str:
        return f"cs:{content_id}:{user_id}"


def feed_page_keys(user_id: str) -> list[str]:
    return [
        CacheKeys.user_feed(user_id, page)
        for page in range(1, settings.feed_cache_pages + 1)
    ]


# ─────────────────────────── JSON helpers ────────────────────────────────

async def get_json(key: str) -> Optional[dict]:
    raw = await get_redis().get(key)
    if raw:
        return json.loads(raw)
    return None


async def set_json(key: str, value: dict, ttl: int) -> None:
    await get_redis().set(key, json.dumps(value, default=str), ex=ttl)


# ─────────────────────────── Feed pages ──────────────────────────────────

class FeedCache:
    """Feed page invalidation for a single user."""

    def __init__(self, client: Optional[aioredis.Redis] = None) -> None:
        self._client = client

    @property
    def redis(self) -> aioredis.Redis:
        return self._client if self._client is not None else get_redis()

    async def soft_invalidate(self, user_id: str, ttl: Optional[int] = None) -> bool:
        """
        Shorten every cached feed page of `user_id` to at most `ttl` seconds.
        In-flight readers still get the old page; the next read after expiry
        recomputes. Returns True if at least one page was shortened.
        """
        ttl = ttl or settings.soft_invalidation_ttl
        pipe = self.redis.pipeline()
        for key in feed_page_keys(user_id):
            pipe.expire(key, ttl, lt=True)
        results = await pipe.execute()
        return any(results)

    async def invalidate_user_feed(self, user_id: str) -> None:
        """Drop every cached feed page of `user_id` immediately."""
        await self.redis.delete(*feed_page_keys(user_id))
        logger.info("Feed invalidated for user %s", user_id)


# ─────────────────────────── Expiring key-value store ────────────────────

class ExpiringKeyValueStore:
    """
    Namespaced key → string store where every entry carries a TTL.
    Backs session tokens and other short-lived secrets so they are shared
    across instances and disappear on their own.
    """

    def __init__(self, namespace: str, default_ttl: int, client: Optional[aioredis.Redis] = None) -> None:
        self.namespace = namespace
        self.default_ttl = default_ttl
        self._client = client

    @property
    def redis(self) -> aioredis.Redis:
        return self._client if self._client is not None else get_redis()

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self.redis.set(self._key(key), value, ex=ttl or self.default_ttl)

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(self._key(key))

    async def delete(self, key: str) -> None:
        await self.redis.delete(self._key(key))


session_store = ExpiringKeyValueStore("session", settings.session_ttl)
