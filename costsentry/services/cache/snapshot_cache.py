"""
Normalized snapshot cache.

Redis backend for production (shared across workers), in-memory fallback for
development and tests. Entries are keyed by account, provider and period and
expire after SNAPSHOT_CACHE_TTL_SECONDS.

The cache is an optimisation only: backend failures degrade to a miss and
never fail a sync.
"""

import asyncio
import weakref
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from costsentry.core.config import Settings, get_settings
from costsentry.core.metrics import SNAPSHOT_CACHE_LOOKUPS
from costsentry.schemas.costs import NormalizedCostSnapshot

logger = structlog.get_logger()

KEY_PREFIX = "costsentry:snapshot"


class CacheBackend(ABC):
    """Abstract base class for cache backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get value from cache."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Set value in cache with TTL."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key from cache."""


class InMemoryCache(CacheBackend):
    """
    Process-local cache for development/testing.

    Note: Not suitable for multi-instance deployments.
    """

    def __init__(self):
        self._store: Dict[str, Tuple[str, datetime]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if datetime.now(timezone.utc) >= expires_at:
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = (value, datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds))

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)


class RedisCache(CacheBackend):
    """Redis-backed cache. Connection errors are logged and treated as misses."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._client: Optional[aioredis.Redis] = None

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            logger.info("redis_connected", url=self.redis_url.split("@")[-1])
        return self._client

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._get_client().get(key)
        except (RedisError, OSError) as e:
            logger.warning("redis_get_failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._get_client().setex(key, ttl_seconds, value)
        except (RedisError, OSError) as e:
            logger.warning("redis_set_failed", key=key, error=str(e))

    async def delete(self, key: str) -> None:
        try:
            await self._get_client().delete(key)
        except (RedisError, OSError) as e:
            logger.warning("redis_delete_failed", key=key, error=str(e))


class SnapshotCache:
    """
    Caching API for normalized snapshots.

    ``get_or_load`` is an atomic check-then-set per key: concurrent callers for
    the same key wait on one lock, so only the first one runs the loader.
    """

    def __init__(self, backend: CacheBackend, ttl_seconds: int):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @staticmethod
    def make_key(account_id: str, provider_id: str, period_start: date, period_end: date) -> str:
        return f"{KEY_PREFIX}:{account_id}:{provider_id}:{period_start.isoformat()}:{period_end.isoformat()}"

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get(self, key: str) -> Optional[NormalizedCostSnapshot]:
        cached = await self.backend.get(key)
        if cached is None:
            return None
        try:
            return NormalizedCostSnapshot.model_validate_json(cached)
        except ValidationError:
            logger.warning("snapshot_cache_entry_corrupt", key=key)
            await self.backend.delete(key)
            return None

    async def set(self, key: str, snapshot: NormalizedCostSnapshot) -> None:
        await self.backend.set(key, snapshot.model_dump_json(), self.ttl_seconds)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[NormalizedCostSnapshot]],
    ) -> Tuple[NormalizedCostSnapshot, bool]:
        """Returns (snapshot, hit). Loader exceptions propagate and nothing is cached."""
        lock = self._lock_for(key)
        async with lock:
            cached = await self.get(key)
            if cached is not None:
                SNAPSHOT_CACHE_LOOKUPS.labels(result="hit").inc()
                logger.debug("cache_hit", type="snapshot", key=key)
                return cached, True

            SNAPSHOT_CACHE_LOOKUPS.labels(result="miss").inc()
            snapshot = await loader()
            await self.set(key, snapshot)
            return snapshot, False

    async def invalidate(self, key: str) -> None:
        await self.backend.delete(key)
        logger.debug("cache_invalidated", key=key)


def build_snapshot_cache(settings: Optional[Settings] = None) -> SnapshotCache:
    """Redis when REDIS_URL is configured, in-memory otherwise."""
    settings = settings or get_settings()
    if settings.REDIS_URL:
        backend: CacheBackend = RedisCache(settings.REDIS_URL)
        logger.info("snapshot_cache_initialized", backend="redis")
    else:
        backend = InMemoryCache()
        logger.info("snapshot_cache_initialized", backend="memory")
    return SnapshotCache(backend, settings.SNAPSHOT_CACHE_TTL_SECONDS)
