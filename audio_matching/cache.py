"""
Cache tier for resolved matches

Keys are ``match:{release_id}:{track_index}`` holding the JSON form of a
MatchRecord with a TTL. The Redis adapter raises CacheUnavailableError for any
driver failure; deciding whether that matters is left to the caller.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as redis
import structlog
from prometheus_client import Counter
from redis.exceptions import RedisError

from .errors import CacheUnavailableError
from .models import MatchRecord

logger = structlog.get_logger(__name__)

cache_errors_total = Counter(
    "audio_match_cache_errors_total",
    "Cache tier failures by operation",
    ["operation"],
)

DEFAULT_TTL_SECONDS = 86400

_DRIVER_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def match_key(release_id: int, track_index: int) -> str:
    return f"match:{release_id}:{track_index}"


class MatchCache(ABC):
    """Keyed get/set/delete of MatchRecords with expiration"""

    @abstractmethod
    async def get(self, release_id: int, track_index: int) -> Optional[MatchRecord]:
        pass

    @abstractmethod
    async def set(
        self,
        release_id: int,
        track_index: int,
        record: MatchRecord,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        pass

    @abstractmethod
    async def delete(self, release_id: int, track_index: int) -> None:
        pass

    @abstractmethod
    async def clear_release(self, release_id: int) -> int:
        """Drop every cached track of a release; returns the number removed"""

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        """``{"total_keys", "match_keys", "memory_usage"}``"""

    @abstractmethod
    async def ping(self) -> bool:
        pass

    @asynccontextmanager
    async def single_flight(self, release_id: int, track_index: int, timeout: int = 30) -> AsyncIterator[bool]:
        """
        Hold a per-key lock while computing a missing match.

        Yields whether the lock is actually held. Implementations without
        locking yield False and callers proceed unlocked.
        """
        yield False


class RedisMatchCache(MatchCache):
    """MatchCache over a shared ``redis.asyncio`` client (decode_responses=True)"""

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    async def get(self, release_id: int, track_index: int) -> Optional[MatchRecord]:
        key = match_key(release_id, track_index)
        try:
            raw = await self.redis.get(key)
        except _DRIVER_ERRORS as e:
            raise self._unavailable("get", key, e)

        if raw is None:
            return None

        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise TypeError(f"expected a JSON object, got {type(payload).__name__}")
            return MatchRecord.from_cache_dict(payload, release_id, track_index)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Corrupted cache entry, discarding", key=key, error=str(e))
            await self.delete(release_id, track_index)
            return None

    async def set(
        self,
        release_id: int,
        track_index: int,
        record: MatchRecord,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        key = match_key(release_id, track_index)
        try:
            await self.redis.setex(key, ttl_seconds, json.dumps(record.to_cache_dict()))
        except _DRIVER_ERRORS as e:
            raise self._unavailable("set", key, e)
        logger.debug("Cached match", key=key, ttl_seconds=ttl_seconds)

    async def delete(self, release_id: int, track_index: int) -> None:
        key = match_key(release_id, track_index)
        try:
            await self.redis.delete(key)
        except _DRIVER_ERRORS as e:
            raise self._unavailable("delete", key, e)

    async def clear_release(self, release_id: int) -> int:
        pattern = f"match:{release_id}:*"
        try:
            keys = [key async for key in self.redis.scan_iter(match=pattern)]
            if not keys:
                return 0
            return await self.redis.delete(*keys)
        except _DRIVER_ERRORS as e:
            raise self._unavailable("clear_release", pattern, e)

    async def stats(self) -> Dict[str, Any]:
        try:
            match_keys = await self.redis.keys("match:*")
            keyspace = await self.redis.info("keyspace")
            memory = await self.redis.info("memory")
        except _DRIVER_ERRORS as e:
            raise self._unavailable("stats", "match:*", e)

        db0 = keyspace.get("db0") or {}
        return {
            "total_keys": int(db0.get("keys", 0)) if isinstance(db0, dict) else 0,
            "match_keys": len(match_keys),
            "memory_usage": memory.get("used_memory_human"),
        }

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except _DRIVER_ERRORS as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    @asynccontextmanager
    async def single_flight(self, release_id: int, track_index: int, timeout: int = 30) -> AsyncIterator[bool]:
        lock = self.redis.lock(
            f"lock:{match_key(release_id, track_index)}",
            timeout=timeout,
            blocking_timeout=timeout,
        )
        try:
            acquired = bool(await lock.acquire())
        except _DRIVER_ERRORS as e:
            cache_errors_total.labels(operation="lock").inc()
            logger.warning("Could not take match lock, continuing unlocked", error=str(e))
            acquired = False

        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await lock.release()
                except _DRIVER_ERRORS as e:
                    # Lock expired before release
                    logger.warning("Match lock release failed", error=str(e))

    @staticmethod
    def _unavailable(operation: str, key: str, error: Exception) -> CacheUnavailableError:
        cache_errors_total.labels(operation=operation).inc()
        return CacheUnavailableError(f"Redis {operation} failed for {key}: {error}")


_redis_client: Optional[redis.Redis] = None
# Created on first use so it binds to the running event loop
_redis_lock: Optional[asyncio.Lock] = None


def _get_redis_lock() -> asyncio.Lock:
    global _redis_lock

    if _redis_lock is None:
        _redis_lock = asyncio.Lock()
    return _redis_lock


async def get_redis_client(url: str) -> redis.Redis:
    """Process-wide Redis client, created on first use"""
    global _redis_client

    if _redis_client is None:
        async with _get_redis_lock():
            if _redis_client is None:
                _redis_client = redis.from_url(url, decode_responses=True, max_connections=50)
                logger.info("Redis client created", url=url.rsplit("@", 1)[-1])
    return _redis_client


async def close_redis_client() -> None:
    global _redis_client, _redis_lock

    async with _get_redis_lock():
        if _redis_client is not None:
            await _redis_client.aclose()
            _redis_client = None
            logger.info("Redis client closed")
    _redis_lock = None
