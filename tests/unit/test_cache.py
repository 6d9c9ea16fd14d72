"""
Unit tests for the Redis cache tier.
"""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockError

import audio_matching.cache as cache_module
from audio_matching.cache import RedisMatchCache, close_redis_client, get_redis_client, match_key
from audio_matching.errors import CacheUnavailableError
from audio_matching.models import MatchRecord, MatchSource


@pytest.fixture
def record():
    return MatchRecord(
        platform="youtube",
        match_url="https://youtube.com/watch?v=abc123",
        confidence=95,
        approved=True,
        verified_by="admin-1",
        verified_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        release_id=7,
        track_index=2,
    )


@pytest.fixture
def match_cache(mock_redis_client):
    return RedisMatchCache(mock_redis_client)


def test_key_format():
    assert match_key(123, 4) == "match:123:4"


class TestRedisMatchCache:

    @pytest.mark.asyncio
    async def test_get_miss(self, match_cache, mock_redis_client):
        assert await match_cache.get(7, 2) is None
        mock_redis_client.get.assert_awaited_once_with("match:7:2")

    @pytest.mark.asyncio
    async def test_set_then_get(self, match_cache, mock_redis_client, record):
        await match_cache.set(7, 2, record, ttl_seconds=3600)

        key, ttl, payload = mock_redis_client.setex.await_args.args
        assert key == "match:7:2"
        assert ttl == 3600
        assert json.loads(payload)["verified_at"] == "2024-05-01T12:00:00+00:00"

        mock_redis_client.get.return_value = payload
        cached = await match_cache.get(7, 2)

        assert cached.source == MatchSource.CACHE
        assert cached.match_url == record.match_url
        assert cached.confidence == 95
        assert cached.verified_at == record.verified_at
        assert (cached.release_id, cached.track_index) == (7, 2)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", ["{not json", "null", "[]", "42", '"text"'])
    async def test_corrupted_entry_is_deleted(self, match_cache, mock_redis_client, payload):
        mock_redis_client.get.return_value = payload

        assert await match_cache.get(7, 2) is None
        mock_redis_client.delete.assert_awaited_once_with("match:7:2")

    @pytest.mark.asyncio
    async def test_entry_missing_fields_is_deleted(self, match_cache, mock_redis_client):
        mock_redis_client.get.return_value = json.dumps({"platform": "youtube"})

        assert await match_cache.get(7, 2) is None
        mock_redis_client.delete.assert_awaited_once_with("match:7:2")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["get", "setex", "delete"])
    async def test_driver_errors_become_cache_unavailable(self, match_cache, mock_redis_client, record, operation):
        getattr(mock_redis_client, operation).side_effect = RedisConnectionError("refused")

        with pytest.raises(CacheUnavailableError):
            if operation == "get":
                await match_cache.get(7, 2)
            elif operation == "setex":
                await match_cache.set(7, 2, record)
            else:
                await match_cache.delete(7, 2)

    @pytest.mark.asyncio
    async def test_clear_release(self, match_cache, mock_redis_client):
        async def scan(match=None):
            for key in ["match:7:0", "match:7:1"]:
                yield key

        mock_redis_client.scan_iter = MagicMock(side_effect=scan)
        mock_redis_client.delete.return_value = 2

        assert await match_cache.clear_release(7) == 2
        mock_redis_client.scan_iter.assert_called_once_with(match="match:7:*")
        mock_redis_client.delete.assert_awaited_once_with("match:7:0", "match:7:1")

    @pytest.mark.asyncio
    async def test_clear_release_nothing_cached(self, match_cache, mock_redis_client):
        async def scan(match=None):
            for key in []:
                yield key

        mock_redis_client.scan_iter = MagicMock(side_effect=scan)

        assert await match_cache.clear_release(7) == 0
        mock_redis_client.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stats(self, match_cache, mock_redis_client):
        mock_redis_client.keys.return_value = ["match:1:0", "match:1:1"]

        async def info(section):
            if section == "keyspace":
                return {"db0": {"keys": 12, "expires": 2}}
            return {"used_memory_human": "1.02M"}

        mock_redis_client.info.side_effect = info

        assert await match_cache.stats() == {"total_keys": 12, "match_keys": 2, "memory_usage": "1.02M"}

    @pytest.mark.asyncio
    async def test_ping(self, match_cache, mock_redis_client):
        assert await match_cache.ping() is True

        mock_redis_client.ping.side_effect = RedisConnectionError("refused")
        assert await match_cache.ping() is False


class TestSingleFlight:

    @pytest.fixture
    def lock(self, mock_redis_client):
        lock = AsyncMock()
        lock.acquire.return_value = True
        mock_redis_client.lock = MagicMock(return_value=lock)
        return lock

    @pytest.mark.asyncio
    async def test_lock_held_and_released(self, match_cache, mock_redis_client, lock):
        async with match_cache.single_flight(7, 2, timeout=10) as locked:
            assert locked is True

        mock_redis_client.lock.assert_called_once_with("lock:match:7:2", timeout=10, blocking_timeout=10)
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lock_not_acquired(self, match_cache, lock):
        lock.acquire.return_value = False

        async with match_cache.single_flight(7, 2) as locked:
            assert locked is False
        lock.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lock_error_falls_back_unlocked(self, match_cache, lock):
        lock.acquire.side_effect = RedisConnectionError("refused")

        async with match_cache.single_flight(7, 2) as locked:
            assert locked is False

    @pytest.mark.asyncio
    async def test_expired_lock_release_is_tolerated(self, match_cache, lock):
        lock.release.side_effect = LockError("not owned")

        async with match_cache.single_flight(7, 2) as locked:
            assert locked is True

    @pytest.mark.asyncio
    async def test_body_errors_propagate_and_release(self, match_cache, lock):
        with pytest.raises(RuntimeError):
            async with match_cache.single_flight(7, 2):
                raise RuntimeError("compute failed")
        lock.release.assert_awaited_once()


class TestSharedClient:

    @pytest.fixture
    def from_url(self, monkeypatch):
        monkeypatch.setattr(cache_module, "_redis_client", None)
        monkeypatch.setattr(cache_module, "_redis_lock", None)
        factory = MagicMock(side_effect=lambda *args, **kwargs: AsyncMock())
        monkeypatch.setattr(cache_module.redis, "from_url", factory)
        return factory

    @pytest.mark.asyncio
    async def test_client_is_shared_until_closed(self, from_url):
        first = await get_redis_client("redis://:secret@localhost:6379/0")
        second = await get_redis_client("redis://:secret@localhost:6379/0")

        assert first is second
        from_url.assert_called_once_with("redis://:secret@localhost:6379/0", decode_responses=True, max_connections=50)

        await close_redis_client()

        first.aclose.assert_awaited_once()
        assert cache_module._redis_client is None
        assert cache_module._redis_lock is None

    def test_reopen_on_a_new_event_loop(self, from_url):
        async def open_and_close():
            clients = await asyncio.gather(
                get_redis_client("redis://localhost:6379/0"),
                get_redis_client("redis://localhost:6379/0"),
            )
            assert clients[0] is clients[1]
            await close_redis_client()

        asyncio.run(open_and_close())
        asyncio.run(open_and_close())

        assert from_url.call_count == 2
