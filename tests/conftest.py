"""
Shared fixtures for audio matching tests.

Tier fakes keep state in dicts so orchestrator tests can assert on what was
cached and persisted without Redis or PostgreSQL.
"""

import copy
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

from audio_matching.cache import MatchCache
from audio_matching.errors import CacheUnavailableError, PersistenceUnavailableError
from audio_matching.models import Candidate, CatalogTrack, MatchRecord, MatchSource, Platform
from audio_matching.orchestrator import MatchOrchestrator
from audio_matching.resolution import MatchResolutionEngine
from audio_matching.store import MatchStore

Key = Tuple[int, int]


class InMemoryMatchCache(MatchCache):
    def __init__(self):
        self.entries: Dict[Key, MatchRecord] = {}
        self.ttls: Dict[Key, int] = {}
        self.fail = False
        self.set_calls = 0

    def _check(self):
        if self.fail:
            raise CacheUnavailableError("cache down")

    async def get(self, release_id, track_index):
        self._check()
        record = self.entries.get((release_id, track_index))
        return record.with_source(MatchSource.CACHE) if record else None

    async def set(self, release_id, track_index, record, ttl_seconds=86400):
        self._check()
        self.set_calls += 1
        self.entries[(release_id, track_index)] = copy.deepcopy(record)
        self.ttls[(release_id, track_index)] = ttl_seconds

    async def delete(self, release_id, track_index):
        self._check()
        self.entries.pop((release_id, track_index), None)

    async def clear_release(self, release_id):
        self._check()
        keys = [key for key in self.entries if key[0] == release_id]
        for key in keys:
            del self.entries[key]
        return len(keys)

    async def stats(self):
        self._check()
        return {"total_keys": len(self.entries), "match_keys": len(self.entries), "memory_usage": None}

    async def ping(self):
        return not self.fail


class InMemoryMatchStore(MatchStore):
    def __init__(self):
        self.rows: Dict[Key, MatchRecord] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.upsert_calls = 0

    async def get(self, release_id, track_index):
        if self.fail_reads:
            raise PersistenceUnavailableError("db down")
        record = self.rows.get((release_id, track_index))
        return record.with_source(MatchSource.DATABASE) if record else None

    async def upsert(self, record):
        self.upsert_calls += 1
        if self.fail_writes:
            raise PersistenceUnavailableError("db down")
        stored = copy.deepcopy(record)
        stored.verified_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        stored.source = MatchSource.DATABASE
        self.rows[(record.release_id, record.track_index)] = stored
        return copy.deepcopy(stored)

    async def delete(self, release_id, track_index):
        if self.fail_writes:
            raise PersistenceUnavailableError("db down")
        return self.rows.pop((release_id, track_index), None) is not None

    async def list_for_release(self, release_id):
        if self.fail_reads:
            raise PersistenceUnavailableError("db down")
        return [
            record.with_source(MatchSource.DATABASE)
            for key, record in sorted(self.rows.items())
            if key[0] == release_id
        ]

    async def delete_release(self, release_id):
        if self.fail_writes:
            raise PersistenceUnavailableError("db down")
        keys = [key for key in self.rows if key[0] == release_id]
        for key in keys:
            del self.rows[key]
        return len(keys)

    async def ping(self):
        return not (self.fail_reads or self.fail_writes)


class FakeSearchAdapter:
    """Returns canned candidates per platform; an Exception value is raised instead"""

    def __init__(self, results: Optional[Dict[Platform, Union[List[Candidate], Exception]]] = None):
        self.results = results or {}
        self.queries: List[Tuple[Platform, str]] = []

    @property
    def platforms(self):
        return [Platform.YOUTUBE, Platform.SOUNDCLOUD]

    async def search(self, platform, query):
        self.queries.append((platform, query))
        result = self.results.get(platform, [])
        if isinstance(result, Exception):
            raise result
        return copy.deepcopy(result)

    async def close(self):
        pass


def make_candidate(
    title="Test Track",
    artist="Test Artist",
    duration=225,
    platform=Platform.YOUTUBE,
    external_id="abc123",
    **kwargs,
) -> Candidate:
    if platform == Platform.YOUTUBE:
        url = f"https://youtube.com/watch?v={external_id}"
    else:
        url = f"https://soundcloud.com/test/{external_id}"
    return Candidate(
        platform=platform,
        external_id=external_id,
        title=title,
        artist=artist,
        duration=duration,
        url=url,
        **kwargs,
    )


@pytest.fixture
def cache():
    return InMemoryMatchCache()


@pytest.fixture
def store():
    return InMemoryMatchStore()


@pytest.fixture
def search_adapter():
    return FakeSearchAdapter({Platform.YOUTUBE: [make_candidate()]})


@pytest.fixture
def engine(search_adapter):
    return MatchResolutionEngine(search_adapter)


@pytest.fixture
def orchestrator(cache, store, engine):
    return MatchOrchestrator(cache, store, engine)


@pytest.fixture
def sample_track():
    return CatalogTrack(position="A1", title="Test Track", duration="3:45", artists=[])


@pytest.fixture
def mock_redis_client():
    """Mock redis.asyncio client"""
    redis_mock = AsyncMock()
    redis_mock.get.return_value = None
    redis_mock.setex.return_value = True
    redis_mock.delete.return_value = 1
    redis_mock.ping.return_value = True
    return redis_mock


@pytest.fixture
def mock_db_pool():
    """Mock asyncpg pool whose acquire() yields ``pool.conn``"""
    pool = MagicMock()

    conn = AsyncMock()
    conn.fetch.return_value = []
    conn.fetchrow.return_value = None
    conn.fetchval.return_value = 1
    conn.execute.return_value = "DELETE 0"

    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = None
    pool.conn = conn
    return pool
