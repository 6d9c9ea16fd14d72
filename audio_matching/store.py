"""
Persistence tier for reviewed matches

One ``track_matches`` row per (release_id, track_index), enforced by a unique
constraint and written with INSERT ... ON CONFLICT DO UPDATE so repeated
approvals overwrite rather than duplicate.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

import asyncpg
import structlog

from .errors import PersistenceUnavailableError
from .models import MatchRecord

logger = structlog.get_logger(__name__)

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS track_matches (
    id SERIAL PRIMARY KEY,
    release_id BIGINT NOT NULL,
    track_index INTEGER NOT NULL,
    platform TEXT NOT NULL,
    match_url TEXT NOT NULL,
    confidence INTEGER NOT NULL CHECK (confidence BETWEEN 0 AND 100),
    approved BOOLEAN NOT NULL DEFAULT false,
    verified_by TEXT,
    verified_at TIMESTAMPTZ DEFAULT NOW(),
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    CONSTRAINT track_matches_release_track_key UNIQUE (release_id, track_index)
);
CREATE INDEX IF NOT EXISTS idx_track_matches_release ON track_matches (release_id);
"""

_COLUMNS = "release_id, track_index, platform, match_url, confidence, approved, verified_by, verified_at"

UPSERT_SQL = f"""
INSERT INTO track_matches (release_id, track_index, platform, match_url, confidence, approved, verified_by, verified_at)
VALUES ($1, $2, $3, $4, $5, $6, $7, NOW())
ON CONFLICT (release_id, track_index)
DO UPDATE SET
    platform = EXCLUDED.platform,
    match_url = EXCLUDED.match_url,
    confidence = EXCLUDED.confidence,
    approved = EXCLUDED.approved,
    verified_by = EXCLUDED.verified_by,
    verified_at = NOW(),
    updated_at = NOW()
RETURNING {_COLUMNS}
"""


class MatchStore(ABC):
    """Durable MatchRecord storage keyed by (release_id, track_index)"""

    @abstractmethod
    async def get(self, release_id: int, track_index: int) -> Optional[MatchRecord]:
        pass

    @abstractmethod
    async def upsert(self, record: MatchRecord) -> MatchRecord:
        """Insert or overwrite the record's key; verified_at is refreshed"""

    @abstractmethod
    async def delete(self, release_id: int, track_index: int) -> bool:
        """True when a row was removed"""

    @abstractmethod
    async def list_for_release(self, release_id: int) -> List[MatchRecord]:
        pass

    @abstractmethod
    async def delete_release(self, release_id: int) -> int:
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass


class PostgresMatchStore(MatchStore):
    """MatchStore over a shared asyncpg pool"""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def ensure_schema(self) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
        except _DRIVER_ERRORS as e:
            raise PersistenceUnavailableError(f"Schema bootstrap failed: {e}") from e
        logger.info("track_matches schema ensured")

    async def get(self, release_id: int, track_index: int) -> Optional[MatchRecord]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM track_matches WHERE release_id = $1 AND track_index = $2",
                    release_id,
                    track_index,
                )
        except _DRIVER_ERRORS as e:
            raise PersistenceUnavailableError(f"Match lookup failed: {e}") from e
        return MatchRecord.from_row(row) if row else None

    async def upsert(self, record: MatchRecord) -> MatchRecord:
        if record.release_id is None or record.track_index is None:
            raise ValueError("MatchRecord needs release_id and track_index to be stored")

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    UPSERT_SQL,
                    record.release_id,
                    record.track_index,
                    record.platform,
                    record.match_url,
                    record.confidence,
                    record.approved,
                    record.verified_by,
                )
        except _DRIVER_ERRORS as e:
            raise PersistenceUnavailableError(f"Match upsert failed: {e}") from e

        logger.info(
            "Match stored",
            release_id=record.release_id,
            track_index=record.track_index,
            platform=record.platform,
            confidence=record.confidence,
        )
        return MatchRecord.from_row(row)

    async def delete(self, release_id: int, track_index: int) -> bool:
        try:
            async with self.pool.acquire() as conn:
                status = await conn.execute(
                    "DELETE FROM track_matches WHERE release_id = $1 AND track_index = $2",
                    release_id,
                    track_index,
                )
        except _DRIVER_ERRORS as e:
            raise PersistenceUnavailableError(f"Match delete failed: {e}") from e
        return _affected_rows(status) > 0

    async def list_for_release(self, release_id: int) -> List[MatchRecord]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT {_COLUMNS} FROM track_matches WHERE release_id = $1 ORDER BY track_index",
                    release_id,
                )
        except _DRIVER_ERRORS as e:
            raise PersistenceUnavailableError(f"Match listing failed: {e}") from e
        return [MatchRecord.from_row(row) for row in rows]

    async def delete_release(self, release_id: int) -> int:
        try:
            async with self.pool.acquire() as conn:
                status = await conn.execute("DELETE FROM track_matches WHERE release_id = $1", release_id)
        except _DRIVER_ERRORS as e:
            raise PersistenceUnavailableError(f"Release delete failed: {e}") from e
        return _affected_rows(status)

    async def ping(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except _DRIVER_ERRORS as e:
            logger.warning("Database ping failed", error=str(e))
            return False


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 3"
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


_db_pool: Optional[asyncpg.Pool] = None
# Created on first use so it binds to the running event loop
_db_pool_lock: Optional[asyncio.Lock] = None


def _get_db_pool_lock() -> asyncio.Lock:
    global _db_pool_lock

    if _db_pool_lock is None:
        _db_pool_lock = asyncio.Lock()
    return _db_pool_lock


async def get_db_pool(
    dsn: str,
    min_size: int = 1,
    max_size: int = 5,
    command_timeout: float = 30.0,
) -> asyncpg.Pool:
    """Process-wide asyncpg pool, created on first use"""
    global _db_pool

    if _db_pool is None:
        async with _get_db_pool_lock():
            if _db_pool is None:
                _db_pool = await asyncpg.create_pool(
                    dsn,
                    min_size=min_size,
                    max_size=max_size,
                    command_timeout=command_timeout,
                )
                logger.info("Database pool created", min_size=min_size, max_size=max_size)
    return _db_pool


async def close_db_pool() -> None:
    global _db_pool, _db_pool_lock

    async with _get_db_pool_lock():
        if _db_pool is not None:
            await _db_pool.close()
            _db_pool = None
            logger.info("Database pool closed")
    _db_pool_lock = None
