"""
Unit tests for the PostgreSQL persistence tier.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

import audio_matching.store as store_module
from audio_matching.errors import PersistenceUnavailableError
from audio_matching.models import MatchRecord, MatchSource
from audio_matching.store import SCHEMA_SQL, UPSERT_SQL, PostgresMatchStore, close_db_pool, get_db_pool

VERIFIED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_row(**overrides):
    row = {
        "release_id": 7,
        "track_index": 2,
        "platform": "youtube",
        "match_url": "https://youtube.com/watch?v=abc123",
        "confidence": 95,
        "approved": True,
        "verified_by": "admin-1",
        "verified_at": VERIFIED_AT,
    }
    row.update(overrides)
    return row


@pytest.fixture
def match_store(mock_db_pool):
    return PostgresMatchStore(mock_db_pool)


class TestPostgresMatchStore:

    @pytest.mark.asyncio
    async def test_get_hit(self, match_store, mock_db_pool):
        mock_db_pool.conn.fetchrow.return_value = make_row()

        record = await match_store.get(7, 2)

        assert record.source == MatchSource.DATABASE
        assert record.platform == "youtube"
        assert record.verified_at == VERIFIED_AT
        query, release_id, track_index = mock_db_pool.conn.fetchrow.await_args.args
        assert "WHERE release_id = $1 AND track_index = $2" in query
        assert (release_id, track_index) == (7, 2)

    @pytest.mark.asyncio
    async def test_get_miss(self, match_store):
        assert await match_store.get(7, 2) is None

    @pytest.mark.asyncio
    async def test_upsert_overwrites_on_conflict(self, match_store, mock_db_pool):
        mock_db_pool.conn.fetchrow.return_value = make_row(platform="soundcloud", match_url="https://soundcloud.com/x")
        record = MatchRecord(
            platform="soundcloud",
            match_url="https://soundcloud.com/x",
            confidence=95,
            approved=True,
            verified_by="admin-1",
            release_id=7,
            track_index=2,
        )

        stored = await match_store.upsert(record)

        args = mock_db_pool.conn.fetchrow.await_args.args
        assert args[0] == UPSERT_SQL
        assert args[1:] == (7, 2, "soundcloud", "https://soundcloud.com/x", 95, True, "admin-1")
        assert stored.platform == "soundcloud"
        assert stored.verified_at == VERIFIED_AT

    def test_upsert_sql_conflict_clause(self):
        assert "ON CONFLICT (release_id, track_index)" in UPSERT_SQL
        for column in ("platform", "match_url", "confidence", "approved", "verified_by"):
            assert f"{column} = EXCLUDED.{column}" in UPSERT_SQL
        assert "verified_at = NOW()" in UPSERT_SQL

    def test_schema_has_unique_key(self):
        assert "UNIQUE (release_id, track_index)" in SCHEMA_SQL

    @pytest.mark.asyncio
    async def test_upsert_requires_key(self, match_store):
        with pytest.raises(ValueError):
            await match_store.upsert(MatchRecord("youtube", "https://youtube.com/watch?v=x", 90, True))

    @pytest.mark.asyncio
    async def test_delete(self, match_store, mock_db_pool):
        mock_db_pool.conn.execute.return_value = "DELETE 1"
        assert await match_store.delete(7, 2) is True

        mock_db_pool.conn.execute.return_value = "DELETE 0"
        assert await match_store.delete(7, 2) is False

    @pytest.mark.asyncio
    async def test_list_for_release(self, match_store, mock_db_pool):
        mock_db_pool.conn.fetch.return_value = [make_row(track_index=0), make_row(track_index=1)]

        records = await match_store.list_for_release(7)

        assert [r.track_index for r in records] == [0, 1]
        assert all(r.source == MatchSource.DATABASE for r in records)

    @pytest.mark.asyncio
    async def test_delete_release(self, match_store, mock_db_pool):
        mock_db_pool.conn.execute.return_value = "DELETE 3"
        assert await match_store.delete_release(7) == 3

    @pytest.mark.asyncio
    async def test_ensure_schema(self, match_store, mock_db_pool):
        await match_store.ensure_schema()
        mock_db_pool.conn.execute.assert_awaited_once_with(SCHEMA_SQL)

    @pytest.mark.asyncio
    async def test_driver_errors_become_persistence_unavailable(self, match_store, mock_db_pool):
        mock_db_pool.conn.fetchrow.side_effect = asyncpg.InterfaceError("pool is closed")
        mock_db_pool.conn.execute.side_effect = ConnectionRefusedError()

        with pytest.raises(PersistenceUnavailableError):
            await match_store.get(7, 2)
        with pytest.raises(PersistenceUnavailableError):
            await match_store.upsert(MatchRecord("youtube", "u", 90, True, release_id=7, track_index=2))
        with pytest.raises(PersistenceUnavailableError):
            await match_store.delete(7, 2)

    @pytest.mark.asyncio
    async def test_ping(self, match_store, mock_db_pool):
        assert await match_store.ping() is True

        mock_db_pool.conn.fetchval.side_effect = OSError("unreachable")
        assert await match_store.ping() is False


class TestSharedPool:

    @pytest.fixture
    def create_pool(self, monkeypatch):
        monkeypatch.setattr(store_module, "_db_pool", None)
        monkeypatch.setattr(store_module, "_db_pool_lock", None)
        factory = AsyncMock(side_effect=lambda *args, **kwargs: MagicMock(close=AsyncMock()))
        monkeypatch.setattr(store_module.asyncpg, "create_pool", factory)
        return factory

    @pytest.mark.asyncio
    async def test_pool_is_shared_until_closed(self, create_pool):
        first = await get_db_pool("postgresql://localhost/musicdb", min_size=2, max_size=4, command_timeout=5.0)
        second = await get_db_pool("postgresql://localhost/musicdb")

        assert first is second
        create_pool.assert_awaited_once_with(
            "postgresql://localhost/musicdb", min_size=2, max_size=4, command_timeout=5.0
        )

        await close_db_pool()

        first.close.assert_awaited_once()
        assert store_module._db_pool is None
        assert store_module._db_pool_lock is None

    def test_reopen_on_a_new_event_loop(self, create_pool):
        async def open_and_close():
            pools = await asyncio.gather(
                get_db_pool("postgresql://localhost/musicdb"),
                get_db_pool("postgresql://localhost/musicdb"),
            )
            assert pools[0] is pools[1]
            await close_db_pool()

        asyncio.run(open_and_close())
        asyncio.run(open_and_close())

        assert create_pool.await_count == 2
