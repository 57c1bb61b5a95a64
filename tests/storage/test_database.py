"""
Tests for the Database handle: migrations, pooling and transactions.
"""

import asyncio

import aiosqlite
import pytest

from storage.database import (
    CURRENT_SCHEMA_VERSION,
    Database,
    database,
    is_transient_store_error,
    parse_datetime,
    to_iso,
)


class TestMigrations:

    async def test_schema_version(self, db):
        assert await db.get_schema_version() == CURRENT_SCHEMA_VERSION

    async def test_reinitialize_is_noop(self, tmp_path):
        path = tmp_path / "catalog.db"
        async with database(path) as first:
            assert await first.get_schema_version() == CURRENT_SCHEMA_VERSION
        async with database(path) as second:
            rows = await second.fetch_all("SELECT version FROM schema_migrations ORDER BY version")
            assert [row["version"] for row in rows] == list(range(1, CURRENT_SCHEMA_VERSION + 1))

    async def test_similarity_function_registered(self, db):
        row = await db.fetch_one("SELECT similarity('The Hobbit', 'the hobit') AS sim")
        assert row["sim"] == pytest.approx(0.75)

    async def test_foreign_keys_enforced(self, db):
        with pytest.raises(aiosqlite.IntegrityError):
            await db.execute(
                "INSERT INTO event_likes (event_id, user_id, created_at) VALUES ('missing', 'u1', 'now')"
            )


class TestPoolAndTransactions:

    async def test_memory_pool_is_single_connection(self):
        assert Database(":memory:", pool_size=8).pool_size == 1

    async def test_uninitialized_acquire_raises(self):
        with pytest.raises(RuntimeError):
            async with Database(":memory:").acquire():
                pass

    async def test_rollback_on_error(self, db):
        with pytest.raises(RuntimeError):
            async with db.transaction() as conn:
                await conn.execute(
                    "INSERT INTO event_logs (payload, created_at) VALUES ('{}', 'now')"
                )
                raise RuntimeError("abort")

        row = await db.fetch_one("SELECT COUNT(*) FROM event_logs")
        assert row[0] == 0

    async def test_connection_returned_after_error(self, db):
        for _ in range(3):
            with pytest.raises(aiosqlite.OperationalError):
                await db.fetch_one("SELECT * FROM no_such_table")
        assert (await db.fetch_one("SELECT 1"))[0] == 1

    @pytest.mark.integration
    async def test_cancelled_lock_wait_leaves_pool_clean(self, tmp_path):
        db = Database(tmp_path / "catalog.db", pool_size=2, busy_timeout_ms=1500)
        await db.initialize()
        insert = "INSERT INTO event_logs (payload, created_at) VALUES ('{}', 'now')"
        try:
            locked = asyncio.Event()
            release = asyncio.Event()

            async def hold_write_lock():
                async with db.transaction():
                    locked.set()
                    await release.wait()

            blocker = asyncio.create_task(hold_write_lock())
            await locked.wait()
            # The writer is cancelled while BEGIN IMMEDIATE is still waiting;
            # the lock frees up afterwards and BEGIN then succeeds in the background
            asyncio.get_running_loop().call_later(0.3, release.set)

            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(db.execute(insert), timeout=0.1)
            await blocker

            await asyncio.gather(*[db.execute(insert) for _ in range(4)])
            row = await db.fetch_one("SELECT COUNT(*) FROM event_logs")
            assert row[0] == 4
        finally:
            await asyncio.wait_for(db.close(), timeout=5)

    @pytest.mark.integration
    async def test_lock_wait_beyond_busy_timeout(self, tmp_path):
        db = Database(tmp_path / "catalog.db", pool_size=2, busy_timeout_ms=100)
        await db.initialize()
        insert = "INSERT INTO event_logs (payload, created_at) VALUES ('{}', 'now')"
        try:
            async with db.transaction():
                with pytest.raises(aiosqlite.OperationalError, match="locked"):
                    await db.execute(insert)

            for _ in range(3):
                await db.execute(insert)
            row = await db.fetch_one("SELECT COUNT(*) FROM event_logs")
            assert row[0] == 3
        finally:
            await asyncio.wait_for(db.close(), timeout=5)

    @pytest.mark.integration
    async def test_pooled_reads_run_concurrently(self, file_db):
        results = await asyncio.gather(*[file_db.fetch_one("SELECT ?", (i,)) for i in range(10)])
        assert [row[0] for row in results] == list(range(10))


class TestHelpers:

    def test_transient_errors(self):
        assert is_transient_store_error(aiosqlite.OperationalError("database is locked"))
        assert is_transient_store_error(asyncio.TimeoutError())
        assert not is_transient_store_error(aiosqlite.OperationalError("no such table: x"))
        assert not is_transient_store_error(aiosqlite.IntegrityError("UNIQUE constraint failed"))

    def test_iso_round_trip_is_utc_and_sortable(self):
        value = parse_datetime("2026-03-01T12:00:00")
        assert value.tzinfo is not None
        assert to_iso(value) == "2026-03-01T12:00:00.000000+00:00"
        assert parse_datetime(None) is None
