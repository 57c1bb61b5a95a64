"""
Tests for EventAggregator.

Covers:
- One open aggregate per (owner, shelf, event type) key
- Window rollover and the inclusive window end
- Preview payload cap and itemCount increments
- Standalone log entries when the key is incomplete
- Concurrent recording against an on-disk database
- Check-ins as standalone single-item aggregates
"""

import asyncio

import aiosqlite
import pytest

from feed.aggregator import CHECKIN_EVENT_TYPE, EventAggregator, item_increment
from services.config import CatalogConfig

ADDED = "item.collectable_added"


@pytest.fixture
def aggregator(db, clock):
    return EventAggregator(db, window_minutes=15, preview_limit=5, clock=clock)


class TestItemIncrement:

    @pytest.mark.parametrize(
        "payload,expected",
        [
            ({}, 1),
            ({"itemCount": 3}, 3),
            ({"item_count": "4"}, 4),
            ({"itemCount": 2.9}, 2),
            ({"itemCount": 0}, 1),
            ({"itemCount": -2}, 1),
            ({"itemCount": "abc"}, 1),
            ({"itemCount": float("nan")}, 1),
            ({"itemCount": True}, 1),
        ],
    )
    def test_increment(self, payload, expected):
        assert item_increment(payload) == expected


class TestWindowing:
    """Grouping actions into windows."""

    async def test_actions_in_window_share_aggregate(self, aggregator, clock):
        first = await aggregator.record_event("alice", 1, ADDED, {"title": "Dune"})
        clock.advance(minutes=5)
        second = await aggregator.record_event("alice", 1, ADDED, {"title": "Arrakis"})

        assert first.created_aggregate is True
        assert second.created_aggregate is False
        assert first.aggregate.id == second.aggregate.id
        assert second.aggregate.item_count == 2

        logs = await aggregator.get_event_logs(first.aggregate.id)
        assert [log.id for log in logs] == [first.log_id, second.log_id]
        assert all(log.aggregate_id == first.aggregate.id for log in logs)

    async def test_window_end_is_inclusive(self, aggregator, clock):
        first = await aggregator.record_event("alice", 1, ADDED, {})
        clock.advance(minutes=15)
        second = await aggregator.record_event("alice", 1, ADDED, {})

        assert second.aggregate.id == first.aggregate.id

    async def test_rollover_after_window(self, aggregator, clock, db):
        first = await aggregator.record_event("alice", 1, ADDED, {})
        clock.advance(minutes=16)
        second = await aggregator.record_event("alice", 1, ADDED, {})

        assert second.created_aggregate is True
        assert second.aggregate.id != first.aggregate.id
        assert second.aggregate.window_start_utc == clock.now

        old = await aggregator.get_aggregate(first.aggregate.id)
        assert old.item_count == 1
        assert not old.is_open(clock.now)

    async def test_window_is_fixed_from_creation(self, aggregator, clock):
        first = await aggregator.record_event("alice", 1, ADDED, {})
        for _ in range(3):
            clock.advance(minutes=6)
            await aggregator.record_event("alice", 1, ADDED, {})

        # t=18: activity at t=12 does not extend the window
        aggregate = await aggregator.get_aggregate(first.aggregate.id)
        assert aggregate.item_count == 3
        assert aggregate.window_end_utc == first.aggregate.window_end_utc

    async def test_keys_are_independent(self, aggregator):
        a = await aggregator.record_event("alice", 1, ADDED, {})
        b = await aggregator.record_event("alice", 2, ADDED, {})
        c = await aggregator.record_event("alice", 1, "item.rated", {})
        d = await aggregator.record_event("bob", 1, ADDED, {})

        assert len({a.aggregate.id, b.aggregate.id, c.aggregate.id, d.aggregate.id}) == 4

    async def test_open_aggregate_lookup(self, aggregator, clock):
        recorded = await aggregator.record_event("alice", 1, ADDED, {})

        assert (await aggregator.get_open_aggregate("alice", 1, ADDED)).id == recorded.aggregate.id
        clock.advance(minutes=30)
        assert await aggregator.get_open_aggregate("alice", 1, ADDED) is None


class TestPreviewAndCounts:

    async def test_preview_capped_oldest_kept(self, aggregator):
        for i in range(8):
            recorded = await aggregator.record_event("alice", 1, ADDED, {"title": f"Book {i}"})

        aggregate = recorded.aggregate
        assert aggregate.item_count == 8
        assert [p["title"] for p in aggregate.preview_payloads] == [f"Book {i}" for i in range(5)]
        assert len(await aggregator.get_event_logs(aggregate.id)) == 8

    async def test_item_count_payload(self, aggregator):
        await aggregator.record_event("alice", 1, ADDED, {"itemCount": 3})
        recorded = await aggregator.record_event("alice", 1, ADDED, {"itemCount": "bogus"})

        assert recorded.aggregate.item_count == 4


class TestStandaloneEvents:

    @pytest.mark.parametrize(
        "owner,shelf,event_type",
        [(None, 1, ADDED), ("alice", None, ADDED), ("alice", "", ADDED), ("alice", 1, None)],
    )
    async def test_incomplete_key_is_standalone(self, aggregator, db, owner, shelf, event_type):
        recorded = await aggregator.record_event(owner, shelf, event_type, {"title": "Dune"})

        assert recorded.standalone
        log = await aggregator.events.get_event_log(recorded.log_id)
        assert log.aggregate_id is None
        assert log.payload == {"title": "Dune"}

        stats = await aggregator.events.stats()
        assert stats == {"aggregates": 0, "event_logs": 1, "standalone_logs": 1}


class TestConcurrency:

    @pytest.mark.integration
    async def test_concurrent_events_single_aggregate(self, file_db):
        aggregator = EventAggregator(file_db, window_minutes=15, preview_limit=5)

        results = await asyncio.gather(*[
            aggregator.record_event("alice", 1, ADDED, {"n": i}) for i in range(12)
        ])

        assert len({r.aggregate.id for r in results}) == 1
        assert sum(r.created_aggregate for r in results) == 1

        aggregates = await aggregator.events.list_aggregates("alice", 1, ADDED)
        assert len(aggregates) == 1
        assert aggregates[0].item_count == 12
        assert len(aggregates[0].preview_payloads) == 5

    async def test_timeout_rolls_back(self, db):
        async def slow_write(conn):
            await conn.execute(
                "INSERT INTO event_logs (payload, created_at) VALUES ('{}', '2026-03-01T12:00:00.000000+00:00')"
            )
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await db.run_in_transaction(slow_write, timeout=0.05)

        row = await db.fetch_one("SELECT COUNT(*) FROM event_logs")
        assert row[0] == 0

    async def test_slow_commit_is_not_retried(self, db, aggregator, monkeypatch):
        db.operation_timeout_seconds = 0.1
        original_commit = aiosqlite.Connection.commit
        slowed = []

        async def slow_commit(conn):
            await original_commit(conn)
            if not slowed:
                slowed.append(conn)
                await asyncio.sleep(0.3)

        monkeypatch.setattr(aiosqlite.Connection, "commit", slow_commit)

        recorded = await aggregator.record_event("alice", 1, ADDED, {"title": "Dune"})

        assert slowed
        assert recorded.aggregate.item_count == 1
        aggregates = await aggregator.events.list_aggregates("alice", 1, ADDED)
        assert [a.item_count for a in aggregates] == [1]
        assert (await aggregator.events.stats())["event_logs"] == 1


class TestCheckIns:

    async def test_check_in_is_standalone_aggregate(self, aggregator, clock):
        first = await aggregator.record_check_in("alice", "starting", collectable_id=42, note="  day one ")
        second = await aggregator.record_check_in("alice", "continuing", collectable_id=42, visibility="friends")

        assert first.aggregate.id != second.aggregate.id
        stored = await aggregator.get_aggregate(first.aggregate.id)
        assert stored.event_type == CHECKIN_EVENT_TYPE
        assert stored.item_count == 1
        assert stored.shelf_id is None
        assert stored.window_start_utc == stored.window_end_utc == clock.now
        assert stored.checkin_status == "starting"
        assert stored.note == "day one"
        assert stored.preview_payloads[0]["collectableId"] == 42

        logs = await aggregator.get_event_logs(first.aggregate.id)
        assert [log.id for log in logs] == [first.log_id]

    @pytest.mark.parametrize(
        "kwargs",
        [
            dict(owner_id="alice", status="finished", collectable_id=1),
            dict(owner_id="alice", status="starting", collectable_id=1, visibility="private"),
            dict(owner_id="alice", status="starting"),
            dict(owner_id="alice", status="starting", collectable_id=1, manual_id=2),
            dict(owner_id="", status="starting", collectable_id=1),
        ],
    )
    async def test_invalid_check_in(self, aggregator, kwargs):
        with pytest.raises(ValueError):
            await aggregator.record_check_in(**kwargs)


class TestFromConfig:

    def test_from_config(self, db):
        config = CatalogConfig(aggregate_window_minutes=30, preview_payload_limit=2)
        aggregator = EventAggregator.from_config(db, config)

        assert aggregator.window.total_seconds() == 1800
        assert aggregator.preview_limit == 2
