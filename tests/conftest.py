"""
Shared fixtures: in-memory databases, stores and a controllable clock.
"""

from datetime import datetime, timedelta, timezone

import pytest

from storage.collectable_store import CollectableStore
from storage.database import Database
from storage.social_store import SocialStore


class FakeClock:
    """Deterministic clock for window tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db():
    """Initialized in-memory database."""
    database = Database(":memory:")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
async def file_db(tmp_path):
    """On-disk database with a real connection pool (for concurrency tests)."""
    database = Database(tmp_path / "catalog.db", pool_size=4, busy_timeout_ms=5000)
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def collectable_store(db):
    return CollectableStore(db)


@pytest.fixture
def social_store(db):
    return SocialStore(db)
