"""
Tests for CollectableDiscoveryHook and the per-source payload builders.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from discovery.hook import CollectableDiscoveryHook, HookStatus
from discovery.payloads import (
    build_bluray_payload,
    build_generic_payload,
    build_igdb_payload,
    build_payload,
    build_tmdb_payload,
)
from storage.collectable_store import Collectable

TMDB_DUNE = {
    "id": 438631,
    "title": "Dune",
    "overview": "Paul Atreides leads nomadic tribes.",
    "release_date": "2021-10-22",
    "poster_path": "/d5NXSklXo0qyIYkgV94XAgMIckC.jpg",
}

BLURAY_DUNE = {
    "title": "Dune 4K Blu-ray",
    "format": "4K UHD",
    "source_url": "https://bluray.example/dune-4k",
}


@pytest.fixture
def hook(collectable_store, clock):
    return CollectableDiscoveryHook(collectable_store, clock=clock)


def mock_store():
    store = MagicMock()
    store.find_by_lightweight_fingerprint = AsyncMock(return_value=None)
    store.find_by_exact_fingerprint = AsyncMock(return_value=None)
    store.add_source = AsyncMock()
    store.upsert = AsyncMock()
    return store


class TestProcessEnrichedItem:
    """Status transitions for one discovery item."""

    async def test_created_then_exists(self, hook, collectable_store):
        first = await hook.process_enriched_item("bluray", "movie", TMDB_DUNE, BLURAY_DUNE)
        second = await hook.process_enriched_item("tmdb", "movies", TMDB_DUNE, {"title": "Dune"})

        assert first.status == HookStatus.CREATED
        assert second.status == HookStatus.EXISTS
        assert second.collectable.id == first.collectable.id
        assert await collectable_store.count() == 1

        stored = await collectable_store.find_by_id(first.collectable.id)
        assert [s["provider"] for s in stored.sources] == ["bluray", "tmdb"]
        assert stored.sources[0]["url"] == "https://bluray.example/dune-4k"
        assert stored.formats == ["4K UHD"]
        assert stored.external_id == "tmdb:438631"
        assert stored.kind == "movie"

    async def test_provenance_timestamp_uses_clock(self, hook, clock):
        result = await hook.process_enriched_item("tmdb", "movie", TMDB_DUNE, {})

        assert result.collectable.sources[0]["discovered_at"] == clock.now.isoformat()

    async def test_missing_title_is_skipped(self, hook, collectable_store):
        result = await hook.process_enriched_item("bluray", "movie", None, {"title": "  ", "format": "Blu-ray"})

        assert result.status == HookStatus.SKIPPED
        assert result.reason == "no_title"
        assert await collectable_store.count() == 0

    async def test_no_data_is_skipped(self, hook):
        result = await hook.process_enriched_item("bluray", "movie", None, None)
        assert result.status == HookStatus.SKIPPED

    async def test_disabled(self, collectable_store):
        hook = CollectableDiscoveryHook(collectable_store, enabled=False)

        result = await hook.process_enriched_item("tmdb", "movie", TMDB_DUNE, {})

        assert result.status == HookStatus.DISABLED
        assert await collectable_store.count() == 0

    async def test_lookup_failure_continues_to_upsert(self):
        store = mock_store()
        store.find_by_lightweight_fingerprint.side_effect = RuntimeError("database is locked")
        store.upsert.return_value = Collectable(id=5, title="Dune", kind="movie")
        hook = CollectableDiscoveryHook(store)

        result = await hook.process_enriched_item("tmdb", "movie", TMDB_DUNE, {})

        assert result.status == HookStatus.CREATED
        assert result.collectable.id == 5
        store.upsert.assert_awaited_once()
        candidate = store.upsert.call_args.args[0]
        assert candidate.fingerprint is not None
        assert candidate.sources[0]["provider"] == "tmdb"

    async def test_upsert_failure_is_error(self):
        store = mock_store()
        store.upsert.side_effect = RuntimeError("disk full")
        hook = CollectableDiscoveryHook(store)

        result = await hook.process_enriched_item("tmdb", "movie", TMDB_DUNE, {})

        assert result.status == HookStatus.ERROR
        assert result.reason == "disk full"
        assert result.to_dict()["status"] == "error"

    async def test_provenance_failure_still_exists(self):
        store = mock_store()
        store.find_by_lightweight_fingerprint.return_value = Collectable(id=9, title="Dune")
        store.add_source.side_effect = RuntimeError("database is locked")
        hook = CollectableDiscoveryHook(store)

        result = await hook.process_enriched_item("tmdb", "movie", TMDB_DUNE, {})

        assert result.status == HookStatus.EXISTS
        assert result.collectable.id == 9
        store.upsert.assert_not_awaited()


class TestPayloadBuilders:

    def test_bluray_with_tmdb(self):
        payload = build_bluray_payload(TMDB_DUNE, BLURAY_DUNE)

        assert payload.title == "Dune"
        assert payload.year == 2021
        assert payload.cover_url == "https://image.tmdb.org/t/p/w500/d5NXSklXo0qyIYkgV94XAgMIckC.jpg"
        assert payload.formats == ["4K UHD"]
        assert payload.identifiers == {"tmdb": "438631", "bluray_url": "https://bluray.example/dune-4k"}
        assert payload.external_id == "tmdb:438631"

    def test_bluray_without_tmdb(self):
        payload = build_bluray_payload(None, BLURAY_DUNE)

        assert payload.title == "Dune 4K Blu-ray"
        assert payload.year is None
        assert payload.cover_url is None
        assert payload.identifiers == {"bluray_url": "https://bluray.example/dune-4k"}

    def test_igdb(self):
        payload = build_igdb_payload(
            {
                "id": 1942,
                "name": "The Witcher 3: Wild Hunt",
                "summary": "Geralt hunts monsters.",
                "first_release_date": 1431993600,
                "involved_companies": [{"company": {"name": "CD Projekt Red"}}],
                "platforms": [{"name": "PC"}, {"name": "PlayStation 4"}],
                "genres": [{"name": "Role-playing (RPG)"}],
                "cover": {"url": "https://images.igdb.example/witcher3.jpg"},
            },
            {"title": "witcher 3"},
        )

        assert payload.title == "The Witcher 3: Wild Hunt"
        assert payload.year == 2015
        assert payload.primary_creator == "CD Projekt Red"
        assert payload.formats == ["PC", "PlayStation 4"]
        assert payload.tags == ["Role-playing (RPG)"]
        assert payload.external_id == "igdb:1942"

    def test_tmdb_tv_uses_first_air_date(self):
        payload = build_tmdb_payload({"id": 1399, "name": "Game of Thrones", "first_air_date": "2011-04-17"}, {})

        assert payload.title == "Game of Thrones"
        assert payload.year == 2011
        assert payload.cover_url is None

    def test_generic(self):
        payload = build_generic_payload(None, {"name": "Hyperion", "author": "Dan Simmons", "release_year": "1989"})

        assert payload.title == "Hyperion"
        assert payload.primary_creator == "Dan Simmons"
        assert payload.year == 1989

    def test_unknown_source_routes_to_generic(self):
        payload = build_payload("openlibrary", None, {"title": "Hyperion", "year": "1989-05-01"})

        assert payload.title == "Hyperion"
        assert payload.year == 1989
