"""
Tests for DiscoveryIngestionJob batch tallies.
"""

from unittest.mock import AsyncMock, MagicMock

from discovery.hook import CollectableDiscoveryHook, HookResult, HookStatus
from discovery.ingestion import DiscoveryIngestionJob, DiscoveryItem, IngestionStatus
from storage.collectable_store import CollectableStore


class FailingStore(CollectableStore):
    """Fails upserts for one title."""

    async def upsert(self, candidate):
        if candidate.title == "Broken":
            raise RuntimeError("disk full")
        return await super().upsert(candidate)


class TestDiscoveryItem:

    def test_wrapped_record(self):
        item = DiscoveryItem.from_dict(
            {"source": "bluray", "kind": "movie", "enrichment": {"id": 1}, "original_item": {"title": "Dune"}}
        )
        assert item.source == "bluray"
        assert item.enrichment == {"id": 1}
        assert item.original_item == {"title": "Dune"}

    def test_bare_record_uses_caller_defaults(self):
        item = DiscoveryItem.from_dict({"title": "Dune"}, source="tmdb", kind="movie")
        assert item.source == "tmdb"
        assert item.kind == "movie"
        assert item.enrichment is None
        assert item.original_item == {"title": "Dune"}


class TestDiscoveryIngestionJob:

    async def test_batch_tally(self, db):
        hook = CollectableDiscoveryHook(FailingStore(db))
        items = [
            DiscoveryItem("generic", "book", {"title": "Dune", "author": "Frank Herbert", "year": 1965}),
            DiscoveryItem("generic", "book", {"title": "DUNE", "author": "Frank Herbert", "year": 1965}),
            DiscoveryItem("generic", "book", {"title": ""}),
            DiscoveryItem("generic", "book", {"title": "Broken"}),
            DiscoveryItem("generic", "book", {"title": "Hyperion", "author": "Dan Simmons"}),
        ]

        result = await DiscoveryIngestionJob(hook).run(items)

        assert result.processed == 5
        assert result.created == 2
        assert result.existing == 1
        assert result.skipped == 1
        assert result.errored == 1
        assert result.status == IngestionStatus.PARTIAL_SUCCESS

        summary = result.to_dict()
        assert summary["status"] == "partial_success"
        assert summary["error_message"] == "'Broken': disk full"

    async def test_clean_batch_is_success(self, collectable_store):
        hook = CollectableDiscoveryHook(collectable_store)

        result = await DiscoveryIngestionJob(hook).run(
            [DiscoveryItem("generic", "book", {"title": "Dune"})]
        )

        assert result.status == IngestionStatus.SUCCESS
        assert result.to_dict()["error_message"] is None

    async def test_unexpected_hook_exception_does_not_abort(self):
        hook = MagicMock(enabled=True)
        hook.process_enriched_item = AsyncMock(
            side_effect=[RuntimeError("boom"), HookResult(HookStatus.CREATED)]
        )

        result = await DiscoveryIngestionJob(hook).run([
            DiscoveryItem("generic", "book", {"title": "First"}),
            DiscoveryItem("generic", "book", {"title": "Second"}),
        ])

        assert result.processed == 2
        assert result.errored == 1
        assert result.created == 1
        assert result.errors == ["'First': boom"]

    async def test_disabled_hook_skips_batch(self, collectable_store):
        hook = CollectableDiscoveryHook(collectable_store, enabled=False)

        result = await DiscoveryIngestionJob(hook).run(
            [DiscoveryItem("generic", "book", {"title": "Dune"})]
        )

        assert result.status == IngestionStatus.DISABLED
        assert result.processed == 0
