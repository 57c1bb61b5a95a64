"""
Tests for discriminated feed entry ids.
"""

import pytest

from feed.entry_ref import aggregate_ref, parse_feed_entry_ref, shelf_ref

AGG_ID = "3f2b8c1e-9a4d-4c5e-8f7a-1b2c3d4e5f60"


class TestFeedEntryRef:

    def test_aggregate(self):
        ref = parse_feed_entry_ref(f"agg:{AGG_ID}")
        assert ref.is_aggregate
        assert ref.value == AGG_ID
        assert str(ref) == aggregate_ref(AGG_ID)

    def test_shelf(self):
        ref = parse_feed_entry_ref("shelf:042")
        assert not ref.is_aggregate
        assert ref.shelf_id == 42
        assert str(ref) == shelf_ref(42)

    def test_shelf_id_on_aggregate_raises(self):
        with pytest.raises(ValueError):
            parse_feed_entry_ref(f"agg:{AGG_ID}").shelf_id

    @pytest.mark.parametrize(
        "raw",
        [AGG_ID, "12345", "agg:", "agg:not-a-uuid", "shelf:", "shelf:-1", "shelf:1.5", "user:1", "", None],
    )
    def test_rejects(self, raw):
        with pytest.raises(ValueError):
            parse_feed_entry_ref(raw)
