"""
Feed: windowed event aggregation (write path) and feed composition
(read path).
"""

from feed.aggregator import EventAggregator, RecordedEvent, item_increment
from feed.composer import FeedComposer, interleave
from feed.display_hints import display_hints_for
from feed.entry_ref import FeedEntryRef, aggregate_ref, parse_feed_entry_ref, shelf_ref

__all__ = [
    "EventAggregator",
    "RecordedEvent",
    "item_increment",
    "FeedComposer",
    "interleave",
    "display_hints_for",
    "FeedEntryRef",
    "aggregate_ref",
    "parse_feed_entry_ref",
    "shelf_ref",
]
