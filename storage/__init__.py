"""
Storage layer for the Catalog Service.

One process-scoped Database handle (aiosqlite connection pool + schema
migrations) is shared by every store.

Main components:
- Database: pooled connections, BEGIN IMMEDIATE transactions, timeouts
- CollectableStore: canonical catalog with merge-without-loss upserts
- FuzzyMatcher / CollectableMatcher: similarity and tiered matching
- EventStore: event aggregates and raw event logs
- SocialStore / EventSocialStore: shelves, friendships, likes, comments
- FeedStore: visibility-filtered aggregate reads
- NewsStore: discovery news items and seen marks

Quick start:
    from storage import database, CollectableStore, Collectable

    async with database("catalog.db") as db:
        store = CollectableStore(db)
        record = await store.upsert(Collectable(title="Dune", kind="book",
                                                primary_creator="Frank Herbert"))
"""

from storage.database import (
    CURRENT_SCHEMA_VERSION,
    Database,
    database,
    is_transient_store_error,
    store_retry,
)
from storage.collectable_store import Collectable, CollectableStore, merge_collectable
from storage.cover_media import CoverMaterializer, HttpCoverMaterializer
from storage.event_social_store import EventSocialStore, SocialSummary
from storage.event_store import EventAggregate, EventLogEntry, EventStore
from storage.feed_store import FEED_SCOPES, FeedStore, VisibleAggregate
from storage.fuzzy_matcher import CollectableMatcher, FuzzyMatcher, MatchResult
from storage.news_store import NewsItem, NewsStore, UserCollectionProfile
from storage.social_store import Friendship, Shelf, SocialStore, UserProfile

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "Database",
    "database",
    "is_transient_store_error",
    "store_retry",
    "Collectable",
    "CollectableStore",
    "merge_collectable",
    "CoverMaterializer",
    "HttpCoverMaterializer",
    "EventSocialStore",
    "SocialSummary",
    "EventAggregate",
    "EventLogEntry",
    "EventStore",
    "FEED_SCOPES",
    "FeedStore",
    "VisibleAggregate",
    "CollectableMatcher",
    "FuzzyMatcher",
    "MatchResult",
    "NewsItem",
    "NewsStore",
    "UserCollectionProfile",
    "Friendship",
    "Shelf",
    "SocialStore",
    "UserProfile",
]

__version__ = "1.0.0"
