"""
NewsStore: discovery news items, per-user seen marks and the raw
collection rows personalization is built from.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from storage.database import Database, parse_datetime, to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class NewsItem:
    category: str
    item_type: str
    title: str
    expires_at: datetime
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    release_date: Optional[str] = None
    physical_release_date: Optional[str] = None
    creators: List[str] = field(default_factory=list)
    genres: List[str] = field(default_factory=list)
    external_id: Optional[str] = None
    source_api: Optional[str] = None
    source_url: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    collectable_id: Optional[int] = None
    fetched_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "item_type": self.item_type,
            "title": self.title,
            "description": self.description,
            "cover_image_url": self.cover_image_url,
            "release_date": self.release_date,
            "physical_release_date": self.physical_release_date,
            "creators": self.creators,
            "genres": self.genres,
            "external_id": self.external_id,
            "source_api": self.source_api,
            "source_url": self.source_url,
            "payload": self.payload,
            "collectable_id": self.collectable_id,
        }


@dataclass
class UserCollectionProfile:
    """What a user owns, as seen by personalization."""
    categories: Set[str] = field(default_factory=set)
    creators: Set[str] = field(default_factory=set)
    genres: Set[str] = field(default_factory=set)
    formats: Dict[str, int] = field(default_factory=dict)  # lowercased format -> count
    owned_external_ids: Set[str] = field(default_factory=set)
    movie_count: int = 0


class NewsStore:
    def __init__(self, db: Database):
        self.db = db

    async def add_news_item(self, item: NewsItem) -> int:
        fetched_at = item.fetched_at or utc_now()
        return await self.db.insert(
            """
            INSERT INTO news_items (
                category, item_type, title, description, cover_image_url,
                release_date, physical_release_date, creators, genres, external_id,
                source_api, source_url, payload, collectable_id, fetched_at, expires_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.category,
                item.item_type,
                item.title,
                item.description,
                item.cover_image_url,
                item.release_date,
                item.physical_release_date,
                json.dumps(item.creators or []),
                json.dumps(item.genres or []),
                item.external_id,
                item.source_api,
                item.source_url,
                json.dumps(item.payload or {}),
                item.collectable_id,
                to_iso(fetched_at),
                to_iso(item.expires_at),
            ),
        )

    async def get_active_items(self, now: datetime) -> List[NewsItem]:
        """Items whose expiry is still in the future."""
        rows = await self.db.fetch_all(
            "SELECT * FROM news_items WHERE expires_at > ? ORDER BY id ASC",
            (to_iso(now),),
        )
        return [self._row_to_item(row) for row in rows]

    async def mark_seen(self, user_id: str, news_item_id: int) -> bool:
        """Idempotent. Returns True only on the first mark."""
        if not user_id or not news_item_id:
            return False
        rowcount = await self.db.execute(
            """
            INSERT INTO user_news_seen (user_id, news_item_id, seen_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id, news_item_id) DO NOTHING
            """,
            (user_id, news_item_id, to_iso(utc_now())),
        )
        return rowcount > 0

    async def get_seen_ids(self, user_id: str) -> Set[int]:
        if not user_id:
            return set()
        rows = await self.db.fetch_all(
            "SELECT news_item_id FROM user_news_seen WHERE user_id = ?", (user_id,)
        )
        return {row["news_item_id"] for row in rows}

    async def clear_seen(self, user_id: str) -> int:
        if not user_id:
            return 0
        return await self.db.execute("DELETE FROM user_news_seen WHERE user_id = ?", (user_id,))

    async def load_user_profile(self, user_id: str) -> UserCollectionProfile:
        """Collect categories, creators, genres/tags and formats a user owns."""
        rows = await self.db.fetch_all(
            """
            SELECT s.type AS category, uc.format AS user_format,
                   c.primary_creator, c.creators, c.tags, c.formats, c.external_id
            FROM user_collections uc
            JOIN shelves s ON s.id = uc.shelf_id
            LEFT JOIN collectables c ON c.id = uc.collectable_id
            WHERE uc.user_id = ?
            """,
            (user_id,),
        )

        profile = UserCollectionProfile()
        for row in rows:
            if row["category"]:
                profile.categories.add(row["category"])
                if row["category"] == "movies":
                    profile.movie_count += 1
            if row["primary_creator"]:
                profile.creators.add(row["primary_creator"])
            profile.creators.update(c for c in json.loads(row["creators"] or "[]") if c)
            profile.genres.update(t for t in json.loads(row["tags"] or "[]") if t)
            if row["external_id"]:
                profile.owned_external_ids.add(row["external_id"])

            formats = [row["user_format"]] + json.loads(row["formats"] or "[]")
            for fmt in formats:
                if fmt and str(fmt).strip():
                    key = str(fmt).strip().lower()
                    profile.formats[key] = profile.formats.get(key, 0) + 1

        return profile

    @staticmethod
    def _row_to_item(row) -> NewsItem:
        return NewsItem(
            id=row["id"],
            category=row["category"],
            item_type=row["item_type"],
            title=row["title"],
            description=row["description"],
            cover_image_url=row["cover_image_url"],
            release_date=row["release_date"],
            physical_release_date=row["physical_release_date"],
            creators=json.loads(row["creators"] or "[]"),
            genres=json.loads(row["genres"] or "[]"),
            external_id=row["external_id"],
            source_api=row["source_api"],
            source_url=row["source_url"],
            payload=json.loads(row["payload"] or "{}"),
            collectable_id=row["collectable_id"],
            fetched_at=parse_datetime(row["fetched_at"]),
            expires_at=parse_datetime(row["expires_at"]),
        )
