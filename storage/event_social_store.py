"""
Likes and comments on feed aggregates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from storage.database import Database, to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SocialSummary:
    """Per-aggregate counters joined into feed entries."""
    like_count: int = 0
    comment_count: int = 0
    has_liked: bool = False
    top_comment: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "like_count": self.like_count,
            "comment_count": self.comment_count,
            "has_liked": self.has_liked,
            "top_comment": self.top_comment,
        }


class EventSocialStore:
    def __init__(self, db: Database):
        self.db = db

    async def event_exists(self, event_id: str) -> bool:
        row = await self.db.fetch_one("SELECT 1 FROM event_aggregates WHERE id = ?", (event_id,))
        return row is not None

    async def toggle_like(self, event_id: str, user_id: str) -> Dict[str, Any]:
        """Like if not liked, unlike otherwise. Returns {liked, like_count}."""
        if not await self.event_exists(event_id):
            raise ValueError(f"Event not found: {event_id}")
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT 1 FROM event_likes WHERE event_id = ? AND user_id = ?",
                (event_id, user_id),
            )
            if await cursor.fetchone():
                await conn.execute(
                    "DELETE FROM event_likes WHERE event_id = ? AND user_id = ?",
                    (event_id, user_id),
                )
                liked = False
            else:
                await conn.execute(
                    "INSERT INTO event_likes (event_id, user_id, created_at) VALUES (?, ?, ?)",
                    (event_id, user_id, to_iso(utc_now())),
                )
                liked = True

            cursor = await conn.execute(
                "SELECT COUNT(*) FROM event_likes WHERE event_id = ?", (event_id,)
            )
            row = await cursor.fetchone()

        return {"liked": liked, "like_count": row[0]}

    async def add_comment(self, event_id: str, user_id: str, content: str) -> Dict[str, Any]:
        content = (content or "").strip()
        if not content:
            raise ValueError("Comment content is required")
        if not await self.event_exists(event_id):
            raise ValueError(f"Event not found: {event_id}")
        comment_id = await self.db.insert(
            "INSERT INTO event_comments (event_id, user_id, content, created_at) VALUES (?, ?, ?, ?)",
            (event_id, user_id, content, to_iso(utc_now())),
        )
        row = await self.db.fetch_one(
            """
            SELECT ec.id, ec.content, ec.created_at, ec.user_id, u.username, u.picture
            FROM event_comments ec
            LEFT JOIN users u ON u.id = ec.user_id
            WHERE ec.id = ?
            """,
            (comment_id,),
        )
        return self._row_to_comment(row)

    async def get_comments(self, event_id: str, limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        """Newest first, plus the total count."""
        rows = await self.db.fetch_all(
            """
            SELECT ec.id, ec.content, ec.created_at, ec.user_id, u.username, u.picture
            FROM event_comments ec
            LEFT JOIN users u ON u.id = ec.user_id
            WHERE ec.event_id = ?
            ORDER BY ec.created_at DESC, ec.id DESC
            LIMIT ? OFFSET ?
            """,
            (event_id, limit, offset),
        )
        count = await self.db.fetch_one(
            "SELECT COUNT(*) FROM event_comments WHERE event_id = ?", (event_id,)
        )
        return {
            "comments": [self._row_to_comment(row) for row in rows],
            "comment_count": count[0],
        }

    async def delete_comment(self, comment_id: int, event_id: str, user_id: str) -> bool:
        """Only the author can delete; returns False otherwise."""
        rowcount = await self.db.execute(
            "DELETE FROM event_comments WHERE id = ? AND event_id = ? AND user_id = ?",
            (comment_id, event_id, user_id),
        )
        return rowcount > 0

    async def get_social_summaries(
        self,
        event_ids: List[str],
        viewer_id: Optional[str],
    ) -> Dict[str, SocialSummary]:
        """
        Like/comment counters, viewer like state and most recent comment
        for each event id. Ids without activity get a zeroed summary.
        """
        ids = list(dict.fromkeys(eid for eid in event_ids if eid))
        if not ids:
            return {}

        placeholders = ",".join("?" for _ in ids)
        summaries = {eid: SocialSummary() for eid in ids}

        rows = await self.db.fetch_all(
            f"""
            SELECT event_id,
                   COUNT(*) AS like_count,
                   MAX(CASE WHEN user_id = ? THEN 1 ELSE 0 END) AS has_liked
            FROM event_likes
            WHERE event_id IN ({placeholders})
            GROUP BY event_id
            """,
            [viewer_id] + ids,
        )
        for row in rows:
            summaries[row["event_id"]].like_count = row["like_count"]
            summaries[row["event_id"]].has_liked = bool(viewer_id) and bool(row["has_liked"])

        rows = await self.db.fetch_all(
            f"""
            SELECT ec.event_id, ec.id, ec.content, ec.created_at, ec.user_id,
                   u.username, u.picture, counts.comment_count
            FROM event_comments ec
            JOIN (
                SELECT event_id, COUNT(*) AS comment_count, MAX(created_at) AS latest
                FROM event_comments
                WHERE event_id IN ({placeholders})
                GROUP BY event_id
            ) counts ON counts.event_id = ec.event_id AND counts.latest = ec.created_at
            LEFT JOIN users u ON u.id = ec.user_id
            ORDER BY ec.id DESC
            """,
            ids,
        )
        for row in rows:
            summary = summaries[row["event_id"]]
            summary.comment_count = row["comment_count"]
            if summary.top_comment is None:
                summary.top_comment = self._row_to_comment(row)

        return summaries

    @staticmethod
    def _row_to_comment(row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "content": row["content"],
            "created_at": row["created_at"],
            "user": {
                "id": row["user_id"],
                "username": row["username"],
                "picture": row["picture"],
            },
        }
