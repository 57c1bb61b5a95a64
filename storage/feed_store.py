"""
FeedStore: visibility-filtered reads of event aggregates.

Effective visibility of an aggregate:
    shelf context  -> the shelf's visibility (private if the shelf is gone)
    no context     -> the aggregate's own visibility (check-ins), else public

Rules for a viewer:
    private  -> owner only
    friends  -> owner, or an accepted friend (either direction)
    public   -> everyone
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from storage.database import Database
from storage.event_store import EventAggregate, EventStore

logger = logging.getLogger(__name__)

FEED_SCOPES = ("mine", "friends", "global", "all")
MAX_FEED_LIMIT = 50

_VISIBLE_AGGREGATES_SQL = """
    WITH friend_ids AS (
        SELECT CASE WHEN requester_id = :viewer THEN addressee_id ELSE requester_id END AS friend_id
        FROM friendships
        WHERE status = 'accepted' AND (requester_id = :viewer OR addressee_id = :viewer)
    ),
    visible AS (
        SELECT a.*,
               s.name AS shelf_name,
               s.type AS shelf_type,
               s.description AS shelf_description,
               CASE
                   WHEN a.shelf_id IS NULL THEN COALESCE(a.visibility, 'public')
                   ELSE COALESCE(s.visibility, 'private')
               END AS effective_visibility,
               (a.user_id IN (SELECT friend_id FROM friend_ids)) AS is_friend
        FROM event_aggregates a
        LEFT JOIN shelves s ON s.id = a.shelf_id
    )
    SELECT v.*,
           u.username, u.picture AS user_picture, u.first_name, u.last_name,
           u.city, u.state, u.country
    FROM visible v
    LEFT JOIN users u ON u.id = v.user_id
"""

_SCOPE_CONDITIONS = {
    "mine": "v.user_id = :viewer",
    "friends": (
        "(v.user_id = :viewer"
        " OR (v.is_friend AND v.effective_visibility IN ('public', 'friends')))"
    ),
    "global": "v.effective_visibility = 'public'",
    "all": (
        "(v.user_id = :viewer"
        " OR v.effective_visibility = 'public'"
        " OR (v.is_friend AND v.effective_visibility = 'friends'))"
    ),
}

_VIEWABLE_CONDITION = (
    "(v.user_id = :viewer"
    " OR v.effective_visibility = 'public'"
    " OR (v.is_friend AND v.effective_visibility = 'friends'))"
)


@dataclass
class VisibleAggregate:
    """An aggregate plus the joined context the feed renders."""
    aggregate: EventAggregate
    effective_visibility: str
    owner: Dict[str, Any]
    shelf: Optional[Dict[str, Any]] = None


def clamp_limit(limit: Any, default: int = 20) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = default
    return max(1, min(MAX_FEED_LIMIT, value))


class FeedStore:
    def __init__(self, db: Database):
        self.db = db

    async def list_visible_aggregates(
        self,
        viewer_id: Optional[str],
        scope: str = "friends",
        owner_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[VisibleAggregate]:
        """
        Aggregates the viewer may see in this scope, newest activity first.

        owner_id narrows to one user's activity, still subject to the
        viewer's relationship with that user. An anonymous viewer only
        ever sees public aggregates.
        """
        if scope not in FEED_SCOPES:
            raise ValueError(f"Invalid feed scope: {scope}")

        params: Dict[str, Any] = {
            "viewer": viewer_id,
            "limit": clamp_limit(limit),
            "offset": max(0, int(offset or 0)),
        }

        if owner_id:
            condition = f"v.user_id = :owner AND {_VIEWABLE_CONDITION}"
            params["owner"] = owner_id
        elif viewer_id:
            condition = _SCOPE_CONDITIONS[scope]
        else:
            condition = _SCOPE_CONDITIONS["global"]

        sql = f"{_VISIBLE_AGGREGATES_SQL} WHERE {condition}"
        if not viewer_id:
            sql += " AND v.effective_visibility = 'public'"
        if event_type:
            sql += " AND v.event_type = :event_type"
            params["event_type"] = event_type
        sql += " ORDER BY v.last_activity_at DESC, v.id ASC LIMIT :limit OFFSET :offset"

        rows = await self.db.fetch_all(sql, params)
        return [self._row_to_visible(row) for row in rows]

    async def get_visible_aggregate(self, viewer_id: Optional[str], aggregate_id: str) -> Optional[VisibleAggregate]:
        """The aggregate if it exists and the viewer may see it, else None."""
        condition = _VIEWABLE_CONDITION if viewer_id else "v.effective_visibility = 'public'"
        row = await self.db.fetch_one(
            f"{_VISIBLE_AGGREGATES_SQL} WHERE v.id = :id AND {condition}",
            {"viewer": viewer_id, "id": aggregate_id},
        )
        return self._row_to_visible(row) if row else None

    async def can_view_shelf(self, viewer_id: Optional[str], shelf_id: int) -> bool:
        row = await self.db.fetch_one(
            """
            SELECT 1 FROM shelves s
            WHERE s.id = :shelf
              AND (
                  s.visibility = 'public'
                  OR s.owner_id = :viewer
                  OR (s.visibility = 'friends' AND EXISTS (
                      SELECT 1 FROM friendships f
                      WHERE f.status = 'accepted'
                        AND ((f.requester_id = :viewer AND f.addressee_id = s.owner_id)
                             OR (f.addressee_id = :viewer AND f.requester_id = s.owner_id))
                  ))
              )
            """,
            {"shelf": shelf_id, "viewer": viewer_id},
        )
        return row is not None

    async def get_shelf_items(self, shelf_id: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Shelf contents, newest first."""
        sql = """
            SELECT uc.id, uc.collectable_id, uc.format, uc.created_at,
                   c.title, c.primary_creator, c.cover_url, c.kind, c.year, c.description
            FROM user_collections uc
            LEFT JOIN collectables c ON c.id = uc.collectable_id
            WHERE uc.shelf_id = :shelf
            ORDER BY uc.created_at DESC, uc.id DESC
        """
        params: Dict[str, Any] = {"shelf": shelf_id}
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = limit
        rows = await self.db.fetch_all(sql, params)
        return [
            {
                "id": row["id"],
                "format": row["format"],
                "created_at": row["created_at"],
                "collectable": {
                    "id": row["collectable_id"],
                    "title": row["title"],
                    "primary_creator": row["primary_creator"],
                    "cover_url": row["cover_url"],
                    "kind": row["kind"],
                    "year": row["year"],
                    "description": row["description"],
                } if row["collectable_id"] else None,
            }
            for row in rows
        ]

    @staticmethod
    def _row_to_visible(row) -> VisibleAggregate:
        aggregate = EventStore._row_to_aggregate(row)
        owner = {
            "id": row["user_id"],
            "username": row["username"],
            "name": " ".join(p for p in (row["first_name"], row["last_name"]) if p) or None,
            "picture": row["user_picture"],
            "city": row["city"],
            "state": row["state"],
            "country": row["country"],
        }
        shelf = None
        if row["shelf_id"] is not None:
            shelf = {
                "id": row["shelf_id"],
                "name": row["shelf_name"],
                "type": row["shelf_type"],
                "description": row["shelf_description"],
                "visibility": row["effective_visibility"],
            }
        return VisibleAggregate(
            aggregate=aggregate,
            effective_visibility=row["effective_visibility"],
            owner=owner,
            shelf=shelf,
        )
