"""
Profiles, shelves and friendships.

Shelves are the aggregation context for feed events and carry the
visibility (public / friends / private) the feed enforces. Friendships
are directional requests; visibility only cares about accepted ones,
in either direction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from storage.database import Database, parse_datetime, to_iso, utc_now

logger = logging.getLogger(__name__)

SHELF_VISIBILITIES = ("public", "friends", "private")
FRIENDSHIP_ACTIONS = ("accept", "reject", "block")


@dataclass
class UserProfile:
    id: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        """Owner summary embedded in feed entries."""
        return {
            "id": self.id,
            "username": self.username,
            "name": " ".join(p for p in (self.first_name, self.last_name) if p) or None,
            "picture": self.picture,
            "city": self.city,
            "state": self.state,
            "country": self.country,
        }


@dataclass
class Shelf:
    id: int
    owner_id: str
    name: str
    type: Optional[str] = None
    description: Optional[str] = None
    visibility: str = "private"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def summary(self, item_count: int = 0) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "visibility": self.visibility,
            "item_count": item_count,
        }


@dataclass
class Friendship:
    id: int
    requester_id: str
    addressee_id: str
    status: str
    message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SocialStore:
    """Users, shelves, collections and friendships."""

    def __init__(self, db: Database):
        self.db = db

    # =========================================================================
    # USERS
    # =========================================================================

    async def upsert_user(self, user: UserProfile) -> UserProfile:
        await self.db.execute(
            """
            INSERT INTO users (id, username, first_name, last_name, picture, city, state, country, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                username = COALESCE(excluded.username, users.username),
                first_name = COALESCE(excluded.first_name, users.first_name),
                last_name = COALESCE(excluded.last_name, users.last_name),
                picture = COALESCE(excluded.picture, users.picture),
                city = COALESCE(excluded.city, users.city),
                state = COALESCE(excluded.state, users.state),
                country = COALESCE(excluded.country, users.country)
            """,
            (
                user.id,
                user.username,
                user.first_name,
                user.last_name,
                user.picture,
                user.city,
                user.state,
                user.country,
                to_iso(utc_now()),
            ),
        )
        return await self.get_user(user.id)

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        row = await self.db.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return self._row_to_user(row) if row else None

    async def get_users(self, user_ids: List[str]) -> Dict[str, UserProfile]:
        ids = [uid for uid in dict.fromkeys(user_ids) if uid]
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = await self.db.fetch_all(f"SELECT * FROM users WHERE id IN ({placeholders})", ids)
        return {row["id"]: self._row_to_user(row) for row in rows}

    # =========================================================================
    # SHELVES
    # =========================================================================

    async def create_shelf(
        self,
        owner_id: str,
        name: str,
        type: Optional[str] = None,
        visibility: str = "private",
        description: Optional[str] = None,
    ) -> Shelf:
        if visibility not in SHELF_VISIBILITIES:
            raise ValueError(f"Invalid shelf visibility: {visibility}")
        now = to_iso(utc_now())
        shelf_id = await self.db.insert(
            """
            INSERT INTO shelves (owner_id, name, type, description, visibility, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (owner_id, name, type, description, visibility, now, now),
        )
        return await self.get_shelf(shelf_id)

    async def get_shelf(self, shelf_id: int) -> Optional[Shelf]:
        row = await self.db.fetch_one("SELECT * FROM shelves WHERE id = ?", (shelf_id,))
        return self._row_to_shelf(row) if row else None

    async def get_shelves(self, shelf_ids: List[int]) -> Dict[int, Shelf]:
        ids = [sid for sid in dict.fromkeys(shelf_ids) if sid is not None]
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = await self.db.fetch_all(f"SELECT * FROM shelves WHERE id IN ({placeholders})", ids)
        return {row["id"]: self._row_to_shelf(row) for row in rows}

    async def set_shelf_visibility(self, shelf_id: int, visibility: str) -> None:
        if visibility not in SHELF_VISIBILITIES:
            raise ValueError(f"Invalid shelf visibility: {visibility}")
        await self.db.execute(
            "UPDATE shelves SET visibility = ?, updated_at = ? WHERE id = ?",
            (visibility, to_iso(utc_now()), shelf_id),
        )

    async def add_to_collection(
        self,
        user_id: str,
        shelf_id: int,
        collectable_id: Optional[int],
        format: Optional[str] = None,
    ) -> int:
        return await self.db.insert(
            """
            INSERT INTO user_collections (user_id, shelf_id, collectable_id, format, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (user_id, shelf_id, collectable_id, format, to_iso(utc_now())),
        )

    async def count_shelf_items(self, shelf_ids: List[int]) -> Dict[int, int]:
        ids = [sid for sid in dict.fromkeys(shelf_ids) if sid is not None]
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = await self.db.fetch_all(
            f"""
            SELECT shelf_id, COUNT(*) AS n FROM user_collections
            WHERE shelf_id IN ({placeholders})
            GROUP BY shelf_id
            """,
            ids,
        )
        return {row["shelf_id"]: row["n"] for row in rows}

    # =========================================================================
    # FRIENDSHIPS
    # =========================================================================

    async def get_accepted_friend_ids(self, user_id: str) -> List[str]:
        rows = await self.db.fetch_all(
            """
            SELECT CASE WHEN requester_id = :uid THEN addressee_id ELSE requester_id END AS friend_id
            FROM friendships
            WHERE status = 'accepted' AND (requester_id = :uid OR addressee_id = :uid)
            """,
            {"uid": user_id},
        )
        return [row["friend_id"] for row in rows]

    async def are_friends(self, user_a: str, user_b: str) -> bool:
        row = await self.db.fetch_one(
            """
            SELECT 1 FROM friendships
            WHERE status = 'accepted'
              AND ((requester_id = :a AND addressee_id = :b) OR (requester_id = :b AND addressee_id = :a))
            """,
            {"a": user_a, "b": user_b},
        )
        return row is not None

    async def send_request(
        self,
        requester_id: str,
        addressee_id: str,
        message: Optional[str] = None,
    ) -> Friendship:
        """
        Create a pending friend request.

        Raises:
            ValueError: self-request, or a friendship already exists in
                either direction
        """
        if requester_id == addressee_id:
            raise ValueError("Cannot friend yourself")

        now = to_iso(utc_now())
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM friendships
                WHERE (requester_id = :a AND addressee_id = :b) OR (requester_id = :b AND addressee_id = :a)
                """,
                {"a": requester_id, "b": addressee_id},
            )
            existing = await cursor.fetchone()
            if existing is not None:
                if existing["status"] == "blocked":
                    raise ValueError("Cannot send request")
                raise ValueError("Friendship already exists")

            cursor = await conn.execute(
                """
                INSERT INTO friendships (requester_id, addressee_id, status, message, created_at, updated_at)
                VALUES (?, ?, 'pending', ?, ?, ?)
                """,
                (requester_id, addressee_id, message, now, now),
            )
            friendship_id = cursor.lastrowid

        return await self.get_friendship(friendship_id)

    async def respond(self, friendship_id: int, user_id: str, action: str) -> Optional[Friendship]:
        """
        Accept, reject or block a request addressed to user_id.

        Returns:
            The updated friendship; None when rejected (the row is deleted)

        Raises:
            ValueError: unknown action, or no such request for this user
        """
        if action not in FRIENDSHIP_ACTIONS:
            raise ValueError(f"Invalid action: {action}")

        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT id FROM friendships WHERE id = ? AND addressee_id = ?",
                (friendship_id, user_id),
            )
            if await cursor.fetchone() is None:
                raise ValueError("Friendship not found")

            if action == "reject":
                await conn.execute("DELETE FROM friendships WHERE id = ?", (friendship_id,))
                return None

            status = "accepted" if action == "accept" else "blocked"
            await conn.execute(
                "UPDATE friendships SET status = ?, updated_at = ? WHERE id = ?",
                (status, to_iso(utc_now()), friendship_id),
            )

        return await self.get_friendship(friendship_id)

    async def get_friendship(self, friendship_id: int) -> Optional[Friendship]:
        row = await self.db.fetch_one("SELECT * FROM friendships WHERE id = ?", (friendship_id,))
        if row is None:
            return None
        return Friendship(
            id=row["id"],
            requester_id=row["requester_id"],
            addressee_id=row["addressee_id"],
            status=row["status"],
            message=row["message"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    # =========================================================================
    # ROW MAPPING
    # =========================================================================

    @staticmethod
    def _row_to_user(row) -> UserProfile:
        return UserProfile(
            id=row["id"],
            username=row["username"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            picture=row["picture"],
            city=row["city"],
            state=row["state"],
            country=row["country"],
        )

    @staticmethod
    def _row_to_shelf(row) -> Shelf:
        return Shelf(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            type=row["type"],
            description=row["description"],
            visibility=row["visibility"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )
