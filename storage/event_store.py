"""
EventStore: event aggregates and raw event logs.

The *_tx methods take the connection of an open transaction so the
EventAggregator can lock, decide and write inside one BEGIN IMMEDIATE
block. Plain methods run their own short read.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiosqlite

from storage.database import Database, parse_datetime, to_iso

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class EventAggregate:
    """Rollup of one user's actions of one kind in one context within a window."""
    id: str  # UUID
    user_id: Optional[str]
    shelf_id: Optional[int]
    event_type: str
    window_start_utc: datetime
    window_end_utc: datetime
    item_count: int = 0
    preview_payloads: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    collectable_id: Optional[int] = None
    manual_id: Optional[int] = None
    checkin_status: Optional[str] = None
    visibility: Optional[str] = None
    note: Optional[str] = None

    def is_open(self, now: datetime) -> bool:
        return now <= self.window_end_utc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "shelf_id": self.shelf_id,
            "event_type": self.event_type,
            "window_start_utc": self.window_start_utc.isoformat(),
            "window_end_utc": self.window_end_utc.isoformat(),
            "item_count": self.item_count,
            "preview_payloads": self.preview_payloads,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
            "collectable_id": self.collectable_id,
            "manual_id": self.manual_id,
            "checkin_status": self.checkin_status,
            "visibility": self.visibility,
            "note": self.note,
        }


@dataclass
class EventLogEntry:
    """One immutable raw action."""
    id: int
    user_id: Optional[str]
    shelf_id: Optional[int]
    aggregate_id: Optional[str]
    event_type: Optional[str]
    payload: Dict[str, Any]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "shelf_id": self.shelf_id,
            "aggregate_id": self.aggregate_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


# =============================================================================
# STORE
# =============================================================================

class EventStore:
    """SQL for event_aggregates / event_logs."""

    def __init__(self, db: Database):
        self.db = db

    # =========================================================================
    # TRANSACTIONAL STEPS (caller owns the transaction)
    # =========================================================================

    async def select_open_aggregate_tx(
        self,
        conn: aiosqlite.Connection,
        user_id: str,
        shelf_id: Any,
        event_type: str,
        now: datetime,
    ) -> Optional[EventAggregate]:
        """Aggregate for the key whose window has not elapsed at `now`."""
        cursor = await conn.execute(
            """
            SELECT * FROM event_aggregates
            WHERE user_id = ? AND shelf_id = ? AND event_type = ?
              AND window_end_utc >= ?
            ORDER BY window_end_utc DESC
            LIMIT 1
            """,
            (user_id, shelf_id, event_type, to_iso(now)),
        )
        row = await cursor.fetchone()
        return self._row_to_aggregate(row) if row else None

    async def insert_aggregate_tx(self, conn: aiosqlite.Connection, aggregate: EventAggregate) -> None:
        await conn.execute(
            """
            INSERT INTO event_aggregates (
                id, user_id, shelf_id, collectable_id, manual_id, event_type,
                window_start_utc, window_end_utc, item_count, preview_payloads,
                checkin_status, visibility, note, created_at, last_activity_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                aggregate.id,
                aggregate.user_id,
                aggregate.shelf_id,
                aggregate.collectable_id,
                aggregate.manual_id,
                aggregate.event_type,
                to_iso(aggregate.window_start_utc),
                to_iso(aggregate.window_end_utc),
                aggregate.item_count,
                json.dumps(aggregate.preview_payloads),
                aggregate.checkin_status,
                aggregate.visibility,
                aggregate.note,
                to_iso(aggregate.created_at or aggregate.window_start_utc),
                to_iso(aggregate.last_activity_at or aggregate.window_start_utc),
            ),
        )

    async def insert_log_tx(
        self,
        conn: aiosqlite.Connection,
        user_id: Optional[str],
        shelf_id: Any,
        aggregate_id: Optional[str],
        event_type: Optional[str],
        payload: Dict[str, Any],
        created_at: datetime,
    ) -> int:
        cursor = await conn.execute(
            """
            INSERT INTO event_logs (user_id, shelf_id, aggregate_id, event_type, payload, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user_id, shelf_id, aggregate_id, event_type, json.dumps(payload), to_iso(created_at)),
        )
        return cursor.lastrowid

    async def extend_aggregate_tx(
        self,
        conn: aiosqlite.Connection,
        aggregate_id: str,
        increment: int,
        payload: Dict[str, Any],
        preview_limit: int,
        now: datetime,
    ) -> None:
        """
        Count the action, bump last activity and append the payload to the
        preview list only while it is below preview_limit.
        """
        await conn.execute(
            """
            UPDATE event_aggregates
            SET item_count = item_count + :increment,
                last_activity_at = :now,
                preview_payloads = CASE
                    WHEN json_array_length(preview_payloads) < :preview_limit
                    THEN json_insert(preview_payloads, '$[#]', json(:payload))
                    ELSE preview_payloads
                END
            WHERE id = :id
            """,
            {
                "increment": increment,
                "now": to_iso(now),
                "preview_limit": preview_limit,
                "payload": json.dumps(payload),
                "id": aggregate_id,
            },
        )

    async def get_aggregate_tx(self, conn: aiosqlite.Connection, aggregate_id: str) -> Optional[EventAggregate]:
        cursor = await conn.execute("SELECT * FROM event_aggregates WHERE id = ?", (aggregate_id,))
        row = await cursor.fetchone()
        return self._row_to_aggregate(row) if row else None

    # =========================================================================
    # READS
    # =========================================================================

    async def get_aggregate(self, aggregate_id: str) -> Optional[EventAggregate]:
        row = await self.db.fetch_one("SELECT * FROM event_aggregates WHERE id = ?", (aggregate_id,))
        return self._row_to_aggregate(row) if row else None

    async def get_open_aggregate(
        self,
        user_id: str,
        shelf_id: Any,
        event_type: str,
        now: datetime,
    ) -> Optional[EventAggregate]:
        async with self.db.acquire() as conn:
            return await self.select_open_aggregate_tx(conn, user_id, shelf_id, event_type, now)

    async def list_aggregates(
        self,
        user_id: str,
        shelf_id: Any = None,
        event_type: Optional[str] = None,
    ) -> List[EventAggregate]:
        sql = "SELECT * FROM event_aggregates WHERE user_id = ?"
        params: List[Any] = [user_id]
        if shelf_id is not None:
            sql += " AND shelf_id = ?"
            params.append(shelf_id)
        if event_type:
            sql += " AND event_type = ?"
            params.append(event_type)
        sql += " ORDER BY window_start_utc ASC"
        rows = await self.db.fetch_all(sql, params)
        return [self._row_to_aggregate(row) for row in rows]

    async def get_event_logs(self, aggregate_id: str) -> List[EventLogEntry]:
        rows = await self.db.fetch_all(
            "SELECT * FROM event_logs WHERE aggregate_id = ? ORDER BY created_at ASC, id ASC",
            (aggregate_id,),
        )
        return [self._row_to_log(row) for row in rows]

    async def get_event_log(self, log_id: int) -> Optional[EventLogEntry]:
        row = await self.db.fetch_one("SELECT * FROM event_logs WHERE id = ?", (log_id,))
        return self._row_to_log(row) if row else None

    async def stats(self) -> Dict[str, int]:
        aggregates = await self.db.fetch_one("SELECT COUNT(*) FROM event_aggregates")
        logs = await self.db.fetch_one("SELECT COUNT(*) FROM event_logs")
        standalone = await self.db.fetch_one("SELECT COUNT(*) FROM event_logs WHERE aggregate_id IS NULL")
        return {
            "aggregates": aggregates[0],
            "event_logs": logs[0],
            "standalone_logs": standalone[0],
        }

    # =========================================================================
    # ROW MAPPING
    # =========================================================================

    @staticmethod
    def _row_to_aggregate(row) -> EventAggregate:
        return EventAggregate(
            id=row["id"],
            user_id=row["user_id"],
            shelf_id=row["shelf_id"],
            collectable_id=row["collectable_id"],
            manual_id=row["manual_id"],
            event_type=row["event_type"],
            window_start_utc=parse_datetime(row["window_start_utc"]),
            window_end_utc=parse_datetime(row["window_end_utc"]),
            item_count=row["item_count"],
            preview_payloads=json.loads(row["preview_payloads"] or "[]"),
            checkin_status=row["checkin_status"],
            visibility=row["visibility"],
            note=row["note"],
            created_at=parse_datetime(row["created_at"]),
            last_activity_at=parse_datetime(row["last_activity_at"]),
        )

    @staticmethod
    def _row_to_log(row) -> EventLogEntry:
        return EventLogEntry(
            id=row["id"],
            user_id=row["user_id"],
            shelf_id=row["shelf_id"],
            aggregate_id=row["aggregate_id"],
            event_type=row["event_type"],
            payload=json.loads(row["payload"] or "{}"),
            created_at=parse_datetime(row["created_at"]),
        )
