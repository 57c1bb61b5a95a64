"""
EventAggregator: folds user actions into time-windowed feed aggregates.

record_event(owner, context, kind, payload):
1. Missing owner/context/kind -> standalone log entry, no aggregate
2. Otherwise, inside ONE write transaction:
   a. take the write lock (BEGIN IMMEDIATE), then look for the open
      aggregate of (owner, context, kind); create one if none is open
   b. insert the log entry linked to it
   c. count the action, bump last activity, append the payload to the
      preview list while it is under the cap

Because the lookup happens after the lock is held, a concurrent caller
for the same key blocks until the first commits and then sees its
aggregate. At most one aggregate per key is open at any instant.

Window: fixed length from creation; an aggregate is current iff
now <= window_end.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from storage.database import Database, store_retry, utc_now
from storage.event_store import EventAggregate, EventStore

logger = logging.getLogger(__name__)

CHECKIN_EVENT_TYPE = "checkin.activity"
CHECKIN_STATUSES = ("starting", "continuing", "completed")
CHECKIN_VISIBILITIES = ("public", "friends")


def item_increment(payload: Dict[str, Any]) -> int:
    """
    How many items one action contributes.

    A positive numeric itemCount/item_count is truncated to an int;
    anything else counts as 1.
    """
    raw = payload.get("itemCount", payload.get("item_count"))
    if isinstance(raw, bool):
        return 1
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 1
    if value != value or value in (float("inf"), float("-inf")) or value <= 0:
        return 1
    return max(1, int(value))


@dataclass
class RecordedEvent:
    """Result of recording one action."""
    log_id: int
    aggregate: Optional[EventAggregate] = None
    created_aggregate: bool = False

    @property
    def standalone(self) -> bool:
        return self.aggregate is None


class EventAggregator:
    """
    Usage:
        aggregator = EventAggregator(db, window_minutes=15, preview_limit=5)
        recorded = await aggregator.record_event(
            "user-1", shelf_id, "item.collectable_added", {"title": "Dune"}
        )
    """

    def __init__(
        self,
        db: Database,
        window_minutes: int = 15,
        preview_limit: int = 5,
        debug: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.events = EventStore(db)
        self.window = timedelta(minutes=window_minutes)
        self.preview_limit = preview_limit
        self.debug = debug
        self.clock = clock

    @classmethod
    def from_config(cls, db: Database, config, clock: Callable[[], datetime] = utc_now) -> EventAggregator:
        return cls(
            db,
            window_minutes=config.aggregate_window_minutes,
            preview_limit=config.preview_payload_limit,
            debug=config.aggregate_debug,
            clock=clock,
        )

    # =========================================================================
    # RECORDING
    # =========================================================================

    @store_retry
    async def record_event(
        self,
        owner_id: Optional[str],
        context_id: Optional[Any],
        event_type: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> RecordedEvent:
        """
        Record one action.

        Transient store errors (lock timeout, operation timeout) roll the
        whole transaction back and are retried; nothing is half-applied.
        """
        payload = dict(payload or {})

        if not owner_id or context_id is None or context_id == "" or not event_type:
            return await self._record_standalone(owner_id, context_id, event_type, payload)

        increment = item_increment(payload)

        async def _apply(conn) -> RecordedEvent:
            # Read the clock after the lock is held so a waiter re-evaluates
            # the window against the state the previous writer committed
            now = self.clock()
            created = False

            aggregate = await self.events.select_open_aggregate_tx(
                conn, owner_id, context_id, event_type, now
            )
            if aggregate is None:
                aggregate = EventAggregate(
                    id=str(uuid.uuid4()),
                    user_id=owner_id,
                    shelf_id=context_id,
                    event_type=event_type,
                    window_start_utc=now,
                    window_end_utc=now + self.window,
                    created_at=now,
                    last_activity_at=now,
                )
                await self.events.insert_aggregate_tx(conn, aggregate)
                created = True

            log_id = await self.events.insert_log_tx(
                conn, owner_id, context_id, aggregate.id, event_type, payload, now
            )
            await self.events.extend_aggregate_tx(
                conn, aggregate.id, increment, payload, self.preview_limit, now
            )
            refreshed = await self.events.get_aggregate_tx(conn, aggregate.id)
            return RecordedEvent(log_id=log_id, aggregate=refreshed, created_aggregate=created)

        recorded = await self.db.run_in_transaction(_apply)

        if self.debug:
            logger.info(
                f"[feed.event] {'created' if recorded.created_aggregate else 'extended'} "
                f"aggregate={recorded.aggregate.id} event={recorded.log_id} user={owner_id} "
                f"shelf={context_id} type={event_type} count={recorded.aggregate.item_count}"
            )
        return recorded

    async def _record_standalone(
        self,
        owner_id: Optional[str],
        context_id: Optional[Any],
        event_type: Optional[str],
        payload: Dict[str, Any],
    ) -> RecordedEvent:
        now = self.clock()

        async def _apply(conn) -> int:
            return await self.events.insert_log_tx(
                conn,
                owner_id or None,
                context_id if context_id not in ("", None) else None,
                None,
                event_type or None,
                payload,
                now,
            )

        log_id = await self.db.run_in_transaction(_apply)
        if self.debug:
            logger.info(f"[feed.event] standalone event={log_id} user={owner_id} type={event_type}")
        return RecordedEvent(log_id=log_id)

    @store_retry
    async def record_check_in(
        self,
        owner_id: str,
        status: str,
        collectable_id: Optional[int] = None,
        manual_id: Optional[int] = None,
        visibility: str = "public",
        note: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> RecordedEvent:
        """
        Check-in: a standalone single-item aggregate (never windowed) with
        its own visibility, plus the linked log entry.

        Raises:
            ValueError: missing owner/item, unknown status or visibility
        """
        if not owner_id:
            raise ValueError("owner_id is required")
        if (collectable_id is None) == (manual_id is None):
            raise ValueError("Exactly one of collectable_id or manual_id is required")
        if status not in CHECKIN_STATUSES:
            raise ValueError(f"Invalid check-in status: {status}")
        if visibility not in CHECKIN_VISIBILITIES:
            raise ValueError(f"Invalid check-in visibility: {visibility}")

        note = (note or "").strip() or None
        body = dict(payload or {})
        body.update({"status": status, "collectableId": collectable_id, "manualId": manual_id, "note": note})

        async def _apply(conn) -> RecordedEvent:
            now = self.clock()
            aggregate = EventAggregate(
                id=str(uuid.uuid4()),
                user_id=owner_id,
                shelf_id=None,
                event_type=CHECKIN_EVENT_TYPE,
                window_start_utc=now,
                window_end_utc=now,
                item_count=1,
                preview_payloads=[body],
                created_at=now,
                last_activity_at=now,
                collectable_id=collectable_id,
                manual_id=manual_id,
                checkin_status=status,
                visibility=visibility,
                note=note,
            )
            await self.events.insert_aggregate_tx(conn, aggregate)
            log_id = await self.events.insert_log_tx(
                conn, owner_id, None, aggregate.id, CHECKIN_EVENT_TYPE, body, now
            )
            return RecordedEvent(log_id=log_id, aggregate=aggregate, created_aggregate=True)

        recorded = await self.db.run_in_transaction(_apply)
        logger.info(f"Check-in {recorded.aggregate.id} by {owner_id} ({status}, {visibility})")
        return recorded

    # =========================================================================
    # READS
    # =========================================================================

    async def get_aggregate(self, aggregate_id: str) -> Optional[EventAggregate]:
        return await self.events.get_aggregate(aggregate_id)

    async def get_open_aggregate(
        self,
        owner_id: str,
        context_id: Any,
        event_type: str,
    ) -> Optional[EventAggregate]:
        return await self.events.get_open_aggregate(owner_id, context_id, event_type, self.clock())

    async def get_event_logs(self, aggregate_id: str):
        return await self.events.get_event_logs(aggregate_id)
