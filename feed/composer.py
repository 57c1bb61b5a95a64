"""
FeedComposer: the read path.

For a viewer and scope, composes:
1. Visible aggregates (newest activity first)
2. Social counters per aggregate (likes, comments, viewer like, top comment)
3. On the first page, personalized discovery groups interleaved at a
   fixed stride; leftovers go at the end

The discovery block and social counters are best effort: if either fails
the organic feed is still returned (with zeroed counters), and marking
items seen never affects the response.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from discovery.recommendations import DiscoveryGroup, NewsRecommendations
from feed.aggregator import CHECKIN_EVENT_TYPE
from feed.display_hints import display_hints_for
from feed.entry_ref import aggregate_ref, parse_feed_entry_ref, shelf_ref
from storage.database import Database
from storage.event_social_store import EventSocialStore, SocialSummary
from storage.event_store import EventStore
from storage.feed_store import FeedStore, VisibleAggregate, clamp_limit
from storage.news_store import NewsStore
from storage.social_store import SocialStore

logger = logging.getLogger(__name__)

DISCOVERY_EVENT_TYPE = "news.discovery"


def interleave(organic: List[Any], discovery: List[Any], stride: int) -> List[Any]:
    """
    One discovery entry after every `stride` organic entries; discovery
    entries left when the organic list runs out are appended.

    Example (stride=2):
        interleave([o1, o2, o3], [d1, d2, d3], 2) -> [o1, o2, d1, o3, d2, d3]
    """
    if not discovery:
        return list(organic)
    stride = max(1, stride)

    merged: List[Any] = []
    pending = list(discovery)
    for index, entry in enumerate(organic, start=1):
        merged.append(entry)
        if pending and index % stride == 0:
            merged.append(pending.pop(0))
    merged.extend(pending)
    return merged


class FeedComposer:
    """
    Usage:
        composer = FeedComposer(db, recommendations=NewsRecommendations(NewsStore(db)))
        page = await composer.get_feed("user-1", scope="all", limit=20)
    """

    def __init__(
        self,
        db: Database,
        recommendations: Optional[NewsRecommendations] = None,
        discovery_stride: int = 3,
        preview_items: int = 3,
    ):
        self.db = db
        self.feed = FeedStore(db)
        self.events = EventStore(db)
        self.social = EventSocialStore(db)
        self.news = NewsStore(db)
        self.shelves = SocialStore(db)
        self.recommendations = recommendations
        self.discovery_stride = discovery_stride
        self.preview_items = preview_items

    @classmethod
    def from_config(cls, db: Database, config) -> FeedComposer:
        return cls(
            db,
            recommendations=NewsRecommendations(
                NewsStore(db),
                group_limit=config.news_group_limit,
                items_per_group=config.news_items_per_group,
            ),
            discovery_stride=config.discovery_stride,
            preview_items=config.feed_preview_items,
        )

    # =========================================================================
    # FEED
    # =========================================================================

    async def get_feed(
        self,
        viewer_id: Optional[str],
        scope: str = "all",
        owner_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
        include_discovery: bool = True,
    ) -> Dict[str, Any]:
        limit = clamp_limit(limit)
        offset = max(0, int(offset or 0))

        visible = await self.feed.list_visible_aggregates(
            viewer_id,
            scope=scope,
            owner_id=owner_id,
            event_type=event_type,
            limit=limit,
            offset=offset,
        )
        summaries = await self._social_summaries([v.aggregate.id for v in visible], viewer_id)
        entries = [self._build_entry(v, summaries.get(v.aggregate.id)) for v in visible]

        if include_discovery and offset == 0 and viewer_id and not owner_id and scope != "mine":
            discovery = await self._discovery_entries(viewer_id)
            entries = interleave(entries, discovery, self.discovery_stride)

        return {
            "scope": scope,
            "filters": {"type": event_type, "owner_id": owner_id},
            "paging": {"limit": limit, "offset": offset},
            "entries": entries,
        }

    async def _social_summaries(self, event_ids: List[str], viewer_id: Optional[str]) -> Dict[str, SocialSummary]:
        try:
            return await self.social.get_social_summaries(event_ids, viewer_id)
        except Exception as e:
            logger.warning(f"Social counters unavailable for {len(event_ids)} entries, serving zeroed counters: {e}")
            return {}

    async def _discovery_entries(self, viewer_id: str) -> List[Dict[str, Any]]:
        if self.recommendations is None:
            return []
        try:
            groups = await self.recommendations.get_recommendations(viewer_id)
        except Exception as e:
            logger.warning(f"Discovery block failed for {viewer_id}, serving organic feed only: {e}")
            return []

        if groups:
            await self._mark_seen(viewer_id, groups)
        return [self._build_discovery_entry(group) for group in groups]

    async def _mark_seen(self, viewer_id: str, groups: List[DiscoveryGroup]) -> None:
        item_ids = [scored.item.id for group in groups for scored in group.items if scored.item.id]
        results = await asyncio.gather(
            *(self.news.mark_seen(viewer_id, item_id) for item_id in item_ids),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.warning(f"Could not mark {len(failures)} news item(s) seen for {viewer_id}: {failures[0]}")

    # =========================================================================
    # ENTRY DETAILS
    # =========================================================================

    async def get_entry_details(self, viewer_id: Optional[str], entry_id: str) -> Optional[Dict[str, Any]]:
        """
        Full detail for "agg:<uuid>" or "shelf:<int>".

        Returns None when the entry does not exist or the viewer may not see it.

        Raises:
            ValueError: malformed entry id
        """
        ref = parse_feed_entry_ref(entry_id)

        if ref.is_aggregate:
            visible = await self.feed.get_visible_aggregate(viewer_id, ref.value)
            if visible is None:
                return None
            summaries = await self._social_summaries([ref.value], viewer_id)
            entry = self._build_entry(visible, summaries.get(ref.value))
            logs = await self.events.get_event_logs(ref.value)
            entry["events"] = [log.to_dict() for log in logs]
            entry["items"] = [log.payload for log in logs]
            return entry

        shelf_id = ref.shelf_id
        if not await self.feed.can_view_shelf(viewer_id, shelf_id):
            return None
        shelf = await self.shelves.get_shelf(shelf_id)
        if shelf is None:
            return None
        owner = await self.shelves.get_user(shelf.owner_id)
        items = await self.feed.get_shelf_items(shelf_id)
        return {
            "id": shelf_ref(shelf.id),
            "shelf": shelf.summary(item_count=len(items)),
            "owner": owner.summary() if owner else {"id": shelf.owner_id},
            "items": items,
        }

    # =========================================================================
    # ENTRY BUILDERS
    # =========================================================================

    def _build_entry(self, visible: VisibleAggregate, summary: Optional[SocialSummary]) -> Dict[str, Any]:
        aggregate = visible.aggregate
        entry: Dict[str, Any] = {
            "id": aggregate_ref(aggregate.id),
            "entry_type": "aggregate",
            "event_type": aggregate.event_type,
            "created_at": aggregate.created_at.isoformat() if aggregate.created_at else None,
            "last_activity_at": aggregate.last_activity_at.isoformat() if aggregate.last_activity_at else None,
            "window_start_utc": aggregate.window_start_utc.isoformat(),
            "window_end_utc": aggregate.window_end_utc.isoformat(),
            "visibility": visible.effective_visibility,
            "owner": visible.owner,
            "social": (summary or SocialSummary()).to_dict(),
            "display_hints": display_hints_for(aggregate.event_type),
        }

        if aggregate.event_type == CHECKIN_EVENT_TYPE:
            entry["checkin"] = {
                "status": aggregate.checkin_status,
                "visibility": aggregate.visibility,
                "note": aggregate.note,
                "collectable_id": aggregate.collectable_id,
                "manual_id": aggregate.manual_id,
                "payload": aggregate.preview_payloads[0] if aggregate.preview_payloads else {},
            }
        else:
            shelf = dict(visible.shelf or {})
            shelf["item_count"] = aggregate.item_count
            entry["shelf"] = shelf
            entry["items"] = aggregate.preview_payloads[: self.preview_items]

        return entry

    @staticmethod
    def _build_discovery_entry(group: DiscoveryGroup) -> Dict[str, Any]:
        return {
            "id": f"news:{group.key}",
            "entry_type": "discovery",
            "event_type": DISCOVERY_EVENT_TYPE,
            "group": group.to_dict(),
            "display_hints": display_hints_for(DISCOVERY_EVENT_TYPE),
        }
