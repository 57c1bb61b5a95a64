"""
Personalized discovery recommendations.

Scores active news items against what the user already collects, then
keeps a balanced selection: top K items per (category, item_type)
partition, and the best `group_limit` partitions overall.

Scoring:
    +2  category matches one of the user's shelf types
    +3  creators overlap the user's creators
    +1  genres overlap the user's genres/tags

Excluded:
    - expired items
    - items whose external id the user already owns
    - items the user has already been shown (seen marks)
    - categories the user does not collect (when they collect anything)
    - 4K release news unless the user demonstrably collects 4K movies
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from storage.database import utc_now
from storage.news_store import NewsItem, NewsStore, UserCollectionProfile

logger = logging.getLogger(__name__)

FOUR_K_ITEM_TYPES = ("preorder_4k", "new_release_4k", "upcoming_4k")
FOUR_K_FORMATS = ("4k", "4k uhd", "uhd", "4k uhd blu-ray")

MIN_MOVIES_FOR_FORMAT = 10
MIN_FORMAT_COUNT = 3
MIN_FORMAT_RATIO = 0.15


@dataclass
class ScoredItem:
    item: NewsItem
    relevance_score: int
    reasons: List[str]

    @property
    def latest_date(self) -> Optional[str]:
        return self.item.physical_release_date or self.item.release_date

    @property
    def popularity(self) -> Optional[float]:
        value = (self.item.payload or {}).get("popularity")
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    def to_dict(self) -> Dict[str, Any]:
        data = self.item.to_dict()
        data["relevance_score"] = self.relevance_score
        data["reasons"] = self.reasons
        return data


@dataclass
class DiscoveryGroup:
    """One (category, item_type) partition selected for the feed."""
    category: str
    item_type: str
    group_rank: int = 0
    max_score: int = 0
    latest_date: Optional[str] = None
    items: List[ScoredItem] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.category}:{self.item_type}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "category": self.category,
            "item_type": self.item_type,
            "group_rank": self.group_rank,
            "max_score": self.max_score,
            "latest_date": self.latest_date,
            "items": [scored.to_dict() for scored in self.items],
        }


def _sort_desc_nulls_last(values: List[Any], key: Callable[[Any], Any], placeholder: Any) -> None:
    """Stable in-place descending sort with None keys last."""
    values.sort(key=lambda v: (key(v) is not None, key(v) if key(v) is not None else placeholder), reverse=True)


def _overlaps(left: List[str], right: set) -> bool:
    lowered = {str(value).strip().lower() for value in right if value}
    return any(str(value).strip().lower() in lowered for value in left or [] if value)


def qualifies_for_4k(profile: UserCollectionProfile) -> bool:
    four_k = sum(profile.formats.get(fmt, 0) for fmt in FOUR_K_FORMATS)
    if profile.movie_count < MIN_MOVIES_FOR_FORMAT or four_k < MIN_FORMAT_COUNT:
        return False
    return four_k / float(profile.movie_count) >= MIN_FORMAT_RATIO


def score_item(item: NewsItem, profile: UserCollectionProfile) -> Tuple[int, List[str]]:
    score = 0
    reasons = []
    if item.category in profile.categories:
        score += 2
        reasons.append("category")
    if _overlaps(item.creators, profile.creators):
        score += 3
        reasons.append("creator")
    if _overlaps(item.genres, profile.genres):
        score += 1
        reasons.append("genre")
    if item.item_type in FOUR_K_ITEM_TYPES:
        reasons.append("format:4k")
    return score, reasons


def rank_groups(
    scored: List[ScoredItem],
    group_limit: int,
    items_per_group: int,
) -> List[DiscoveryGroup]:
    """
    Partition by (category, item_type), keep the top items_per_group of
    each, then keep the best group_limit partitions.

    Within a partition: score desc, release date desc, popularity desc.
    Across partitions: max score desc, latest date desc, category, item_type.
    """
    partitions: Dict[Tuple[str, str], List[ScoredItem]] = {}
    for entry in scored:
        partitions.setdefault((entry.item.category, entry.item.item_type), []).append(entry)

    groups: List[DiscoveryGroup] = []
    for (category, item_type), entries in partitions.items():
        _sort_desc_nulls_last(entries, lambda e: e.popularity, 0.0)
        _sort_desc_nulls_last(entries, lambda e: e.latest_date, "")
        entries.sort(key=lambda e: e.relevance_score, reverse=True)
        top = entries[:items_per_group]

        dates = [
            e.latest_date or (e.item.fetched_at.isoformat() if e.item.fetched_at else None)
            for e in top
        ]
        dates = [d for d in dates if d]
        groups.append(
            DiscoveryGroup(
                category=category,
                item_type=item_type,
                max_score=max(e.relevance_score for e in top),
                latest_date=max(dates) if dates else None,
                items=top,
            )
        )

    groups.sort(key=lambda g: (g.category, g.item_type))
    _sort_desc_nulls_last(groups, lambda g: g.latest_date, "")
    groups.sort(key=lambda g: g.max_score, reverse=True)

    selected = groups[:group_limit]
    for rank, group in enumerate(selected, start=1):
        group.group_rank = rank
    return selected


class NewsRecommendations:
    """
    Usage:
        recommender = NewsRecommendations(NewsStore(db))
        groups = await recommender.get_recommendations("user-1")
    """

    def __init__(
        self,
        news_store: NewsStore,
        group_limit: int = 3,
        items_per_group: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.news_store = news_store
        self.group_limit = group_limit
        self.items_per_group = items_per_group
        self.clock = clock

    async def get_recommendations(self, user_id: Optional[str]) -> List[DiscoveryGroup]:
        if not user_id or self.group_limit <= 0 or self.items_per_group <= 0:
            return []

        profile = await self.news_store.load_user_profile(user_id)
        seen = await self.news_store.get_seen_ids(user_id)
        candidates = await self.news_store.get_active_items(self.clock())
        allow_4k = qualifies_for_4k(profile)

        scored: List[ScoredItem] = []
        for item in candidates:
            if item.id in seen:
                continue
            if profile.categories and item.category not in profile.categories:
                continue
            if item.external_id and item.external_id in profile.owned_external_ids:
                continue
            if item.item_type in FOUR_K_ITEM_TYPES and not allow_4k:
                continue
            score, reasons = score_item(item, profile)
            scored.append(ScoredItem(item=item, relevance_score=score, reasons=reasons))

        if not scored:
            return []

        groups = rank_groups(scored, self.group_limit, self.items_per_group)
        logger.debug(
            f"Recommendations for {user_id}: {len(scored)} candidates, "
            f"{len(groups)} groups ({', '.join(g.key for g in groups)})"
        )
        return groups
