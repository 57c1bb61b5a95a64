"""
Fuzzy matching against the catalog.

When deterministic fingerprints miss, FuzzyMatcher scores candidates with
trigram similarity:

    combined = 0.7 * similarity(title) + 0.3 * similarity(creator)

Two stages keep it tractable without an index on the combined score:
1. Prefilter in SQL on title similarity > threshold
2. Rank survivors by combined score, keep the best if it also clears threshold

CollectableMatcher layers the deterministic tiers on top:
exact fingerprint -> lightweight -> accumulated fuzzy fingerprints -> similarity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from storage.collectable_store import Collectable, CollectableStore
from storage.database import Database
from utils.fingerprint import (
    exact_fingerprint,
    fuzzy_fingerprint,
    lightweight_fingerprint,
    normalize_collectable_kind,
)

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.3
TITLE_WEIGHT = 0.7
CREATOR_WEIGHT = 0.3

FUZZY_MATCH_SQL = f"""
    SELECT c.*,
           similarity(c.title, :title) AS title_sim,
           similarity(COALESCE(c.primary_creator, ''), :creator) AS creator_sim,
           (similarity(c.title, :title) * {TITLE_WEIGHT}
            + similarity(COALESCE(c.primary_creator, ''), :creator) * {CREATOR_WEIGHT}) AS combined_sim
    FROM collectables c
    WHERE similarity(c.title, :title) > :threshold
"""


class FuzzyMatcher:
    """Similarity lookup against the collectables table."""

    def __init__(self, db: Database, default_threshold: float = DEFAULT_THRESHOLD):
        self.db = db
        self.default_threshold = default_threshold

    @classmethod
    def from_config(cls, db: Database, config) -> FuzzyMatcher:
        return cls(db, default_threshold=config.fuzzy_match_threshold)

    async def fuzzy_match(
        self,
        title: Optional[str],
        primary_creator: Optional[str] = None,
        kind: Optional[str] = None,
        threshold: Optional[float] = None,
    ) -> Optional[Collectable]:
        """
        Best catalog match for a (title, creator) reading, or None.

        An empty title returns None without querying. A missing creator is
        scored as "" so creator similarity is 0 rather than NULL.
        """
        if not title or not str(title).strip():
            return None

        threshold = self.default_threshold if threshold is None else threshold
        params: Dict[str, Any] = {
            "title": str(title).strip(),
            "creator": (primary_creator or "").strip(),
            "threshold": threshold,
        }

        sql = FUZZY_MATCH_SQL
        normalized_kind = normalize_collectable_kind(kind)
        if normalized_kind:
            sql += " AND c.kind = :kind"
            params["kind"] = normalized_kind
        sql += " ORDER BY combined_sim DESC, c.id ASC LIMIT 1"

        row = await self.db.fetch_one(sql, params)
        if row is None:
            return None
        if row["combined_sim"] < threshold:
            logger.debug(
                f"Fuzzy candidate {row['id']} for {title!r} below threshold "
                f"({row['combined_sim']:.3f} < {threshold})"
            )
            return None
        return CollectableStore._row_to_collectable(row)


@dataclass
class MatchResult:
    """A catalog match and the tier that produced it."""
    collectable: Collectable
    source: str  # exact, lightweight, fuzzy_fingerprint, similarity


class CollectableMatcher:
    """
    Tiered matching for OCR/vision readings.

    Usage:
        matcher = CollectableMatcher(store, FuzzyMatcher(db))
        match = await matcher.find_best_match("The Hobit", "Tolkien", kind="book")
        if match and match.source == "similarity":
            await matcher.remember_ocr_variant(match.collectable.id, "The Hobit", "Tolkien", "book")
    """

    def __init__(self, store: CollectableStore, fuzzy: FuzzyMatcher):
        self.store = store
        self.fuzzy = fuzzy

    async def find_best_match(
        self,
        title: Optional[str],
        primary_creator: Optional[str] = None,
        kind: Optional[str] = None,
        year: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> Optional[MatchResult]:
        if not title or not str(title).strip():
            return None

        exact = exact_fingerprint(title, primary_creator, year, kind)
        found = await self.store.find_by_exact_fingerprint(exact)
        if found:
            return MatchResult(found, "exact")

        found = await self.store.find_by_lightweight_fingerprint(lightweight_fingerprint(title, kind))
        if found:
            return MatchResult(found, "lightweight")

        found = await self.store.find_by_fuzzy_fingerprint(
            fuzzy_fingerprint(title, primary_creator, kind)
        )
        if found:
            return MatchResult(found, "fuzzy_fingerprint")

        found = await self.fuzzy.fuzzy_match(title, primary_creator, kind, threshold)
        if found:
            return MatchResult(found, "similarity")

        return None

    async def remember_ocr_variant(
        self,
        collectable_id: int,
        title: Optional[str],
        primary_creator: Optional[str],
        kind: Optional[str] = None,
    ) -> bool:
        """Store the reading's fuzzy fingerprint so the next scan hits a deterministic tier."""
        fingerprint = fuzzy_fingerprint(title, primary_creator, kind)
        if not fingerprint:
            return False
        return await self.store.add_fuzzy_fingerprint(collectable_id, fingerprint)
