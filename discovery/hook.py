"""
CollectableDiscoveryHook: turns normalized discovery items into collectables.

Per item:
    received -> no title?            -> SKIPPED (no_title)
             -> build fingerprints
             -> lookup lightweight, then exact (only on a lightweight miss)
             -> found?               -> EXISTS (provenance appended)
             -> upsert               -> CREATED
                                     -> ERROR (reason = exception message)

A failed lookup is logged and processing continues to the upsert: the
dedup check is an optimization, the exact-fingerprint constraint is the
guarantee.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from discovery.payloads import DEFAULT_TMDB_IMAGE_BASE_URL, build_payload
from storage.collectable_store import Collectable, CollectableStore
from storage.database import utc_now
from utils.fingerprint import exact_fingerprint, lightweight_fingerprint, normalize_collectable_kind

logger = logging.getLogger(__name__)


class HookStatus(str, Enum):
    """Outcome of processing one discovery item."""
    DISABLED = "disabled"
    SKIPPED = "skipped"
    EXISTS = "exists"
    CREATED = "created"
    ERROR = "error"


@dataclass
class HookResult:
    status: HookStatus
    collectable: Optional[Collectable] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "collectable_id": self.collectable.id if self.collectable else None,
            "title": self.collectable.title if self.collectable else None,
            "reason": self.reason,
        }


class CollectableDiscoveryHook:
    """
    Source-agnostic ingestion of enriched discovery items.

    Usage:
        hook = CollectableDiscoveryHook(CollectableStore(db))
        result = await hook.process_enriched_item(
            source="tmdb", kind="movie", enrichment=tmdb_hit, original_item=item
        )
    """

    def __init__(
        self,
        store: CollectableStore,
        enabled: bool = True,
        image_base_url: str = DEFAULT_TMDB_IMAGE_BASE_URL,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.enabled = enabled
        self.image_base_url = image_base_url
        self.clock = clock

    @classmethod
    def from_config(cls, store: CollectableStore, config) -> CollectableDiscoveryHook:
        return cls(
            store,
            enabled=config.discovery_hook_enabled,
            image_base_url=config.tmdb_image_base_url,
        )

    def _provenance(self, source: str, original_item: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "provider": source,
            "discovered_at": self.clock().isoformat(),
            "url": (original_item or {}).get("source_url"),
        }

    async def process_enriched_item(
        self,
        source: str,
        kind: Optional[str],
        enrichment: Optional[Dict[str, Any]] = None,
        original_item: Optional[Dict[str, Any]] = None,
    ) -> HookResult:
        if not self.enabled:
            return HookResult(HookStatus.DISABLED)

        payload = build_payload(source, enrichment, original_item, self.image_base_url)
        if payload is None or not (payload.title or "").strip():
            logger.info(f"Skipping {source} item without title: {(original_item or {}).get('title')!r}")
            return HookResult(HookStatus.SKIPPED, reason="no_title")

        kind = normalize_collectable_kind(kind)
        fingerprint = exact_fingerprint(payload.title, payload.primary_creator, payload.year, kind)
        lwf = lightweight_fingerprint(payload.title, kind)
        provenance = self._provenance(source, original_item)

        logger.debug(
            f"Processing {payload.title!r} ({source}/{kind}) "
            f"fp={(fingerprint or '')[:12]} lwf={lwf[:12]}"
        )

        # 1. Dedup check
        existing = None
        try:
            existing = await self.store.find_by_lightweight_fingerprint(lwf)
            if existing is None and fingerprint:
                existing = await self.store.find_by_exact_fingerprint(fingerprint)
        except Exception as e:
            logger.warning(f"Dedup check failed for {payload.title!r}, continuing to upsert: {e}")
            existing = None

        if existing is not None:
            try:
                await self.store.add_source(existing.id, provenance)
                existing.sources = list(existing.sources) + [provenance]
            except Exception as e:
                logger.warning(f"Could not record provenance on collectable {existing.id}: {e}")
            logger.info(f"Existing collectable {existing.id} matched {payload.title!r} from {source}")
            return HookResult(HookStatus.EXISTS, collectable=existing)

        # 2. Upsert
        try:
            collectable = await self.store.upsert(
                Collectable(
                    fingerprint=fingerprint,
                    lightweight_fingerprint=lwf,
                    kind=kind,
                    title=payload.title,
                    description=payload.description,
                    primary_creator=payload.primary_creator,
                    creators=payload.creators,
                    publishers=payload.publishers,
                    year=payload.year,
                    formats=payload.formats,
                    tags=payload.tags,
                    identifiers=payload.identifiers,
                    images=payload.images,
                    cover_url=payload.cover_url,
                    sources=[provenance],
                    external_id=payload.external_id,
                )
            )
        except Exception as e:
            logger.error(f"Upsert failed for {payload.title!r} from {source}: {e}")
            return HookResult(HookStatus.ERROR, reason=str(e))

        logger.info(f"Created collectable {collectable.id} {collectable.title!r} from {source}")
        return HookResult(HookStatus.CREATED, collectable=collectable)
