"""
Batch discovery ingestion.

Runs a list of adapter items through the CollectableDiscoveryHook and
tallies the outcome. One bad item never aborts the batch: it is counted
as an error and the job moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from discovery.hook import CollectableDiscoveryHook, HookResult, HookStatus

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 5


class IngestionStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    DISABLED = "disabled"


@dataclass
class DiscoveryItem:
    """One adapter output: enrichment (may be None) + the raw item."""
    source: str
    kind: Optional[str]
    original_item: Dict[str, Any]
    enrichment: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: Optional[str] = None, kind: Optional[str] = None) -> DiscoveryItem:
        """
        Accepts either a wrapped record
            {"source": ..., "kind": ..., "enrichment": {...}, "original_item": {...}}
        or a bare normalized item, in which case source/kind come from the caller.
        """
        if "original_item" in data or "enrichment" in data:
            return cls(
                source=data.get("source") or source or "generic",
                kind=data.get("kind") or kind,
                original_item=data.get("original_item") or {},
                enrichment=data.get("enrichment"),
            )
        return cls(source=source or data.get("source") or "generic", kind=kind or data.get("kind"), original_item=data)


@dataclass
class IngestionResult:
    """Tally for one batch."""
    status: IngestionStatus
    processed: int = 0
    created: int = 0
    existing: int = 0
    skipped: int = 0
    errored: int = 0
    errors: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "processed": self.processed,
            "created": self.created,
            "existing": self.existing,
            "skipped": self.skipped,
            "errored": self.errored,
            "error_message": "; ".join(self.errors[:MAX_REPORTED_ERRORS]) if self.errors else None,
            "timestamp": self.timestamp,
        }


class DiscoveryIngestionJob:
    """
    Usage:
        job = DiscoveryIngestionJob(hook)
        result = await job.run(items)
        print(result.to_dict())
    """

    def __init__(self, hook: CollectableDiscoveryHook):
        self.hook = hook

    async def run(self, items: Iterable[DiscoveryItem]) -> IngestionResult:
        if not self.hook.enabled:
            logger.info("Discovery hook disabled, skipping ingestion batch")
            return IngestionResult(status=IngestionStatus.DISABLED)

        result = IngestionResult(status=IngestionStatus.SUCCESS)

        for item in items:
            result.processed += 1
            try:
                outcome = await self.hook.process_enriched_item(
                    source=item.source,
                    kind=item.kind,
                    enrichment=item.enrichment,
                    original_item=item.original_item,
                )
            except Exception as e:
                # The hook reports expected failures as values; anything else
                # is still just this item's problem
                logger.exception(f"Unexpected failure ingesting {item.source} item")
                outcome = HookResult(HookStatus.ERROR, reason=str(e))

            self._tally(result, item, outcome)

        if result.errored:
            result.status = IngestionStatus.PARTIAL_SUCCESS

        logger.info(
            f"Ingestion finished: {result.processed} processed, {result.created} created, "
            f"{result.existing} existing, {result.skipped} skipped, {result.errored} errors"
        )
        return result

    @staticmethod
    def _tally(result: IngestionResult, item: DiscoveryItem, outcome: HookResult) -> None:
        if outcome.status == HookStatus.CREATED:
            result.created += 1
        elif outcome.status == HookStatus.EXISTS:
            result.existing += 1
        elif outcome.status == HookStatus.SKIPPED:
            result.skipped += 1
        elif outcome.status == HookStatus.ERROR:
            result.errored += 1
            title = item.original_item.get("title") or (item.enrichment or {}).get("title")
            result.errors.append(f"{title!r}: {outcome.reason}")
