"""
Discriminated feed entry ids.

Feed entries are addressed as "agg:<uuid>" (an event aggregate) or
"shelf:<int>" (a shelf). The prefix decides the kind; no guessing from
the shape of the id.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

AGGREGATE_PREFIX = "agg"
SHELF_PREFIX = "shelf"


@dataclass(frozen=True)
class FeedEntryRef:
    kind: str  # "agg" or "shelf"
    value: str

    @property
    def is_aggregate(self) -> bool:
        return self.kind == AGGREGATE_PREFIX

    @property
    def shelf_id(self) -> int:
        if self.kind != SHELF_PREFIX:
            raise ValueError(f"{self} is not a shelf reference")
        return int(self.value)

    def __str__(self) -> str:
        return f"{self.kind}:{self.value}"


def aggregate_ref(aggregate_id: str) -> str:
    return f"{AGGREGATE_PREFIX}:{aggregate_id}"


def shelf_ref(shelf_id: int) -> str:
    return f"{SHELF_PREFIX}:{int(shelf_id)}"


def parse_feed_entry_ref(raw: str) -> FeedEntryRef:
    """
    Parse "agg:<uuid>" or "shelf:<int>".

    Raises:
        ValueError: unknown prefix, malformed uuid, or non-numeric shelf id
    """
    if not raw or ":" not in raw:
        raise ValueError(f"Invalid feed entry id: {raw!r}")

    kind, _, value = raw.partition(":")
    if kind == AGGREGATE_PREFIX:
        try:
            return FeedEntryRef(AGGREGATE_PREFIX, str(uuid.UUID(value)))
        except ValueError:
            raise ValueError(f"Invalid aggregate id: {value!r}") from None
    if kind == SHELF_PREFIX:
        if not value.isdigit():
            raise ValueError(f"Invalid shelf id: {value!r}")
        return FeedEntryRef(SHELF_PREFIX, str(int(value)))

    raise ValueError(f"Unknown feed entry kind: {kind!r}")
