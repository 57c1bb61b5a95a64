"""
Runtime configuration for the Catalog Service.

All knobs come from environment variables (a .env file is loaded by the
CLI entry point). Invalid or non-positive integers fall back to defaults.

Usage:
    from services.config import CatalogConfig

    config = CatalogConfig.from_env()
    config.aggregate_window_minutes  # 15
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def parse_positive_int(value: Optional[str], fallback: int) -> int:
    """Parse a positive int, returning fallback for missing/invalid input."""
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def parse_ratio(value: Optional[str], fallback: float) -> float:
    """Parse a positive float, returning fallback for missing/invalid input."""
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def parse_bool(value: Optional[str], fallback: bool) -> bool:
    if value is None or not str(value).strip():
        return fallback
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class CatalogConfig:
    """Configuration for the catalog core"""

    # Storage
    db_path: str = "catalog.db"
    pool_size: int = 4
    busy_timeout_ms: int = 5000
    operation_timeout_seconds: float = 10.0

    # Event aggregation
    aggregate_window_minutes: int = 15
    preview_payload_limit: int = 5
    aggregate_debug: bool = False

    # Dedup / discovery ingestion
    discovery_hook_enabled: bool = True
    fuzzy_match_threshold: float = 0.3
    tmdb_image_base_url: str = "https://image.tmdb.org/t/p/w500"

    # Cover media
    cover_download_enabled: bool = False
    cover_cache_dir: str = "cache/covers"

    # Feed
    news_group_limit: int = 3
    news_items_per_group: int = 3
    discovery_stride: int = 3
    feed_preview_items: int = 3

    @classmethod
    def from_env(cls) -> CatalogConfig:
        """Load configuration from environment variables"""
        return cls(
            db_path=os.getenv("CATALOG_DB_PATH", "catalog.db"),
            pool_size=parse_positive_int(os.getenv("DB_POOL_SIZE"), 4),
            busy_timeout_ms=parse_positive_int(os.getenv("DB_BUSY_TIMEOUT_MS"), 5000),
            operation_timeout_seconds=parse_ratio(
                os.getenv("STORE_OPERATION_TIMEOUT_SECONDS"), 10.0
            ),
            aggregate_window_minutes=parse_positive_int(
                os.getenv("FEED_AGGREGATE_WINDOW_MINUTES"), 15
            ),
            preview_payload_limit=parse_positive_int(
                os.getenv("FEED_AGGREGATE_PREVIEW_LIMIT"), 5
            ),
            aggregate_debug=parse_bool(os.getenv("FEED_AGGREGATE_DEBUG"), False),
            discovery_hook_enabled=parse_bool(
                os.getenv("COLLECTABLE_DISCOVERY_HOOK_ENABLED"), True
            ),
            fuzzy_match_threshold=parse_ratio(os.getenv("FUZZY_MATCH_THRESHOLD"), 0.3),
            tmdb_image_base_url=os.getenv(
                "TMDB_IMAGE_BASE_URL", "https://image.tmdb.org/t/p/w500"
            ),
            cover_download_enabled=parse_bool(os.getenv("COVER_DOWNLOAD_ENABLED"), False),
            cover_cache_dir=os.getenv("COVER_CACHE_DIR", "cache/covers"),
            news_group_limit=parse_positive_int(os.getenv("NEWS_FEED_GROUP_LIMIT"), 3),
            news_items_per_group=parse_positive_int(os.getenv("NEWS_FEED_ITEMS_PER_GROUP"), 3),
            discovery_stride=parse_positive_int(os.getenv("FEED_DISCOVERY_STRIDE"), 3),
            feed_preview_items=parse_positive_int(os.getenv("FEED_PREVIEW_ITEMS"), 3),
        )
