"""
Source-specific payload builders for discovery ingestion.

Each adapter (Blu-ray scraper, IGDB, TMDB, ...) hands the hook an
optional enrichment record plus the original scraped item. The builders
normalize that into a DiscoveryPayload; the hook never looks at
provider-specific fields past this point.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

DEFAULT_TMDB_IMAGE_BASE_URL = "https://image.tmdb.org/t/p/w500"


@dataclass
class DiscoveryPayload:
    """Provider-agnostic collectable facts."""
    title: Optional[str]
    description: Optional[str] = None
    primary_creator: Optional[str] = None
    creators: List[str] = field(default_factory=list)
    publishers: List[str] = field(default_factory=list)
    year: Optional[int] = None
    cover_url: Optional[str] = None
    images: List[Dict[str, Any]] = field(default_factory=list)
    formats: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    identifiers: Dict[str, Any] = field(default_factory=dict)
    external_id: Optional[str] = None


def _year_from_date(value: Any) -> Optional[int]:
    """Year from "YYYY-MM-DD" (or any ISO date prefix)."""
    if not value:
        return None
    text = str(value).strip()
    if len(text) >= 4 and text[:4].isdigit():
        return int(text[:4])
    return None


def _year_from_epoch(value: Any) -> Optional[int]:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc).year
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _coerce_year(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return _year_from_date(value)


def _identifiers(**values: Any) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def build_payload(
    source: str,
    enrichment: Optional[Dict[str, Any]],
    original_item: Optional[Dict[str, Any]],
    image_base_url: str = DEFAULT_TMDB_IMAGE_BASE_URL,
) -> Optional[DiscoveryPayload]:
    """Route to the builder for this source; unknown sources use the generic one."""
    if source == "bluray":
        return build_bluray_payload(enrichment, original_item, image_base_url)
    if source == "igdb":
        return build_igdb_payload(enrichment, original_item)
    if source == "tmdb":
        return build_tmdb_payload(enrichment, original_item, image_base_url)
    return build_generic_payload(enrichment, original_item)


def build_bluray_payload(
    tmdb: Optional[Dict[str, Any]],
    bluray_item: Optional[Dict[str, Any]],
    image_base_url: str = DEFAULT_TMDB_IMAGE_BASE_URL,
) -> Optional[DiscoveryPayload]:
    """
    Scraped Blu-ray release, optionally enriched with a TMDB search hit.

    Without TMDB only the scraped title, format and page url survive.
    """
    if not tmdb and not bluray_item:
        return None
    bluray_item = bluray_item or {}
    formats = [bluray_item["format"]] if bluray_item.get("format") else []

    if not tmdb:
        return DiscoveryPayload(
            title=bluray_item.get("title"),
            formats=formats,
            identifiers=_identifiers(bluray_url=bluray_item.get("source_url")),
        )

    cover_url = f"{image_base_url}{tmdb['poster_path']}" if tmdb.get("poster_path") else None
    return DiscoveryPayload(
        title=tmdb.get("title") or tmdb.get("original_title") or bluray_item.get("title"),
        description=tmdb.get("overview"),
        year=_year_from_date(tmdb.get("release_date")),
        cover_url=cover_url,
        images=[{"url": cover_url, "type": "poster"}] if cover_url else [],
        formats=formats,
        identifiers=_identifiers(
            tmdb=str(tmdb["id"]) if tmdb.get("id") else None,
            bluray_url=bluray_item.get("source_url"),
        ),
        external_id=f"tmdb:{tmdb['id']}" if tmdb.get("id") else None,
    )


def build_igdb_payload(
    igdb: Optional[Dict[str, Any]],
    original_item: Optional[Dict[str, Any]],
) -> Optional[DiscoveryPayload]:
    if not igdb:
        return build_generic_payload(None, original_item)

    companies = igdb.get("involved_companies") or []
    primary_creator = None
    if companies and isinstance(companies[0], dict):
        primary_creator = (companies[0].get("company") or {}).get("name")

    cover_url = (igdb.get("cover") or {}).get("url")
    return DiscoveryPayload(
        title=igdb.get("name") or (original_item or {}).get("title"),
        description=igdb.get("summary"),
        primary_creator=primary_creator,
        year=_year_from_epoch(igdb.get("first_release_date")) if igdb.get("first_release_date") else None,
        cover_url=cover_url,
        images=[{"url": cover_url, "type": "cover"}] if cover_url else [],
        formats=[p["name"] for p in igdb.get("platforms") or [] if p.get("name")],
        tags=[g["name"] for g in igdb.get("genres") or [] if g.get("name")],
        identifiers=_identifiers(igdb=str(igdb["id"]) if igdb.get("id") else None),
        external_id=f"igdb:{igdb['id']}" if igdb.get("id") else None,
    )


def build_tmdb_payload(
    tmdb: Optional[Dict[str, Any]],
    original_item: Optional[Dict[str, Any]],
    image_base_url: str = DEFAULT_TMDB_IMAGE_BASE_URL,
) -> Optional[DiscoveryPayload]:
    """Movies use release_date, TV uses first_air_date."""
    if not tmdb:
        return build_generic_payload(None, original_item)

    cover_url = f"{image_base_url}{tmdb['poster_path']}" if tmdb.get("poster_path") else None
    return DiscoveryPayload(
        title=(
            tmdb.get("title")
            or tmdb.get("name")
            or tmdb.get("original_title")
            or (original_item or {}).get("title")
        ),
        description=tmdb.get("overview"),
        year=_year_from_date(tmdb.get("release_date")) or _year_from_date(tmdb.get("first_air_date")),
        cover_url=cover_url,
        images=[{"url": cover_url, "type": "poster"}] if cover_url else [],
        identifiers=_identifiers(tmdb=str(tmdb["id"]) if tmdb.get("id") else None),
        external_id=f"tmdb:{tmdb['id']}" if tmdb.get("id") else None,
    )


def build_generic_payload(
    enrichment: Optional[Dict[str, Any]],
    original_item: Optional[Dict[str, Any]],
) -> DiscoveryPayload:
    data = enrichment or original_item or {}
    return DiscoveryPayload(
        title=data.get("title") or data.get("name"),
        description=data.get("description") or data.get("overview") or data.get("summary"),
        primary_creator=data.get("primary_creator") or data.get("creator") or data.get("author"),
        year=_coerce_year(data.get("year") or data.get("release_year")),
        cover_url=data.get("cover_url") or data.get("cover_image_url") or data.get("poster_path"),
        external_id=data.get("external_id"),
    )
