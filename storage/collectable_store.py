"""
CollectableStore: the canonical catalog.

Every observation of a real-world item (OCR, vision, discovery feeds)
ends up here. The store guarantees:

1. Exact fingerprint uniqueness (UNIQUE constraint)
2. Merge-without-loss: an upsert never erases a fact contributed earlier
3. Racing inserts of the same new item converge on one row (the
   IntegrityError is retried and takes the merge branch)

Merge policy per field:
- Scalars: incoming non-None wins
- creators/publishers/formats/tags: order-preserving, case-insensitive union
- images: union by url
- identifiers: map union, incoming wins key conflicts
- sources: append only
- fuzzy_fingerprints: union

Usage:
    async with database(":memory:") as db:
        store = CollectableStore(db)
        hobbit = await store.upsert(Collectable(kind="book", title="The Hobbit",
                                                primary_creator="J.R.R. Tolkien"))
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite
from tenacity import (
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from storage.database import Database, is_transient_store_error, parse_datetime, to_iso, utc_now
from utils.fingerprint import exact_fingerprint, lightweight_fingerprint, normalize_collectable_kind

logger = logging.getLogger(__name__)

COVER_IMAGE_KEYS = ("url_large", "url_medium", "url_small", "url")


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class Collectable:
    """
    Canonical catalog entry.

    Also used as the upsert candidate: id/created_at/updated_at are None
    until the record is persisted.
    """
    title: str
    kind: Optional[str] = None
    subtitle: Optional[str] = None
    description: Optional[str] = None
    primary_creator: Optional[str] = None
    creators: List[str] = field(default_factory=list)
    publishers: List[str] = field(default_factory=list)
    year: Optional[int] = None
    formats: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    identifiers: Dict[str, Any] = field(default_factory=dict)
    images: List[Dict[str, Any]] = field(default_factory=list)
    cover_url: Optional[str] = None
    cover_media_id: Optional[int] = None
    sources: List[Dict[str, Any]] = field(default_factory=list)
    fingerprint: Optional[str] = None
    lightweight_fingerprint: Optional[str] = None
    fuzzy_fingerprints: List[str] = field(default_factory=list)
    external_id: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


# =============================================================================
# MERGE HELPERS (pure)
# =============================================================================

def union_case_insensitive(existing: Iterable[Any], incoming: Iterable[Any]) -> List[str]:
    """
    Order-preserving union; the first spelling of a value wins.

    Example:
        union_case_insensitive(["Adventure"], ["adventure", "Sci-Fi"])
        -> ["Adventure", "Sci-Fi"]
    """
    result: List[str] = []
    seen = set()
    for value in list(existing or []) + list(incoming or []):
        if value is None:
            continue
        text = str(value).strip()
        if not text:
            continue
        key = text.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(text)
    return result


def normalize_formats(values: Iterable[Any]) -> List[str]:
    """Trimmed, case-insensitively deduplicated formats in first-seen order."""
    return union_case_insensitive([], values or [])


def _image_key(image: Dict[str, Any]) -> str:
    for key in COVER_IMAGE_KEYS:
        if image.get(key):
            return str(image[key])
    return json.dumps(image, sort_keys=True)


def union_images(existing: Iterable[Dict[str, Any]], incoming: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    result: List[Dict[str, Any]] = []
    seen = set()
    for image in list(existing or []) + list(incoming or []):
        if not isinstance(image, dict):
            continue
        key = _image_key(image)
        if key in seen:
            continue
        seen.add(key)
        result.append(image)
    return result


def union_identifiers(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(existing or {})
    for key, value in (incoming or {}).items():
        if value is None:
            continue
        merged[key] = value
    return merged


def resolve_cover_url(cover_url: Optional[str], images: Iterable[Dict[str, Any]]) -> Optional[str]:
    """Explicit cover_url wins; otherwise the first image's largest url."""
    if cover_url:
        return cover_url
    for image in images or []:
        if not isinstance(image, dict):
            continue
        for key in COVER_IMAGE_KEYS:
            if image.get(key):
                return image[key]
    return None


def merge_collectable(existing: Collectable, incoming: Collectable) -> Collectable:
    """
    Merge an incoming candidate into an existing record without losing facts.

    Identity fields (id, fingerprint, created_at) always come from existing.
    """
    def pick(new, old):
        return new if new is not None else old

    images = union_images(existing.images, incoming.images)

    return replace(
        existing,
        kind=pick(incoming.kind, existing.kind),
        title=incoming.title or existing.title,
        subtitle=pick(incoming.subtitle, existing.subtitle),
        description=pick(incoming.description, existing.description),
        primary_creator=pick(incoming.primary_creator, existing.primary_creator),
        creators=union_case_insensitive(existing.creators, incoming.creators),
        publishers=union_case_insensitive(existing.publishers, incoming.publishers),
        year=pick(incoming.year, existing.year),
        formats=union_case_insensitive(existing.formats, incoming.formats),
        tags=union_case_insensitive(existing.tags, incoming.tags),
        identifiers=union_identifiers(existing.identifiers, incoming.identifiers),
        images=images,
        cover_url=resolve_cover_url(pick(incoming.cover_url, existing.cover_url), images),
        cover_media_id=pick(incoming.cover_media_id, existing.cover_media_id),
        sources=list(existing.sources or []) + list(incoming.sources or []),
        lightweight_fingerprint=pick(incoming.lightweight_fingerprint, existing.lightweight_fingerprint),
        fuzzy_fingerprints=list(dict.fromkeys(
            list(existing.fuzzy_fingerprints or []) + list(incoming.fuzzy_fingerprints or [])
        )),
        external_id=pick(incoming.external_id, existing.external_id),
    )


def _dump(value: Any) -> str:
    return json.dumps(value if value is not None else [])


def _load(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning(f"Discarding malformed JSON column value: {value!r}")
        return default


# =============================================================================
# STORE
# =============================================================================

class CollectableStore:
    """
    Catalog storage on top of the shared Database handle.

    Lookups return None on a miss; only store I/O failures raise.
    """

    def __init__(self, db: Database, cover_materializer=None):
        """
        Args:
            db: Initialized Database handle
            cover_materializer: Optional CoverMaterializer; called after each
                upsert, failures are logged and ignored
        """
        self.db = db
        self.cover_materializer = cover_materializer

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def find_by_id(self, collectable_id: int) -> Optional[Collectable]:
        row = await self.db.fetch_one("SELECT * FROM collectables WHERE id = ?", (collectable_id,))
        return self._row_to_collectable(row) if row else None

    async def find_by_exact_fingerprint(self, fingerprint: Optional[str]) -> Optional[Collectable]:
        if not fingerprint:
            return None
        row = await self.db.fetch_one(
            "SELECT * FROM collectables WHERE fingerprint = ? LIMIT 1", (fingerprint,)
        )
        return self._row_to_collectable(row) if row else None

    async def find_by_lightweight_fingerprint(self, fingerprint: Optional[str]) -> Optional[Collectable]:
        if not fingerprint:
            return None
        row = await self.db.fetch_one(
            "SELECT * FROM collectables WHERE lightweight_fingerprint = ? ORDER BY id ASC LIMIT 1",
            (fingerprint,),
        )
        return self._row_to_collectable(row) if row else None

    async def find_by_fuzzy_fingerprint(self, fingerprint: Optional[str]) -> Optional[Collectable]:
        """Scan each record's accumulated list of fuzzy fingerprints."""
        if not fingerprint:
            return None
        row = await self.db.fetch_one(
            """
            SELECT c.* FROM collectables c
            WHERE EXISTS (
                SELECT 1 FROM json_each(c.fuzzy_fingerprints) fp WHERE fp.value = ?
            )
            ORDER BY c.id ASC
            LIMIT 1
            """,
            (fingerprint,),
        )
        return self._row_to_collectable(row) if row else None

    # =========================================================================
    # SEARCH
    # =========================================================================

    async def search_by_title(
        self,
        term: str,
        kind: Optional[str] = None,
        limit: int = 10,
        threshold: float = 0.3,
    ) -> List[Collectable]:
        """Titles ranked by trigram similarity to term."""
        if not term or not term.strip():
            return []
        sql = """
            SELECT c.*, similarity(c.title, :term) AS sim
            FROM collectables c
            WHERE similarity(c.title, :term) > :threshold
        """
        params: Dict[str, Any] = {"term": term.strip(), "threshold": threshold, "limit": limit}
        if kind:
            sql += " AND c.kind = :kind"
            params["kind"] = normalize_collectable_kind(kind)
        sql += " ORDER BY sim DESC, c.id ASC LIMIT :limit"
        rows = await self.db.fetch_all(sql, params)
        return [self._row_to_collectable(row) for row in rows]

    async def search_global(
        self,
        query: str,
        kind: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Collectable]:
        """Substring match on title or primary creator."""
        if not query or not query.strip():
            return []
        pattern = f"%{_escape_like(query.strip())}%"
        return await self._search_like(pattern, kind, limit, offset)

    async def search_wildcard(
        self,
        pattern: str,
        kind: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Collectable]:
        """
        Anchored wildcard search where "*" matches any run of characters.

        Example:
            search_wildcard("the hob*")  # "The Hobbit", not "Return of the Hobbit"
        """
        if not pattern or not pattern.strip():
            return []
        like = _escape_like(pattern.strip()).replace("*", "%")
        return await self._search_like(like, kind, limit, offset)

    async def _search_like(
        self,
        like: str,
        kind: Optional[str],
        limit: int,
        offset: int,
    ) -> List[Collectable]:
        sql = """
            SELECT * FROM collectables
            WHERE (title LIKE :pattern ESCAPE '\\' OR primary_creator LIKE :pattern ESCAPE '\\')
        """
        params: Dict[str, Any] = {
            "pattern": like,
            "limit": max(1, limit),
            "offset": max(0, offset),
        }
        if kind:
            sql += " AND kind = :kind"
            params["kind"] = normalize_collectable_kind(kind)
        sql += " ORDER BY title COLLATE NOCASE ASC, id ASC LIMIT :limit OFFSET :offset"
        rows = await self.db.fetch_all(sql, params)
        return [self._row_to_collectable(row) for row in rows]

    # =========================================================================
    # WRITES
    # =========================================================================

    def prepare_candidate(self, candidate: Collectable) -> Collectable:
        """
        Normalize a candidate and fill in missing fingerprints.

        Raises:
            ValueError: if the candidate has no title
        """
        title = (candidate.title or "").strip()
        if not title:
            raise ValueError("Collectable title is required")

        kind = normalize_collectable_kind(candidate.kind)
        formats = normalize_formats(candidate.formats)
        fingerprint = candidate.fingerprint or exact_fingerprint(
            title, candidate.primary_creator, candidate.year, kind
        )
        if not fingerprint:
            raise ValueError(f"Cannot fingerprint collectable {title!r}")

        return replace(
            candidate,
            title=title,
            kind=kind,
            formats=formats,
            fingerprint=fingerprint,
            lightweight_fingerprint=candidate.lightweight_fingerprint
            or lightweight_fingerprint(title, kind),
            cover_url=resolve_cover_url(candidate.cover_url, candidate.images),
        )

    async def upsert(self, candidate: Collectable) -> Collectable:
        """
        Insert a new collectable or merge into the one with the same
        exact fingerprint.

        Cover materialization runs afterwards and can never fail the upsert.

        Raises:
            ValueError: candidate has no title
            aiosqlite.Error: store failure after retries
        """
        prepared = self.prepare_candidate(candidate)
        record = await self._upsert_with_retry(prepared)
        return await self._materialize_cover(record)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        retry=(
            retry_if_exception_type(aiosqlite.IntegrityError)
            | retry_if_exception(is_transient_store_error)
        ),
        reraise=True,
    )
    async def _upsert_with_retry(self, candidate: Collectable) -> Collectable:
        now = utc_now()
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT * FROM collectables WHERE fingerprint = ?", (candidate.fingerprint,)
            )
            row = await cursor.fetchone()

            if row is not None:
                merged = merge_collectable(self._row_to_collectable(row), candidate)
                merged.updated_at = now
                await conn.execute(
                    """
                    UPDATE collectables SET
                        lightweight_fingerprint = ?, kind = ?, title = ?, subtitle = ?,
                        description = ?, primary_creator = ?, creators = ?, publishers = ?,
                        year = ?, formats = ?, tags = ?, identifiers = ?, images = ?,
                        cover_url = ?, cover_media_id = ?, sources = ?, fuzzy_fingerprints = ?,
                        external_id = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        merged.lightweight_fingerprint,
                        merged.kind,
                        merged.title,
                        merged.subtitle,
                        merged.description,
                        merged.primary_creator,
                        _dump(merged.creators),
                        _dump(merged.publishers),
                        merged.year,
                        _dump(merged.formats),
                        _dump(merged.tags),
                        json.dumps(merged.identifiers or {}),
                        _dump(merged.images),
                        merged.cover_url,
                        merged.cover_media_id,
                        _dump(merged.sources),
                        _dump(merged.fuzzy_fingerprints),
                        merged.external_id,
                        to_iso(now),
                        merged.id,
                    ),
                )
                logger.debug(f"Merged collectable {merged.id} ({merged.title!r})")
                return merged

            cursor = await conn.execute(
                """
                INSERT INTO collectables (
                    fingerprint, lightweight_fingerprint, kind, title, subtitle,
                    description, primary_creator, creators, publishers, year, formats,
                    tags, identifiers, images, cover_url, cover_media_id, sources,
                    fuzzy_fingerprints, external_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    candidate.fingerprint,
                    candidate.lightweight_fingerprint,
                    candidate.kind,
                    candidate.title,
                    candidate.subtitle,
                    candidate.description,
                    candidate.primary_creator,
                    _dump(candidate.creators),
                    _dump(candidate.publishers),
                    candidate.year,
                    _dump(candidate.formats),
                    _dump(candidate.tags),
                    json.dumps(candidate.identifiers or {}),
                    _dump(candidate.images),
                    candidate.cover_url,
                    candidate.cover_media_id,
                    _dump(candidate.sources),
                    _dump(candidate.fuzzy_fingerprints),
                    candidate.external_id,
                    to_iso(now),
                    to_iso(now),
                ),
            )
            created = replace(candidate, id=cursor.lastrowid, created_at=now, updated_at=now)
            logger.info(f"Created collectable {created.id} ({created.title!r})")
            return created

    async def _materialize_cover(self, record: Collectable) -> Collectable:
        if self.cover_materializer is None or not record.cover_url:
            return record
        try:
            media_id = await self.cover_materializer.materialize(self, record)
        except Exception as e:
            logger.warning(f"Cover materialization failed for collectable {record.id}: {e}")
            return record
        if media_id is not None:
            record.cover_media_id = media_id
        return record

    async def set_cover_media(self, collectable_id: int, media_id: int) -> None:
        await self.db.execute(
            "UPDATE collectables SET cover_media_id = ?, updated_at = ? WHERE id = ?",
            (media_id, to_iso(utc_now()), collectable_id),
        )

    async def add_fuzzy_fingerprint(self, collectable_id: int, fingerprint: Optional[str]) -> bool:
        """
        Idempotently append a fuzzy fingerprint.

        Returns:
            True if the fingerprint was added, False if already present
            (or the collectable does not exist)
        """
        if not fingerprint:
            return False
        rowcount = await self.db.execute(
            """
            UPDATE collectables
            SET fuzzy_fingerprints = json_insert(fuzzy_fingerprints, '$[#]', ?),
                updated_at = ?
            WHERE id = ?
              AND NOT EXISTS (
                  SELECT 1 FROM json_each(collectables.fuzzy_fingerprints) fp WHERE fp.value = ?
              )
            """,
            (fingerprint, to_iso(utc_now()), collectable_id, fingerprint),
        )
        return rowcount > 0

    async def add_source(self, collectable_id: int, source: Dict[str, Any]) -> None:
        """Append a provenance entry to a collectable's sources."""
        await self.db.execute(
            """
            UPDATE collectables
            SET sources = json_insert(sources, '$[#]', json(?)), updated_at = ?
            WHERE id = ?
            """,
            (json.dumps(source), to_iso(utc_now()), collectable_id),
        )

    # =========================================================================
    # STATS
    # =========================================================================

    async def count(self) -> int:
        row = await self.db.fetch_one("SELECT COUNT(*) FROM collectables")
        return row[0] if row else 0

    async def stats(self) -> Dict[str, Any]:
        rows = await self.db.fetch_all(
            "SELECT COALESCE(kind, 'unknown') AS kind, COUNT(*) AS n FROM collectables GROUP BY 1 ORDER BY 1"
        )
        by_kind = {row["kind"]: row["n"] for row in rows}
        media = await self.db.fetch_one("SELECT COUNT(*) FROM media")
        return {
            "total": sum(by_kind.values()),
            "by_kind": by_kind,
            "cached_covers": media[0] if media else 0,
        }

    # =========================================================================
    # ROW MAPPING
    # =========================================================================

    @staticmethod
    def _row_to_collectable(row) -> Collectable:
        """Convert a collectables row to Collectable."""
        return Collectable(
            id=row["id"],
            fingerprint=row["fingerprint"],
            lightweight_fingerprint=row["lightweight_fingerprint"],
            kind=row["kind"],
            title=row["title"],
            subtitle=row["subtitle"],
            description=row["description"],
            primary_creator=row["primary_creator"],
            creators=_load(row["creators"], []),
            publishers=_load(row["publishers"], []),
            year=row["year"],
            formats=_load(row["formats"], []),
            tags=_load(row["tags"], []),
            identifiers=_load(row["identifiers"], {}),
            images=_load(row["images"], []),
            cover_url=row["cover_url"],
            cover_media_id=row["cover_media_id"],
            sources=_load(row["sources"], []),
            fuzzy_fingerprints=_load(row["fuzzy_fingerprints"], []),
            external_id=row["external_id"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
