"""
Cover image materialization.

After an upsert the CollectableStore hands the record to a
CoverMaterializer. The httpx implementation downloads the cover, stores
it under a content-addressed cache path, records a media row and points
the collectable at it. Every failure here is best effort: the store
catches and logs it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import httpx

from storage.database import to_iso, utc_now

if TYPE_CHECKING:
    from storage.collectable_store import Collectable, CollectableStore

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}

MAX_COVER_BYTES = 10 * 1024 * 1024


class CoverMaterializer:
    """Interface: returns the media id now referenced by the collectable, or None."""

    async def materialize(self, store: CollectableStore, collectable: Collectable) -> Optional[int]:
        raise NotImplementedError


class HttpCoverMaterializer(CoverMaterializer):
    """
    Download covers with httpx into a local cache.

    Usage:
        async with httpx.AsyncClient(timeout=15.0) as client:
            store = CollectableStore(db, HttpCoverMaterializer("cache/covers", client))
    """

    def __init__(
        self,
        cache_dir: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        provider: str = "remote",
    ):
        self.cache_dir = Path(cache_dir)
        self.client = client
        self.timeout = timeout
        self.provider = provider

    async def materialize(self, store: CollectableStore, collectable: Collectable) -> Optional[int]:
        if collectable.id is None or not collectable.cover_url:
            return None

        existing = await store.db.fetch_one(
            "SELECT id FROM media WHERE collectable_id = ? AND source_url = ?",
            (collectable.id, collectable.cover_url),
        )
        if existing is not None:
            if collectable.cover_media_id != existing["id"]:
                await store.set_cover_media(collectable.id, existing["id"])
            return existing["id"]

        content, content_type = await self._download(collectable.cover_url)
        checksum = hashlib.sha256(content).hexdigest()
        extension = CONTENT_TYPE_EXTENSIONS.get(content_type, ".img")
        local_path = self.cache_dir / checksum[:2] / f"{checksum}{extension}"

        await asyncio.to_thread(self._write, local_path, content)

        now = to_iso(utc_now())
        async with store.db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO media (
                    collectable_id, kind, provider, source_url, local_path,
                    content_type, size_bytes, checksum, created_at, updated_at
                ) VALUES (?, 'cover', ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(collectable_id, source_url) DO UPDATE SET
                    local_path = excluded.local_path,
                    content_type = excluded.content_type,
                    size_bytes = excluded.size_bytes,
                    checksum = excluded.checksum,
                    updated_at = excluded.updated_at
                """,
                (
                    collectable.id,
                    self.provider,
                    collectable.cover_url,
                    str(local_path),
                    content_type,
                    len(content),
                    checksum,
                    now,
                    now,
                ),
            )
            cursor = await conn.execute(
                "SELECT id FROM media WHERE collectable_id = ? AND source_url = ?",
                (collectable.id, collectable.cover_url),
            )
            row = await cursor.fetchone()
            media_id = row["id"]
            await conn.execute(
                "UPDATE collectables SET cover_media_id = ?, updated_at = ? WHERE id = ?",
                (media_id, now, collectable.id),
            )

        logger.info(f"Cached cover for collectable {collectable.id} at {local_path}")
        return media_id

    async def _download(self, url: str):
        if self.client is not None:
            response = await self.client.get(url, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, follow_redirects=True)

        response.raise_for_status()

        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if not content_type.startswith("image/"):
            raise ValueError(f"Unexpected content type for cover {url}: {content_type or 'none'}")
        if len(response.content) > MAX_COVER_BYTES:
            raise ValueError(f"Cover {url} exceeds {MAX_COVER_BYTES} bytes")

        return response.content, content_type

    @staticmethod
    def _write(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
