"""
Tests for HttpCoverMaterializer using an httpx mock transport.
"""

import hashlib

import httpx
import pytest

from storage.collectable_store import Collectable, CollectableStore
from storage.cover_media import HttpCoverMaterializer

COVER_BYTES = b"\x89PNG\r\n\x1a\nfake-cover"


def make_client(status=200, content_type="image/png", calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(str(request.url))
        return httpx.Response(status, content=COVER_BYTES, headers={"content-type": content_type})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHttpCoverMaterializer:

    async def test_downloads_and_links_media(self, db, tmp_path):
        calls = []
        async with make_client(calls=calls) as client:
            store = CollectableStore(db, HttpCoverMaterializer(str(tmp_path), client, provider="tmdb"))
            record = await store.upsert(
                Collectable(kind="movie", title="Dune", year=2021, cover_url="https://img.example/dune.png")
            )

        assert record.cover_media_id is not None
        assert calls == ["https://img.example/dune.png"]

        checksum = hashlib.sha256(COVER_BYTES).hexdigest()
        cached = tmp_path / checksum[:2] / f"{checksum}.png"
        assert cached.read_bytes() == COVER_BYTES

        media = await db.fetch_one("SELECT * FROM media WHERE id = ?", (record.cover_media_id,))
        assert media["provider"] == "tmdb"
        assert media["checksum"] == checksum
        assert media["size_bytes"] == len(COVER_BYTES)

        stored = await store.find_by_id(record.id)
        assert stored.cover_media_id == record.cover_media_id

    async def test_existing_media_is_reused(self, db, tmp_path):
        calls = []
        async with make_client(calls=calls) as client:
            store = CollectableStore(db, HttpCoverMaterializer(str(tmp_path), client))
            candidate = Collectable(kind="movie", title="Dune", cover_url="https://img.example/dune.png")
            first = await store.upsert(candidate)
            second = await store.upsert(candidate)

        assert len(calls) == 1
        assert first.cover_media_id == second.cover_media_id

    @pytest.mark.parametrize("status,content_type", [(404, "image/png"), (200, "text/html")])
    async def test_bad_response_leaves_record_intact(self, db, tmp_path, status, content_type):
        async with make_client(status=status, content_type=content_type) as client:
            store = CollectableStore(db, HttpCoverMaterializer(str(tmp_path), client))
            record = await store.upsert(
                Collectable(kind="movie", title="Dune", cover_url="https://img.example/dune.png")
            )

        assert record.id is not None
        assert record.cover_media_id is None
        row = await db.fetch_one("SELECT COUNT(*) FROM media")
        assert row[0] == 0
