"""
Tests for CatalogConfig environment loading.
"""

from services.config import CatalogConfig, parse_bool, parse_positive_int, parse_ratio
from storage.collectable_store import Collectable
from storage.fuzzy_matcher import FuzzyMatcher


class TestParsers:

    def test_positive_int(self):
        assert parse_positive_int("30", 15) == 30
        assert parse_positive_int(" 7 ", 15) == 7
        assert parse_positive_int("0", 15) == 15
        assert parse_positive_int("-3", 15) == 15
        assert parse_positive_int("abc", 15) == 15
        assert parse_positive_int(None, 15) == 15

    def test_ratio(self):
        assert parse_ratio("0.5", 0.3) == 0.5
        assert parse_ratio("nope", 0.3) == 0.3

    def test_bool(self):
        assert parse_bool("true", False) is True
        assert parse_bool("FALSE", True) is False
        assert parse_bool("", True) is True


class TestCatalogConfig:

    def test_defaults(self, monkeypatch):
        for key in ("FEED_AGGREGATE_WINDOW_MINUTES", "FEED_AGGREGATE_PREVIEW_LIMIT", "CATALOG_DB_PATH"):
            monkeypatch.delenv(key, raising=False)
        config = CatalogConfig.from_env()
        assert config.aggregate_window_minutes == 15
        assert config.preview_payload_limit == 5
        assert config.db_path == "catalog.db"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("FEED_AGGREGATE_WINDOW_MINUTES", "30")
        monkeypatch.setenv("FEED_AGGREGATE_PREVIEW_LIMIT", "bogus")
        monkeypatch.setenv("COLLECTABLE_DISCOVERY_HOOK_ENABLED", "false")
        monkeypatch.setenv("FEED_DISCOVERY_STRIDE", "4")
        config = CatalogConfig.from_env()
        assert config.aggregate_window_minutes == 30
        assert config.preview_payload_limit == 5
        assert config.discovery_hook_enabled is False
        assert config.discovery_stride == 4

    def test_fuzzy_threshold_default(self, monkeypatch):
        monkeypatch.delenv("FUZZY_MATCH_THRESHOLD", raising=False)
        assert CatalogConfig.from_env().fuzzy_match_threshold == 0.3


class TestFuzzyMatcherFromConfig:

    async def test_threshold_comes_from_env(self, monkeypatch, db, collectable_store):
        await collectable_store.upsert(
            Collectable(kind="movie", title="The Hobbit", primary_creator="Peter Jackson")
        )

        monkeypatch.setenv("FUZZY_MATCH_THRESHOLD", "0.5")
        strict = FuzzyMatcher.from_config(db, CatalogConfig.from_env())
        monkeypatch.setenv("FUZZY_MATCH_THRESHOLD", "0.4")
        lenient = FuzzyMatcher.from_config(db, CatalogConfig.from_env())

        assert strict.default_threshold == 0.5
        assert lenient.default_threshold == 0.4
        # combined similarity for this reading sits between the two thresholds
        assert await strict.fuzzy_match("The Hobbit Movie", "Tolkien", "movie") is None
        assert await lenient.fuzzy_match("The Hobbit Movie", "Tolkien", "movie") is not None
