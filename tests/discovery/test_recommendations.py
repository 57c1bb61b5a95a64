"""
Tests for personalized discovery recommendations.
"""

from datetime import datetime, timedelta, timezone

import pytest

from discovery.recommendations import (
    NewsRecommendations,
    ScoredItem,
    qualifies_for_4k,
    rank_groups,
    score_item,
)
from storage.collectable_store import Collectable
from storage.database import utc_now
from storage.news_store import NewsItem, NewsStore, UserCollectionProfile

FAR_FUTURE = datetime(2099, 1, 1, tzinfo=timezone.utc)


def news(category="movies", item_type="new_release", title="Item", **kwargs):
    kwargs.setdefault("expires_at", FAR_FUTURE)
    return NewsItem(category=category, item_type=item_type, title=title, **kwargs)


class TestScoring:

    def test_score_components(self):
        profile = UserCollectionProfile(
            categories={"movies"}, creators={"Denis Villeneuve"}, genres={"Sci-Fi"}
        )
        item = news(creators=["denis villeneuve"], genres=["sci-fi", "drama"])

        score, reasons = score_item(item, profile)

        assert score == 6
        assert reasons == ["category", "creator", "genre"]

    def test_four_k_threshold(self):
        assert not qualifies_for_4k(UserCollectionProfile(movie_count=9, formats={"4k": 9}))
        assert not qualifies_for_4k(UserCollectionProfile(movie_count=20, formats={"4k": 2}))
        assert not qualifies_for_4k(UserCollectionProfile(movie_count=40, formats={"4k": 5}))
        assert qualifies_for_4k(UserCollectionProfile(movie_count=20, formats={"4k": 2, "uhd": 1}))


class TestRankGroups:

    def scored(self, category, item_type, score, release_date=None, item_id=None):
        return ScoredItem(
            item=news(category, item_type, f"{category}-{item_type}-{score}", release_date=release_date, id=item_id),
            relevance_score=score,
            reasons=[],
        )

    def test_top_k_per_partition_and_group_limit(self):
        scored = [
            self.scored("movies", "new_release", 2, "2026-01-01"),
            self.scored("movies", "new_release", 5, "2025-01-01"),
            self.scored("movies", "new_release", 2, "2026-06-01"),
            self.scored("books", "new_release", 3),
            self.scored("games", "upcoming", 1),
        ]

        groups = rank_groups(scored, group_limit=2, items_per_group=2)

        assert [g.key for g in groups] == ["movies:new_release", "books:new_release"]
        assert [g.group_rank for g in groups] == [1, 2]
        movies = groups[0]
        assert [e.relevance_score for e in movies.items] == [5, 2]
        # Ties on score break on the most recent release date
        assert movies.items[1].item.release_date == "2026-06-01"

    def test_group_ties_break_on_latest_date(self):
        scored = [
            self.scored("books", "upcoming", 2, "2026-01-01"),
            self.scored("movies", "upcoming", 2, "2026-05-01"),
        ]

        groups = rank_groups(scored, group_limit=3, items_per_group=3)

        assert [g.key for g in groups] == ["movies:upcoming", "books:upcoming"]


class TestNewsRecommendations:

    @pytest.fixture
    async def setup(self, db, social_store, collectable_store):
        shelf = await social_store.create_shelf("dana", "Movies", type="movies")
        dune = await collectable_store.upsert(
            Collectable(
                kind="movie",
                title="Dune",
                primary_creator="Denis Villeneuve",
                tags=["Sci-Fi"],
                external_id="tmdb:438631",
            )
        )
        await social_store.add_to_collection("dana", shelf.id, dune.id, format="Blu-ray")

        store = NewsStore(db)
        ids = {}
        for item in (
            news(title="Arrival", creators=["Denis Villeneuve"], genres=["sci-fi"]),
            news(title="Other"),
            news(category="books", title="Some Book"),
            news(title="Dune", external_id="tmdb:438631"),
            news(item_type="preorder_4k", title="Blade Runner 4K"),
            news(item_type="upcoming", title="Expired", expires_at=utc_now() - timedelta(days=1)),
            news(item_type="upcoming", title="Upcoming"),
        ):
            ids[item.title] = await store.add_news_item(item)
        return store, ids

    async def test_recommendations(self, setup):
        store, _ = setup

        groups = await NewsRecommendations(store).get_recommendations("dana")

        assert [g.key for g in groups] == ["movies:new_release", "movies:upcoming"]
        assert [s.item.title for s in groups[0].items] == ["Arrival", "Other"]
        assert groups[0].items[0].relevance_score == 6
        assert groups[0].max_score == 6
        assert [s.item.title for s in groups[1].items] == ["Upcoming"]

    async def test_seen_items_excluded(self, setup):
        store, ids = setup
        assert await store.mark_seen("dana", ids["Arrival"]) is True
        assert await store.mark_seen("dana", ids["Arrival"]) is False

        groups = await NewsRecommendations(store).get_recommendations("dana")

        titles = [s.item.title for g in groups for s in g.items]
        assert sorted(titles) == ["Other", "Upcoming"]

    async def test_group_limit(self, setup):
        store, _ = setup

        groups = await NewsRecommendations(store, group_limit=1, items_per_group=1).get_recommendations("dana")

        assert len(groups) == 1
        assert [s.item.title for s in groups[0].items] == ["Arrival"]

    async def test_no_viewer(self, setup):
        store, _ = setup
        assert await NewsRecommendations(store).get_recommendations(None) == []

    async def test_profile(self, setup):
        store, _ = setup

        profile = await store.load_user_profile("dana")

        assert profile.categories == {"movies"}
        assert profile.creators == {"Denis Villeneuve"}
        assert profile.genres == {"Sci-Fi"}
        assert profile.owned_external_ids == {"tmdb:438631"}
        assert profile.formats == {"blu-ray": 1}
        assert profile.movie_count == 1
