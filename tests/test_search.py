"""Tests for project search — filtering, ranking, pagination, caching, suggestions."""

import pytest

from carbon_marketplace.schemas import SearchQuery
from carbon_marketplace.search.engine import SearchEngine
from carbon_marketplace.search.results import SearchResults
from carbon_marketplace.services.api_manager import ApiManager
from carbon_marketplace.services.cache import CacheManager


@pytest.fixture
def catalogue(make_project):
    return [
        make_project(
            "a", name="Forest Guardians", description="Protecting forest",
            project_type="Forestry", price_per_kg=0.03,
        ),
        make_project(
            "b", name="Wind Farm", description="Turbines next to a forest",
            location="Kenya", project_type="Renewable", price_per_kg=0.01,
        ),
        make_project(
            "c", name="Solar Village", description="Rooftop panels",
            location="India", project_type="Renewable", price_per_kg=0.02,
        ),
        make_project(
            "d", name="Sold Out Forest", description="Nothing left",
            project_type="Forestry", available_quantity=0,
        ),
    ]


@pytest.fixture
async def engine(db, catalogue):
    for project in catalogue:
        await db.upsert_project(project)
    return SearchEngine(database=db, cache=CacheManager())


class TestSearch:
    @pytest.mark.asyncio
    async def test_invalid_query(self, engine):
        results = await engine.search(SearchQuery(min_price=5, max_price=1))
        assert results.has_errors()
        assert "Minimum price cannot be greater" in results.errors["validation"]

    @pytest.mark.asyncio
    async def test_keyword_ranking(self, engine):
        results = await engine.search(SearchQuery(keyword="forest"))
        assert [p.id for p in results.projects] == ["a", "b"]
        assert results.total_count == 2
        assert results.metadata["filters_applied"] == {"keyword": "forest"}
        assert results.metadata["from_cache"] is False

    @pytest.mark.asyncio
    async def test_unavailable_projects_excluded(self, engine):
        results = await engine.search(SearchQuery(project_type="forestry"))
        assert [p.id for p in results.projects] == ["a"]

    @pytest.mark.asyncio
    async def test_sort_without_keyword(self, engine):
        results = await engine.search(SearchQuery(sort_by="price_per_kg", sort_order="desc"))
        assert [p.id for p in results.projects] == ["a", "c", "b"]

    @pytest.mark.asyncio
    async def test_pagination_after_filtering(self, engine):
        results = await engine.search(SearchQuery(sort_by="price_per_kg", limit=2, offset=2))
        assert [p.id for p in results.projects] == ["a"]
        assert results.total_count == 3

    @pytest.mark.asyncio
    async def test_price_and_location_filters(self, engine):
        results = await engine.search(SearchQuery(location="ken", max_price=0.015))
        assert [p.id for p in results.projects] == ["b"]

    @pytest.mark.asyncio
    async def test_second_search_served_from_cache(self, engine):
        query = SearchQuery(keyword="solar")
        first = await engine.search(query)
        second = await engine.search(query)
        assert first.metadata["from_cache"] is False
        assert second.metadata["from_cache"] is True
        assert [p.id for p in second.projects] == ["c"]

    @pytest.mark.asyncio
    async def test_falls_back_to_vendors_when_database_empty(self, db, fake_client, make_project):
        manager = ApiManager()
        manager.register_client("toucan", fake_client("toucan", projects=[
            make_project("t1", vendor="toucan", name="Kariba"),
        ]))
        engine = SearchEngine(database=db, api_manager=manager)

        results = await engine.search(SearchQuery(keyword="kariba"))
        assert [p.id for p in results.projects] == ["t1"]
        assert await engine.get_suggestions("kar") == ["Kariba"]

    @pytest.mark.asyncio
    async def test_database_failure_reported(self):
        class BrokenDatabase:
            async def search_projects(self, *args, **kwargs):
                raise RuntimeError("connection refused")

        engine = SearchEngine(database=BrokenDatabase())
        results = await engine.search(SearchQuery(keyword="forest"))
        assert results.errors == {"search_error": "An error occurred during search"}


class TestRanking:
    def test_relevance_score(self, make_project):
        project = make_project(
            name="Forest", location="Black Forest", project_type="Forestry",
            description="forest", methodology="forest carbon",
        )
        # name 10 + exact 5 + location 5 + type 3 + description 2 + methodology 1 + available 1
        assert SearchEngine.calculate_relevance_score(project, "forest") == 27

    def test_ties_keep_input_order(self, make_project):
        engine = SearchEngine()
        projects = [make_project("x", name="Alpha"), make_project("y", name="Beta")]
        ranked = engine.rank_results(projects, SearchQuery(keyword="zzz"))
        assert [p.id for p in ranked] == ["x", "y"]

    def test_searchable_text(self, make_project):
        text = SearchEngine.create_searchable_text(make_project(name="Kariba", location="Zimbabwe"))
        assert "kariba" in text
        assert "zimbabwe" in text


class TestIndexAndSuggestions:
    @pytest.mark.asyncio
    async def test_suggestions_from_index(self, make_project):
        engine = SearchEngine()
        engine.index_projects([
            make_project("a", name="Brazil Nut Forest", location="Brazil"),
            make_project("b", name="Cerrado", location="Brazil"),
        ])
        suggestions = await engine.get_suggestions("bra")
        assert suggestions == ["Brazil Nut Forest", "Brazil"]

    @pytest.mark.asyncio
    async def test_short_partial(self):
        assert await SearchEngine().get_suggestions("b") == []

    @pytest.mark.asyncio
    async def test_suggestion_limit(self, make_project):
        engine = SearchEngine()
        engine.index_projects([make_project(str(i), name=f"Forest {i}") for i in range(5)])
        assert len(await engine.get_suggestions("forest", limit=3)) == 3

    def test_clear_index(self, make_project):
        engine = SearchEngine()
        assert engine.clear_index() is False
        engine.index_projects([make_project("a")])
        assert engine.clear_index() is True


class TestSearchResults:
    def test_filter_available_adjusts_total(self, make_project):
        results = SearchResults([make_project("a"), make_project("b", available_quantity=0)], total_count=10)
        filtered = results.filter_available()
        assert [p.id for p in filtered.projects] == ["a"]
        assert filtered.total_count == 9
        assert results.get_result_count() == 2  # original untouched

    def test_sort_by_unknown_field_keeps_order(self, make_project):
        results = SearchResults([make_project("b"), make_project("a")])
        assert [p.id for p in results.sort_by("popularity").projects] == ["b", "a"]

    def test_sort_by_name_case_insensitive(self, make_project):
        results = SearchResults([make_project("1", name="beta"), make_project("2", name="Alpha")])
        assert [p.name for p in results.sort_by("name").projects] == ["Alpha", "beta"]

    def test_slice(self, make_project):
        results = SearchResults([make_project(str(i)) for i in range(5)])
        assert [p.id for p in results.slice(3, 10).projects] == ["3", "4"]

    def test_pagination_info(self):
        info = SearchResults(total_count=45).get_pagination_info(limit=20, offset=20)
        assert info["current_page"] == 2
        assert info["total_pages"] == 3
        assert info["has_next"] is True
        assert info["has_previous"] is True

    def test_dict_round_trip(self, make_project):
        results = SearchResults([make_project("a")], metadata={"search_time_ms": 3})
        restored = SearchResults.from_dict(results.to_dict())
        assert restored.projects[0].id == "a"
        assert restored.metadata == {"search_time_ms": 3}
