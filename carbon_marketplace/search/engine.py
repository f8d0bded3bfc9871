"""Project search — SQL candidates, in-memory filtering, relevance ranking.

Flow:
  1. Validate the query (invalid → SearchResults carrying the errors)
  2. Serve from cache when the same query ran recently
  3. Candidates from the database (SQL-level filters); vendor APIs when empty
  4. Second in-memory filter pass, availability always enforced
  5. Rank by relevance when a keyword is present, else sort
  6. Paginate after ranking and cache the page
"""

import logging
import time
from typing import Any

from carbon_marketplace.database import Database
from carbon_marketplace.schemas import Project, SearchQuery
from carbon_marketplace.search.results import SearchResults
from carbon_marketplace.services.api_manager import ApiManager
from carbon_marketplace.services.cache import CacheManager

logger = logging.getLogger(__name__)

MIN_SUGGESTION_LENGTH = 2


class SearchEngine:
    def __init__(
        self,
        database: Database | None = None,
        api_manager: ApiManager | None = None,
        cache: CacheManager | None = None,
        candidate_limit: int = 1000,
    ):
        self.database = database
        self.api_manager = api_manager
        self.cache = cache
        self.candidate_limit = candidate_limit
        self._index: dict[str, Project] = {}

    async def search(self, query: SearchQuery) -> SearchResults:
        errors = query.get_validation_errors()
        if errors:
            return SearchResults(errors={"validation": "; ".join(errors)})

        start = time.monotonic()
        params = query.cache_params()
        try:
            if self.cache:
                cached = await self.cache.get_search_results(params)
                if cached:
                    results = SearchResults.from_dict(cached)
                    results.metadata["from_cache"] = True
                    return results

            candidates = await self._load_candidates(query)
            filtered = self.apply_filters(candidates, query.get_active_filters())

            if query.keyword:
                ordered = self.rank_results(filtered, query)
            else:
                ordered = SearchResults(filtered).sort_by(query.sort_by, query.sort_order).projects

            page = ordered[query.offset:query.offset + query.limit]
            elapsed_ms = int((time.monotonic() - start) * 1000)
            results = SearchResults(
                page,
                total_count=len(ordered),
                metadata={
                    "filters_applied": query.get_active_filters(),
                    "search_time_ms": elapsed_ms,
                    "from_cache": False,
                },
            )

            if self.cache:
                await self.cache.cache_search_results(params, results.to_dict())

            logger.info(
                "Search OK | keyword=%s | results=%d/%d | %dms",
                query.keyword[:50], len(page), len(ordered), elapsed_ms,
            )
            return results

        except Exception as e:
            logger.error("Search failed | keyword=%s | %s", query.keyword[:50], str(e)[:200])
            return SearchResults(errors={"search_error": "An error occurred during search"})

    async def _load_candidates(self, query: SearchQuery) -> list[Project]:
        projects: list[Project] = []
        if self.database is not None:
            projects = await self.database.search_projects(
                query.get_active_filters(),
                limit=self.candidate_limit,
                offset=0,
                order_by=query.sort_by,
                order=query.sort_order,
            )

        if not projects and self.api_manager is not None:
            projects = await self.api_manager.fetch_all_projects()
            self.index_projects(projects)
        elif not projects:
            projects = list(self._index.values())
        return projects

    # ═══════════════ FILTERING ═══════════════

    def apply_filters(self, projects: list[Project], filters: dict[str, Any]) -> list[Project]:
        keyword = str(filters.get("keyword") or "").lower()
        location = str(filters.get("location") or "").lower()
        project_type = str(filters.get("project_type") or "").lower()
        vendor = filters.get("vendor") or ""
        min_price = filters.get("min_price")
        max_price = filters.get("max_price")
        sdgs = {str(s) for s in filters.get("sdgs") or []}

        filtered = []
        for project in projects:
            if not project.is_available():
                continue
            if keyword and keyword not in self.create_searchable_text(project):
                continue
            if location and location not in project.location.lower():
                continue
            if project_type and project.project_type.lower() != project_type:
                continue
            if vendor and project.vendor != vendor:
                continue
            if min_price is not None and project.price_per_kg < float(min_price):
                continue
            if max_price is not None and project.price_per_kg > float(max_price):
                continue
            if sdgs and not sdgs & {str(s) for s in project.sdgs}:
                continue
            filtered.append(project)
        return filtered

    @staticmethod
    def create_searchable_text(project: Project) -> str:
        parts = (project.name, project.description, project.location, project.project_type)
        return " ".join(p for p in parts if p).lower()

    # ═══════════════ RANKING ═══════════════

    def rank_results(self, projects: list[Project], query: SearchQuery) -> list[Project]:
        """Order by relevance to the keyword; ties keep their input order."""
        keyword = query.keyword.strip().lower()
        if not keyword:
            return list(projects)
        return sorted(projects, key=lambda p: -self.calculate_relevance_score(p, keyword))

    @staticmethod
    def calculate_relevance_score(project: Project, keyword: str) -> int:
        keyword = keyword.lower()
        name = project.name.lower()
        score = 0
        if keyword in name:
            score += 10
            if name == keyword:
                score += 5
        if keyword in project.location.lower():
            score += 5
        if keyword in project.project_type.lower():
            score += 3
        if keyword in project.description.lower():
            score += 2
        if keyword in project.methodology.lower():
            score += 1
        if project.is_available():
            score += 1
        return score

    # ═══════════════ INDEX / SUGGESTIONS ═══════════════

    def index_projects(self, projects: list[Project]) -> int:
        for project in projects:
            self._index[f"{project.vendor}_{project.id}"] = project
        return len(self._index)

    def clear_index(self) -> bool:
        had_entries = bool(self._index)
        self._index.clear()
        return had_entries

    async def get_suggestions(self, partial: str, limit: int = 10) -> list[str]:
        partial = (partial or "").strip().lower()
        if len(partial) < MIN_SUGGESTION_LENGTH:
            return []

        projects: list[Project] = []
        if self.database is not None:
            try:
                projects = await self.database.search_projects(
                    {"keyword": partial}, limit=limit * 5,
                )
            except Exception as e:
                logger.warning("Suggestion lookup failed | %s", str(e)[:200])
        if not projects:
            projects = list(self._index.values())

        suggestions: list[str] = []
        seen: set[str] = set()
        for field in ("name", "location", "project_type"):
            for project in projects:
                value = getattr(project, field)
                if not value or partial not in value.lower() or value.lower() in seen:
                    continue
                seen.add(value.lower())
                suggestions.append(value)
                if len(suggestions) >= limit:
                    return suggestions
        return suggestions
