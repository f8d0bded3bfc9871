"""SearchResults — one page of projects plus totals, errors and metadata.

Transforms (filter_available, sort_by, slice) return new instances and never
mutate the original.
"""

import math
from typing import Any

from carbon_marketplace.schemas import SORT_FIELDS, Project


class SearchResults:
    def __init__(
        self,
        projects: list[Project] | None = None,
        total_count: int | None = None,
        errors: dict[str, str] | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        self._projects = list(projects or [])
        self.total_count = len(self._projects) if total_count is None else total_count
        self.errors = dict(errors or {})
        self.metadata = dict(metadata or {})

    @property
    def projects(self) -> list[Project]:
        return list(self._projects)

    def get_result_count(self) -> int:
        return len(self._projects)

    def has_errors(self) -> bool:
        return bool(self.errors)

    def is_empty(self) -> bool:
        return not self._projects

    def get_pagination_info(self, limit: int, offset: int) -> dict[str, Any]:
        limit = max(limit, 1)
        total_pages = math.ceil(self.total_count / limit) if self.total_count else 0
        current_page = offset // limit + 1
        return {
            "current_page": current_page,
            "total_pages": total_pages,
            "has_next": offset + limit < self.total_count,
            "has_previous": offset > 0,
            "limit": limit,
            "offset": offset,
            "total_items": self.total_count,
        }

    def get_project_summaries(self) -> list[dict[str, Any]]:
        return [p.get_summary() for p in self._projects]

    def to_dict(self) -> dict[str, Any]:
        return {
            "projects": [p.model_dump(mode="json") for p in self._projects],
            "total_count": self.total_count,
            "errors": dict(self.errors),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchResults":
        return cls(
            [Project(**p) for p in data.get("projects", [])],
            data.get("total_count"),
            data.get("errors"),
            data.get("metadata"),
        )

    # ═══════════════ TRANSFORMS ═══════════════

    def _derive(self, projects: list[Project], total_count: int | None = None) -> "SearchResults":
        return SearchResults(
            projects,
            self.total_count if total_count is None else total_count,
            self.errors,
            self.metadata,
        )

    def filter_available(self) -> "SearchResults":
        available = [p for p in self._projects if p.is_available()]
        removed = len(self._projects) - len(available)
        return self._derive(available, max(self.total_count - removed, 0))

    def sort_by(self, field: str, direction: str = "asc") -> "SearchResults":
        if field not in SORT_FIELDS:
            return self._derive(self._projects)
        reverse = direction.lower() == "desc"
        ordered = sorted(self._projects, key=lambda p: _sort_value(p, field), reverse=reverse)
        return self._derive(ordered)

    def slice(self, offset: int, limit: int) -> "SearchResults":
        offset = max(offset, 0)
        return self._derive(self._projects[offset:offset + max(limit, 0)])


def _sort_value(project: Project, field: str) -> Any:
    value = getattr(project, field, None)
    if value is None:
        return (1, "")
    if isinstance(value, str):
        return (0, value.lower())
    return (0, value)
