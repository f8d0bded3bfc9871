"""Vendor aggregation — fronts every registered vendor client.

Responsibilities:
  - Keep a registry of named clients (cnaught, toucan, ...)
  - Fan out catalogue reads to every client in parallel and merge the results
  - Report an aggregate failure only when every vendor failed
  - Pick the cheapest quote across vendors
  - Route checkout to the vendor encoded in a `{vendor}_{id}` identifier
"""

import asyncio
import logging
import time
from typing import Any

from carbon_marketplace.config import settings
from carbon_marketplace.errors import ApiError, MarketplaceError, ValidationError
from carbon_marketplace.integrations.base_client import BaseApiClient
from carbon_marketplace.schemas import (
    CheckoutRequest,
    CheckoutSession,
    Portfolio,
    Project,
    Quote,
    QuoteRequest,
)

logger = logging.getLogger(__name__)


class ApiManager:
    """Registry and fan-out coordinator for vendor clients."""

    def __init__(self, config: dict[str, Any] | None = None):
        self.config = {
            "timeout": settings.api_timeout_seconds,
            "max_retries": settings.api_max_retries,
            "normalize_data": True,
            **(config or {}),
        }
        self._clients: dict[str, BaseApiClient] = {}
        self.last_errors: dict[str, str] = {}

    # ═══════════════ REGISTRY ═══════════════

    def register_client(self, name: str, client: BaseApiClient):
        self._clients[name] = client
        logger.info("Vendor client registered | vendor=%s", name)

    def unregister_client(self, name: str) -> bool:
        return self._clients.pop(name, None) is not None

    def get_client(self, name: str) -> BaseApiClient | None:
        return self._clients.get(name)

    def get_all_clients(self) -> dict[str, BaseApiClient]:
        return dict(self._clients)

    def _require_clients(self):
        if not self._clients:
            raise MarketplaceError("no_clients", "No vendor clients are registered", status_code=503)

    # ═══════════════ CATALOGUE ═══════════════

    async def fetch_all_portfolios(self) -> list[Portfolio]:
        """Portfolios from every vendor that exposes them."""
        self._require_clients()
        names = [n for n, c in self._clients.items() if hasattr(c, "get_portfolios")]
        results = await asyncio.gather(
            *(self._clients[n].get_portfolios() for n in names),
            return_exceptions=True,
        )
        return self._merge(names, results, "portfolios")

    async def fetch_all_projects(self, filters: dict[str, Any] | None = None) -> list[Project]:
        """Projects from every vendor, filtered in memory."""
        self._require_clients()
        names = list(self._clients)
        results = await asyncio.gather(
            *(self._fetch_client_projects(self._clients[n]) for n in names),
            return_exceptions=True,
        )
        projects = self._merge(names, results, "projects")
        if filters:
            projects = self.apply_project_filters(projects, filters)
        return projects

    async def fetch_vendor_projects(self, vendor: str) -> list[Project]:
        client = self.get_client(vendor)
        if client is None:
            raise ValidationError(f"Unknown vendor: {vendor}", code="invalid_vendor")
        return await self._fetch_client_projects(client)

    async def _fetch_client_projects(self, client: BaseApiClient) -> list[Project]:
        if hasattr(client, "get_all_projects"):
            return await client.get_all_projects()
        if hasattr(client, "fetch_all_tco2_tokens"):
            return await client.fetch_all_tco2_tokens()
        portfolios = await client.get_portfolios()
        return [project for portfolio in portfolios for project in portfolio.projects]

    def _merge(self, names: list[str], results: list, label: str) -> list:
        merged: list = []
        self.last_errors = {}
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                self.last_errors[name] = str(result)[:200]
                logger.warning("Vendor %s failed | vendor=%s | %s", label, name, str(result)[:200])
                continue
            merged.extend(result)

        if not merged and self.last_errors and len(self.last_errors) == len(names):
            raise MarketplaceError(
                "all_clients_failed",
                f"All vendor clients failed to fetch {label}",
                details=dict(self.last_errors),
                status_code=502,
            )
        logger.info(
            "Vendor fan-out OK | %s=%d | vendors=%d | failed=%d",
            label, len(merged), len(names), len(self.last_errors),
        )
        return merged

    @staticmethod
    def apply_project_filters(projects: list[Project], filters: dict[str, Any]) -> list[Project]:
        location = str(filters.get("location") or "").lower()
        project_type = str(filters.get("project_type") or "").lower()
        min_price = filters.get("min_price")
        max_price = filters.get("max_price")
        available_only = bool(filters.get("available_only"))

        filtered = []
        for project in projects:
            if location and location not in project.location.lower():
                continue
            if project_type and project_type not in project.project_type.lower():
                continue
            if min_price is not None and project.price_per_kg < float(min_price):
                continue
            if max_price is not None and project.price_per_kg > float(max_price):
                continue
            if available_only and not project.is_available():
                continue
            filtered.append(project)
        return filtered

    async def get_project_details(self, project_id: str, vendor: str) -> Project:
        client = self.get_client(vendor)
        if client is None:
            raise ValidationError(f"Unknown vendor: {vendor}", code="invalid_vendor")
        return await client.get_project_details(project_id)

    # ═══════════════ QUOTES / CHECKOUT ═══════════════

    def infer_vendor(self, identifier: str | None) -> tuple[str | None, str | None]:
        """Split `{vendor}_{local_id}` when the prefix names a registered client."""
        if identifier and "_" in identifier:
            prefix, local_id = identifier.split("_", 1)
            if prefix in self._clients:
                return prefix, local_id
        return None, identifier

    async def get_quote(self, request: QuoteRequest) -> Quote:
        errors = request.get_validation_errors()
        if errors:
            raise ValidationError(", ".join(errors), details=errors)
        self._require_clients()

        vendor, portfolio_id = self.infer_vendor(request.portfolio_id)
        if vendor:
            local = request.model_copy(update={"portfolio_id": portfolio_id})
            return await self._clients[vendor].create_quote(local)

        names = [n for n, c in self._clients.items() if hasattr(c, "create_quote")]
        results = await asyncio.gather(
            *(self._clients[n].create_quote(request) for n in names),
            return_exceptions=True,
        )
        quotes = []
        self.last_errors = {}
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                self.last_errors[name] = str(result)[:200]
                logger.warning("Quote failed | vendor=%s | %s", name, str(result)[:200])
            else:
                quotes.append(result)

        best = self.select_best_quote(quotes)
        if best is None:
            raise MarketplaceError(
                "no_quotes", "No vendor returned a quote",
                details=dict(self.last_errors), status_code=502,
            )
        return best

    @staticmethod
    def select_best_quote(quotes: list[Quote]) -> Quote | None:
        if not quotes:
            return None
        return min(quotes, key=lambda q: q.total_price)

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        self._require_clients()
        vendor, portfolio_id = self.infer_vendor(request.portfolio_id)
        update: dict[str, Any] = {}
        if vendor:
            update["portfolio_id"] = portfolio_id
        else:
            vendor, project_id = self.infer_vendor(request.project_id)
            if vendor:
                update["project_id"] = project_id

        if vendor is None:
            vendor = next(
                (n for n, c in self._clients.items() if hasattr(c, "create_checkout_session")),
                None,
            )
        client = self._clients.get(vendor) if vendor else None
        if client is None or not hasattr(client, "create_checkout_session"):
            raise MarketplaceError("no_checkout_vendor", "No vendor supports checkout", status_code=400)

        local = request.model_copy(update=update) if update else request
        return await client.create_checkout_session(local)

    # ═══════════════ DIAGNOSTICS ═══════════════

    async def validate_all_clients(self) -> dict[str, dict[str, Any]]:
        names = list(self._clients)
        results = await asyncio.gather(
            *(self._clients[n].validate_credentials() for n in names),
            return_exceptions=True,
        )
        report = {}
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                code = result.code if isinstance(result, ApiError) else "error"
                report[name] = {"valid": False, "message": f"{code}: {str(result)[:200]}"}
            else:
                report[name] = {"valid": bool(result), "message": "Credentials valid"}
        return report

    def get_vendor_config(self, vendor: str) -> dict[str, Any]:
        client = self.get_client(vendor)
        if client is None:
            return {}
        return {
            "vendor": vendor,
            "base_url": client.base_url,
            "timeout": client.timeout,
            "max_retries": client.max_retries,
            "rate_limits": dict(client.rate_limits),
            "supports_portfolios": hasattr(client, "get_portfolios"),
            "supports_quotes": hasattr(client, "create_quote"),
            "supports_checkout": hasattr(client, "create_checkout_session"),
            "supports_project_details": hasattr(client, "get_project_details"),
        }

    @staticmethod
    def aggregate_project_data(projects: list[Project]) -> dict[str, Any]:
        vendor_counts: dict[str, int] = {}
        project_types: dict[str, int] = {}
        locations: dict[str, int] = {}
        prices = [p.price_per_kg for p in projects if p.price_per_kg > 0]
        for project in projects:
            vendor_counts[project.vendor] = vendor_counts.get(project.vendor, 0) + 1
            if project.project_type:
                project_types[project.project_type] = project_types.get(project.project_type, 0) + 1
            if project.location:
                locations[project.location] = locations.get(project.location, 0) + 1
        return {
            "total_projects": len(projects),
            "vendor_counts": vendor_counts,
            "price_range": {
                "min": min(prices) if prices else 0.0,
                "max": max(prices) if prices else 0.0,
            },
            "project_types": project_types,
            "locations": locations,
        }

    async def get_aggregated_stats(self) -> dict[str, Any]:
        start = time.monotonic()
        projects = await self.fetch_all_projects()
        stats = self.aggregate_project_data(projects)
        stats["vendors"] = list(self._clients)
        stats["errors"] = dict(self.last_errors)
        stats["ms"] = int((time.monotonic() - start) * 1000)
        return stats


def build_api_manager() -> ApiManager:
    """ApiManager wired with the vendor clients the settings enable."""
    from carbon_marketplace.integrations.cnaught import CNaughtClient
    from carbon_marketplace.integrations.toucan import ToucanClient

    manager = ApiManager()
    if settings.has_cnaught_credentials:
        manager.register_client("cnaught", CNaughtClient(
            api_key=settings.cnaught_api_key,
            client_id=settings.cnaught_client_id,
            base_url=settings.cnaught_base_url,
            timeout=settings.api_timeout_seconds,
            max_retries=settings.api_max_retries,
        ))
    manager.register_client("toucan", ToucanClient(
        api_key=settings.toucan_api_key,
        base_url=settings.toucan_base_url,
        timeout=settings.api_timeout_seconds,
        max_retries=settings.api_max_retries,
    ))
    return manager
