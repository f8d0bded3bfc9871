"""Scheduled vendor → database synchronization.

Jobs and default cadence:
  portfolios   every 30 min   upsert portfolios, refresh portfolio cache
  projects     hourly         upsert projects, re-index, drop cached searches
  pricing      every 15 min   refresh per-kg prices, drop cached quotes
  full_sync    daily          clear cache, run the three above, warm cache
  cleanup      weekly         retention deletes and expired cache entries

Every job records its status through JobStatusRecorder and never raises.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from carbon_marketplace.database import Database
from carbon_marketplace.errors import ValidationError
from carbon_marketplace.integrations.base_client import BaseApiClient
from carbon_marketplace.models import AnalyticsEvent, WebhookLog
from carbon_marketplace.schemas import Project, QuoteRequest
from carbon_marketplace.search.engine import SearchEngine
from carbon_marketplace.services.api_manager import ApiManager
from carbon_marketplace.services.cache import CacheManager
from carbon_marketplace.sync.scheduler import Scheduler
from carbon_marketplace.sync.status import JobStatusRecorder

logger = logging.getLogger(__name__)

SYNC_TYPES = ("portfolios", "projects", "pricing", "full_sync", "cleanup")

# Retention windows for cleanup_old_data
PROJECT_RETENTION = timedelta(days=30)
ORDER_RETENTION = timedelta(days=365)
WEBHOOK_LOG_RETENTION = timedelta(days=90)
ANALYTICS_RETENTION = timedelta(days=180)

KG_PER_TONNE = 1000


class DataSynchronizer:
    def __init__(
        self,
        api_manager: ApiManager,
        cache: CacheManager,
        database: Database,
        search_engine: SearchEngine,
    ):
        self.api_manager = api_manager
        self.cache = cache
        self.database = database
        self.search_engine = search_engine
        self.status = JobStatusRecorder(database, "sync", "synchronization")

    def schedule(self, scheduler: Scheduler):
        scheduler.add_job("sync_portfolios", "every_30min", self.sync_portfolios)
        scheduler.add_job("sync_projects", "hourly", self.sync_projects)
        scheduler.add_job("sync_pricing", "every_15min", self.sync_pricing)
        scheduler.add_job("full_sync", "daily", self.full_sync)
        scheduler.add_job("cleanup_old_data", "weekly", self.cleanup_old_data)

    # ═══════════════ JOBS ═══════════════

    async def sync_portfolios(self) -> dict[str, Any] | None:
        await self.status.start("portfolios")
        start = time.monotonic()
        try:
            portfolios = await self.api_manager.fetch_all_portfolios()
            stats = {"total": len(portfolios), "synced": 0, "errors": 0}
            for portfolio in portfolios:
                try:
                    await self.database.upsert_portfolio(portfolio)
                    stats["synced"] += 1
                except Exception as e:
                    stats["errors"] += 1
                    logger.warning("Portfolio sync error | id=%s | %s", portfolio.id, str(e)[:200])

            await self.cache.cache_portfolios(portfolios)
            stats["ms"] = int((time.monotonic() - start) * 1000)
            await self.status.complete("portfolios", stats)
            logger.info("Portfolio sync OK | total=%d | errors=%d | %dms", stats["total"], stats["errors"], stats["ms"])
            return stats
        except Exception as e:
            await self.status.error("portfolios", str(e)[:500])
            return None

    async def sync_projects(self) -> dict[str, Any] | None:
        await self.status.start("projects")
        start = time.monotonic()
        try:
            projects = await self.api_manager.fetch_all_projects()
            stats = {"total": len(projects), "new": 0, "updated": 0, "errors": 0}
            for project in projects:
                try:
                    existing = await self.database.get_project_by_vendor_id(project.vendor, project.id)
                    await self.database.upsert_project(project)
                    stats["updated" if existing else "new"] += 1
                except Exception as e:
                    stats["errors"] += 1
                    logger.warning("Project sync error | id=%s | %s", project.id, str(e)[:200])

            self.search_engine.index_projects(projects)
            await self.cache.invalidate_cache_by_type("search_results")
            stats["ms"] = int((time.monotonic() - start) * 1000)
            await self.status.complete("projects", stats)
            logger.info(
                "Project sync OK | total=%d | new=%d | updated=%d | %dms",
                stats["total"], stats["new"], stats["updated"], stats["ms"],
            )
            return stats
        except Exception as e:
            await self.status.error("projects", str(e)[:500])
            return None

    async def sync_pricing(self) -> dict[str, Any] | None:
        await self.status.start("pricing")
        try:
            projects = await self.database.search_projects(limit=0)
            stats = {"total": len(projects), "updated": 0, "skipped": 0, "errors": 0}
            for project in projects:
                client = self.api_manager.get_client(project.vendor)
                if client is None:
                    stats["skipped"] += 1
                    continue
                try:
                    price = await self._current_price(client, project)
                except Exception as e:
                    stats["errors"] += 1
                    logger.warning("Pricing sync error | id=%s | %s", project.id, str(e)[:200])
                    continue
                if price is None:
                    stats["skipped"] += 1
                    continue
                project.price_per_kg = price
                await self.database.upsert_project(project)
                stats["updated"] += 1

            await self.cache.invalidate_cache_by_type("quotes")
            await self.status.complete("pricing", stats)
            return stats
        except Exception as e:
            await self.status.error("pricing", str(e)[:500])
            return None

    @staticmethod
    async def _current_price(client: BaseApiClient, project: Project) -> float | None:
        """Per-kg price from a 1 kg quote, or from DEX swaps for tokenized credits."""
        if isinstance(client, BaseApiClient):
            await client.wait_for_rate_limit()
        if hasattr(client, "create_quote"):
            quote = await client.create_quote(QuoteRequest(amount_kg=1.0, project_id=project.id))
            return quote.price_per_kg or quote.total_price
        token_address = project.metadata.get("token_address")
        if token_address and hasattr(client, "fetch_token_price_on_dex"):
            price = await client.fetch_token_price_on_dex(token_address)
            return price.price_usd / KG_PER_TONNE
        return None

    async def full_sync(self) -> dict[str, Any] | None:
        await self.status.start("full_sync")
        try:
            cleared = await self.cache.invalidate_all_cache()
            results = {
                "portfolios": await self.sync_portfolios(),
                "projects": await self.sync_projects(),
                "pricing": await self.sync_pricing(),
            }
            clients = self.api_manager.get_all_clients()
            warmed = await self.cache.warm_cache({
                "portfolios": {
                    name: client.get_portfolios
                    for name, client in clients.items() if hasattr(client, "get_portfolios")
                },
                "projects": {
                    name: (lambda n=name: self.api_manager.fetch_vendor_projects(n))
                    for name in clients
                },
            })
            stats = {
                "cleared_cache_entries": cleared,
                "failed_steps": [step for step, result in results.items() if result is None],
                "warmed": warmed,
            }
            await self.status.complete("full_sync", stats)
            return stats
        except Exception as e:
            await self.status.error("full_sync", str(e)[:500])
            return None

    async def cleanup_old_data(self) -> dict[str, Any] | None:
        await self.status.start("cleanup")
        try:
            now = datetime.now(timezone.utc)
            stats = {
                "old_projects": await self.database.delete_projects_not_updated_since(now - PROJECT_RETENTION),
                "old_orders": await self.database.delete_completed_orders_before(now - ORDER_RETENTION),
                "old_logs": await self.database.delete_logs_before(WebhookLog, now - WEBHOOK_LOG_RETENTION),
                "old_analytics": await self.database.delete_logs_before(AnalyticsEvent, now - ANALYTICS_RETENTION),
                "expired_cache": await self.cache.cleanup_expired_cache(),
            }
            await self.status.complete("cleanup", stats)
            logger.info("Data cleanup OK | %s", stats)
            return stats
        except Exception as e:
            await self.status.error("cleanup", str(e)[:500])
            return None

    # ═══════════════ MANUAL / STATUS ═══════════════

    async def handle_manual_sync(self, sync_type: str) -> dict[str, Any]:
        jobs = {
            "portfolios": self.sync_portfolios,
            "projects": self.sync_projects,
            "pricing": self.sync_pricing,
            "full": self.full_sync,
            "full_sync": self.full_sync,
            "cleanup": self.cleanup_old_data,
        }
        job = jobs.get(sync_type)
        if job is None:
            raise ValidationError(f"Invalid sync type: {sync_type}", code="invalid_sync_type")
        logger.info("Manual sync requested | type=%s", sync_type)
        await job()
        key = "full_sync" if sync_type == "full" else sync_type
        return await self.status.get(key)

    async def get_sync_status(self) -> dict[str, dict[str, Any]]:
        return {sync_type: await self.status.get(sync_type) for sync_type in SYNC_TYPES}
