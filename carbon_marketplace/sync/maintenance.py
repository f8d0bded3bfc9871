"""Cache warming, database upkeep and system health checks.

Health scoring: healthy=100, warning=60, critical=20, anything else=50;
the overall score is the integer mean. Below the alert threshold an email
listing the critical components goes to ALERT_EMAIL.
"""

import asyncio
import logging
import resource
import shutil
import smtplib
import sys
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any

from carbon_marketplace.config import settings
from carbon_marketplace.database import Database
from carbon_marketplace.models import AnalyticsEvent, SecurityLog, WebhookLog
from carbon_marketplace.schemas import SearchQuery
from carbon_marketplace.search.engine import SearchEngine
from carbon_marketplace.services.api_manager import ApiManager
from carbon_marketplace.services.cache import CacheManager
from carbon_marketplace.sync.scheduler import Scheduler
from carbon_marketplace.sync.status import JobStatusRecorder

logger = logging.getLogger(__name__)

MAINTENANCE_TASKS = ("cache_warming", "database_maintenance", "health_check")
REQUIRED_JOBS = ("sync_portfolios", "sync_projects", "cache_warming")
STATUS_SCORES = {"healthy": 100, "warning": 60, "critical": 20}

LOG_RETENTION = timedelta(days=90)
ANALYTICS_RETENTION = timedelta(days=365)


def format_bytes(size: float) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while size > 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    return f"{round(size, 2)} {units[i]}"


def calculate_overall_health(checks: dict[str, dict[str, Any]]) -> int:
    if not checks:
        return 0
    scores = [STATUS_SCORES.get(check.get("status"), 50) for check in checks.values()]
    return int(sum(scores) / len(scores))


class MaintenanceManager:
    def __init__(
        self,
        api_manager: ApiManager,
        cache: CacheManager,
        database: Database,
        search_engine: SearchEngine,
        scheduler: Scheduler | None = None,
    ):
        self.api_manager = api_manager
        self.cache = cache
        self.database = database
        self.search_engine = search_engine
        self.scheduler = scheduler
        self.status = JobStatusRecorder(database, "maintenance", "maintenance")

    def schedule(self, scheduler: Scheduler):
        self.scheduler = scheduler
        scheduler.add_job("cache_warming", "every_2h", self.warm_all_caches)
        scheduler.add_job("database_maintenance", "daily", self.perform_database_maintenance)
        scheduler.add_job("health_check", "every_6h", self.perform_health_check)

    # ═══════════════ CACHE WARMING ═══════════════

    async def warm_all_caches(self) -> dict[str, int]:
        await self.status.start("cache_warming")
        stats = {"portfolios": 0, "projects": 0, "search_results": 0, "popular_searches": 0, "errors": 0}

        try:
            portfolios = await self.api_manager.fetch_all_portfolios()
            await self.cache.cache_portfolios(portfolios)
            stats["portfolios"] = len(portfolios)
        except Exception as e:
            stats["errors"] += 1
            logger.warning("Portfolio cache warming error | %s", str(e)[:200])

        try:
            projects = await self.api_manager.fetch_all_projects()
            for project in projects:
                await self.cache.cache_project(project)
            stats["projects"] = len(projects)
        except Exception as e:
            stats["errors"] += 1
            logger.warning("Project cache warming error | %s", str(e)[:200])

        try:
            since = datetime.now(timezone.utc) - timedelta(days=7)
            terms = await self.database.popular_search_terms(since, 10)
            for term, _count in terms:
                query = SearchQuery(keyword=term)
                if await self.cache.get_search_results(query.cache_params()):
                    continue
                results = await self.search_engine.search(query)
                if not results.has_errors():
                    stats["search_results"] += 1
            stats["popular_searches"] = len(terms)
        except Exception as e:
            stats["errors"] += 1
            logger.warning("Search cache warming error | %s", str(e)[:200])

        await self.status.complete("cache_warming", stats)
        logger.info("Cache warming OK | %s", stats)
        return stats

    # ═══════════════ DATABASE ═══════════════

    async def perform_database_maintenance(self) -> dict[str, int]:
        await self.status.start("database_maintenance")
        stats = {"analyzed": 0, "expired_cache": 0, "old_logs": 0, "errors": 0}

        try:
            await self.database.analyze()
            stats["analyzed"] = 1
        except Exception as e:
            stats["errors"] += 1
            logger.warning("Database analyze error | %s", str(e)[:200])

        try:
            stats["expired_cache"] = await self.cache.cleanup_expired_cache()
        except Exception as e:
            stats["errors"] += 1
            logger.warning("Cache cleanup error | %s", str(e)[:200])

        try:
            now = datetime.now(timezone.utc)
            stats["old_logs"] = (
                await self.database.delete_logs_before(WebhookLog, now - LOG_RETENTION)
                + await self.database.delete_logs_before(SecurityLog, now - LOG_RETENTION)
                + await self.database.delete_logs_before(AnalyticsEvent, now - ANALYTICS_RETENTION)
            )
        except Exception as e:
            stats["errors"] += 1
            logger.warning("Log cleanup error | %s", str(e)[:200])

        await self.status.complete("database_maintenance", stats)
        return stats

    # ═══════════════ HEALTH ═══════════════

    async def perform_health_check(self) -> dict[str, Any]:
        await self.status.start("health_check")
        checks = {
            "database": await self.check_database_health(),
            "api_connections": await self.check_api_connections(),
            "cache_system": await self.check_cache_system(),
            "scheduled_jobs": self.check_scheduled_jobs(),
            "disk_space": self.check_disk_space(),
            "memory_usage": self.check_memory_usage(),
        }
        overall = calculate_overall_health(checks)
        report = {
            "overall": overall,
            "details": checks,
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            await self.database.set_option("health_status", report)
        except Exception as e:
            logger.warning("Health status not stored | %s", str(e)[:200])

        if overall < settings.health_alert_threshold:
            await self.send_health_alert(checks)

        await self.status.complete("health_check", {
            "overall_health": overall,
            "issues_found": [name for name, check in checks.items() if check["status"] != "healthy"],
        })
        logger.info("Health check | overall=%d", overall)
        return report

    async def check_database_health(self) -> dict[str, Any]:
        try:
            await self.database.ping()
            return {"status": "healthy", "message": "Database is healthy"}
        except Exception as e:
            return {"status": "critical", "message": "Database connection failed", "error": str(e)[:200]}

    async def check_api_connections(self) -> dict[str, Any]:
        try:
            report = await self.api_manager.validate_all_clients()
        except Exception as e:
            return {"status": "critical", "message": "API connection check failed", "error": str(e)[:200]}
        if not report:
            return {"status": "critical", "message": "No vendor clients registered", "api_status": {}}

        healthy = sum(1 for r in report.values() if r["valid"])
        percentage = healthy / len(report) * 100
        if percentage >= 100:
            status, message = "healthy", "All API connections are working"
        elif percentage >= 50:
            status, message = "warning", "Some API connections have issues"
        else:
            status, message = "critical", "Most API connections are failing"
        return {"status": status, "message": message, "api_status": report, "health_percentage": percentage}

    async def check_cache_system(self) -> dict[str, Any]:
        key = self.cache.make_key("health_check", None, str(datetime.now(timezone.utc).timestamp()))
        try:
            await self.cache.set(key, {"test": True}, 60, cache_type="health_check")
            retrieved = await self.cache.get(key)
            await self.cache.delete(key)
        except Exception as e:
            return {"status": "critical", "message": "Cache system is not working", "error": str(e)[:200]}
        if isinstance(retrieved, dict) and retrieved.get("test") is True:
            return {"status": "healthy", "message": "Cache system is working properly", "backend": self.cache.backend}
        return {"status": "warning", "message": "Cache system may have issues", "backend": self.cache.backend}

    def check_scheduled_jobs(self) -> dict[str, Any]:
        if self.scheduler is None:
            return {"status": "warning", "message": "Scheduler is not configured", "issues": list(REQUIRED_JOBS)}
        issues = [f"Job '{job}' is not scheduled" for job in REQUIRED_JOBS if not self.scheduler.has_job(job)]
        return {
            "status": "warning" if issues else "healthy",
            "message": "Some scheduled jobs are missing" if issues else "All scheduled jobs are registered",
            "issues": issues,
        }

    def check_disk_space(self, path: str = ".") -> dict[str, Any]:
        try:
            usage = shutil.disk_usage(path)
        except OSError:
            return {"status": "unknown", "message": "Unable to check disk space"}
        free_percentage = usage.free / usage.total * 100 if usage.total else 0.0
        if free_percentage >= 20:
            status, message = "healthy", "Sufficient disk space available"
        elif free_percentage >= 10:
            status, message = "warning", "Disk space is getting low"
        else:
            status, message = "critical", "Critically low disk space"
        return {
            "status": status,
            "message": message,
            "free_space": format_bytes(usage.free),
            "total_space": format_bytes(usage.total),
            "free_percentage": round(free_percentage, 2),
        }

    def check_memory_usage(self) -> dict[str, Any]:
        # ru_maxrss is kilobytes on Linux, bytes on macOS
        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        peak_bytes = peak if sys.platform == "darwin" else peak * 1024
        limit_bytes = settings.memory_limit_mb * 1024 * 1024
        percentage = peak_bytes / limit_bytes * 100 if limit_bytes else 0.0
        if percentage < 70:
            status, message = "healthy", "Memory usage is normal"
        elif percentage < 85:
            status, message = "warning", "Memory usage is elevated"
        else:
            status, message = "critical", "Memory usage is critically high"
        return {
            "status": status,
            "message": message,
            "memory_limit": f"{settings.memory_limit_mb}M",
            "peak_usage": format_bytes(peak_bytes),
            "usage_percentage": round(percentage, 2),
        }

    # ═══════════════ ALERTS ═══════════════

    async def send_health_alert(self, checks: dict[str, dict[str, Any]]) -> bool:
        critical = {name: c for name, c in checks.items() if c.get("status") == "critical"}
        if not critical:
            return False
        if not settings.alert_email or not settings.smtp_host:
            logger.warning("Health alert not sent (SMTP not configured) | critical=%s", ",".join(critical))
            return False

        message = EmailMessage()
        message["Subject"] = "[Carbon Marketplace] Health Alert"
        message["From"] = settings.smtp_sender
        message["To"] = settings.alert_email
        lines = ["Critical issues detected in Carbon Marketplace:", ""]
        lines += [f"- {name}: {check.get('message', '')}" for name, check in critical.items()]
        lines += ["", "Please check the admin health endpoint for more details."]
        message.set_content("\n".join(lines))

        try:
            await asyncio.to_thread(self._send_mail, message)
        except (OSError, smtplib.SMTPException) as e:
            logger.error("Health alert failed | %s", str(e)[:200])
            return False
        logger.info("Health alert sent | to=%s | critical=%d", settings.alert_email, len(critical))
        return True

    @staticmethod
    def _send_mail(message: EmailMessage):
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as smtp:
            smtp.send_message(message)

    async def get_maintenance_status(self) -> dict[str, dict[str, Any]]:
        return {task: await self.status.get(task) for task in MAINTENANCE_TASKS}

    async def get_health_status(self) -> dict[str, Any] | None:
        return await self.database.get_option("health_status")
