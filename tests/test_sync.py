"""Tests for the scheduler, vendor synchronization and maintenance jobs."""

from datetime import timedelta

import pytest

from carbon_marketplace.config import settings
from carbon_marketplace.errors import ValidationError
from carbon_marketplace.integrations.toucan import QUERY_SWAPS, ToucanClient
from carbon_marketplace.schemas import Portfolio
from carbon_marketplace.search.engine import SearchEngine
from carbon_marketplace.services.api_manager import ApiManager
from carbon_marketplace.services.cache import CacheManager
from carbon_marketplace.sync.maintenance import MaintenanceManager, calculate_overall_health, format_bytes
from carbon_marketplace.sync.scheduler import Scheduler, _now
from carbon_marketplace.sync.synchronizer import DataSynchronizer


@pytest.fixture
def api_manager(fake_client, make_project):
    manager = ApiManager()
    manager.register_client("cnaught", fake_client(
        "cnaught",
        projects=[make_project("p1"), make_project("p2", name="Kariba")],
        portfolios=[Portfolio(id="port_1", vendor="cnaught", name="Mix")],
        price_per_kg=0.05,
    ))
    return manager


@pytest.fixture
def stack(db, api_manager):
    cache = CacheManager()
    engine = SearchEngine(database=db, api_manager=api_manager, cache=cache)
    scheduler = Scheduler(poll_seconds=1)
    synchronizer = DataSynchronizer(api_manager, cache, db, engine)
    maintenance = MaintenanceManager(api_manager, cache, db, engine)
    synchronizer.schedule(scheduler)
    maintenance.schedule(scheduler)
    return {
        "cache": cache,
        "engine": engine,
        "scheduler": scheduler,
        "sync": synchronizer,
        "maintenance": maintenance,
    }


# ═══════════════ Scheduler ═══════════════


class TestScheduler:
    def test_unknown_cadence(self):
        with pytest.raises(ValueError):
            Scheduler().add_job("x", "fortnightly", lambda: None)

    @pytest.mark.asyncio
    async def test_run_pending(self):
        calls = []

        async def job():
            calls.append(1)

        scheduler = Scheduler(poll_seconds=1)
        scheduler.add_job("now", "hourly", job, run_immediately=True)
        scheduler.add_job("later", "daily", job)

        assert await scheduler.run_pending() == 1
        assert calls == [1]
        # Rescheduled one interval ahead
        assert await scheduler.run_pending() == 0
        assert await scheduler.run_pending(now=_now() + timedelta(hours=2)) == 1

        status = scheduler.get_status()
        assert status["now"]["last_status"] == "completed"
        assert status["later"]["last_status"] == "never_run"

    @pytest.mark.asyncio
    async def test_failing_job_does_not_stop_others(self):
        ran = []

        async def broken():
            raise RuntimeError("vendor down")

        async def fine():
            ran.append("fine")

        scheduler = Scheduler(poll_seconds=1)
        scheduler.add_job("broken", "hourly", broken, run_immediately=True)
        scheduler.add_job("fine", "hourly", fine, run_immediately=True)

        assert await scheduler.run_pending() == 2
        assert ran == ["fine"]
        status = scheduler.get_status()["broken"]
        assert status["last_status"] == "error"
        assert status["last_error"] == "vendor down"

    @pytest.mark.asyncio
    async def test_trigger(self):
        async def job():
            return None

        scheduler = Scheduler(poll_seconds=1)
        scheduler.add_job("job", "weekly", job)
        assert await scheduler.trigger("job") is True
        assert await scheduler.trigger("missing") is False
        assert scheduler.remove_job("job") is True
        assert scheduler.has_job("job") is False

    @pytest.mark.asyncio
    async def test_start_stop(self):
        scheduler = Scheduler(poll_seconds=60)
        scheduler.start()
        assert scheduler.is_running
        await scheduler.stop()
        assert not scheduler.is_running


# ═══════════════ Synchronization ═══════════════


class TestSynchronizer:
    def test_jobs_registered(self, stack):
        assert set(stack["scheduler"].get_next_run_times()) == {
            "sync_portfolios", "sync_projects", "sync_pricing", "full_sync", "cleanup_old_data",
            "cache_warming", "database_maintenance", "health_check",
        }

    @pytest.mark.asyncio
    async def test_sync_projects(self, stack, db):
        stats = await stack["sync"].sync_projects()
        assert stats["total"] == 2
        assert stats["new"] == 2
        assert await db.count_projects() == 2
        assert await stack["engine"].get_suggestions("kar") == ["Kariba"]

        stats = await stack["sync"].sync_projects()
        assert stats["updated"] == 2
        status = await stack["sync"].status.get("projects")
        assert status["status"] == "completed"

    @pytest.mark.asyncio
    async def test_sync_projects_drops_cached_searches(self, stack):
        cache = stack["cache"]
        await cache.cache_search_results({"keyword": "x"}, {"projects": [1]})
        await stack["sync"].sync_projects()
        assert await cache.get_search_results({"keyword": "x"}) is None

    @pytest.mark.asyncio
    async def test_sync_portfolios(self, stack, db):
        stats = await stack["sync"].sync_portfolios()
        assert stats["synced"] == 1
        assert [p.id for p in await db.get_portfolios()] == ["port_1"]
        assert await stack["cache"].get_portfolios() is not None

    @pytest.mark.asyncio
    async def test_sync_pricing(self, stack, db):
        await stack["sync"].sync_projects()
        stats = await stack["sync"].sync_pricing()
        assert stats["updated"] == 2
        project = await db.get_project_by_vendor_id("cnaught", "p1")
        assert project.price_per_kg == 0.05

    @pytest.mark.asyncio
    async def test_pricing_paces_rate_limited_vendor(self, db, httpx_mock, make_project):
        toucan = ToucanClient()
        manager = ApiManager()
        manager.register_client("toucan", toucan)
        addresses = [f"0xtoken{i}" for i in range(4)]
        for i, address in enumerate(addresses):
            await db.upsert_project(make_project(f"t{i}", vendor="toucan", metadata={"token_address": address}))
            httpx_mock.add_response(
                method="POST",
                url="https://api.thegraph.com/subgraphs/name/toucanprotocol/matic",
                match_json={"query": QUERY_SWAPS, "variables": {"token": address}},
                json={"data": {"swaps": [{
                    "id": f"s{i}", "timestamp": "0",
                    "token0": {"id": address}, "token1": {"id": "0xusdc"},
                    "amount0In": "10", "amount0Out": "0", "amount1In": "0", "amount1Out": "15",
                    "amountUSD": "15",
                }]}},
            )

        sync = DataSynchronizer(manager, CacheManager(), db, SearchEngine())
        stats = await sync.sync_pricing()
        assert stats["errors"] == 0
        assert stats["updated"] == 4
        project = await db.get_project_by_vendor_id("toucan", "t3")
        assert project.price_per_kg == pytest.approx(0.0015)

    @pytest.mark.asyncio
    async def test_pricing_skips_unknown_vendor(self, stack, db, make_project):
        await db.upsert_project(make_project("x1", vendor="retired_vendor"))
        stats = await stack["sync"].sync_pricing()
        assert stats["skipped"] == 1

    @pytest.mark.asyncio
    async def test_failure_recorded(self, db, fake_client):
        manager = ApiManager()
        manager.register_client("cnaught", fake_client("cnaught", fail=True))
        sync = DataSynchronizer(manager, CacheManager(), db, SearchEngine())
        assert await sync.sync_projects() is None
        status = await sync.status.get("projects")
        assert status["status"] == "error"
        assert status["error"] == "All vendor clients failed to fetch projects"

    @pytest.mark.asyncio
    async def test_full_sync(self, stack):
        stats = await stack["sync"].full_sync()
        assert stats["failed_steps"] == []
        assert stats["warmed"]["projects_cnaught"]["success"] is True

    @pytest.mark.asyncio
    async def test_cleanup(self, stack):
        stats = await stack["sync"].cleanup_old_data()
        assert set(stats) == {"old_projects", "old_orders", "old_logs", "old_analytics", "expired_cache"}

    @pytest.mark.asyncio
    async def test_manual_sync(self, stack):
        status = await stack["sync"].handle_manual_sync("full")
        assert status["status"] == "completed"
        with pytest.raises(ValidationError) as exc:
            await stack["sync"].handle_manual_sync("everything")
        assert exc.value.code == "invalid_sync_type"

    @pytest.mark.asyncio
    async def test_sync_status_defaults(self, stack):
        status = await stack["sync"].get_sync_status()
        assert status["pricing"] == {"status": "never_run", "message": "Never executed"}


# ═══════════════ Maintenance / health ═══════════════


class TestHealthScoring:
    def test_format_bytes(self):
        assert format_bytes(500) == "500 B"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(5 * 1024 ** 3) == "5.0 GB"

    def test_overall_health(self):
        assert calculate_overall_health({}) == 0
        assert calculate_overall_health({"a": {"status": "healthy"}, "b": {"status": "critical"}}) == 60
        assert calculate_overall_health({"a": {"status": "unknown"}}) == 50


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_api_connections_partial(self, db, fake_client):
        manager = ApiManager()
        manager.register_client("cnaught", fake_client("cnaught"))
        manager.register_client("toucan", fake_client("toucan", fail=True))
        maintenance = MaintenanceManager(manager, CacheManager(), db, SearchEngine())
        check = await maintenance.check_api_connections()
        assert check["status"] == "warning"
        assert check["health_percentage"] == 50.0

    @pytest.mark.asyncio
    async def test_no_clients_is_critical(self, db):
        maintenance = MaintenanceManager(ApiManager(), CacheManager(), db, SearchEngine())
        assert (await maintenance.check_api_connections())["status"] == "critical"

    @pytest.mark.asyncio
    async def test_cache_and_jobs(self, stack):
        maintenance = stack["maintenance"]
        assert (await maintenance.check_cache_system())["status"] == "healthy"
        assert maintenance.check_scheduled_jobs()["status"] == "healthy"

    def test_missing_jobs(self, db, api_manager):
        maintenance = MaintenanceManager(api_manager, CacheManager(), db, SearchEngine(), Scheduler())
        check = maintenance.check_scheduled_jobs()
        assert check["status"] == "warning"
        assert len(check["issues"]) == 3

    @pytest.mark.asyncio
    async def test_health_check_stored(self, stack):
        report = await stack["maintenance"].perform_health_check()
        assert set(report["details"]) == {
            "database", "api_connections", "cache_system", "scheduled_jobs", "disk_space", "memory_usage",
        }
        assert report["details"]["database"]["status"] == "healthy"
        assert await stack["maintenance"].get_health_status() == report

    @pytest.mark.asyncio
    async def test_alert_needs_critical_and_smtp(self, stack):
        maintenance = stack["maintenance"]
        assert await maintenance.send_health_alert({"disk_space": {"status": "warning"}}) is False
        assert await maintenance.send_health_alert({"database": {"status": "critical", "message": "down"}}) is False

    @pytest.mark.asyncio
    async def test_alert_sent(self, stack, monkeypatch):
        sent = []
        monkeypatch.setattr(settings, "alert_email", "ops@example.com")
        monkeypatch.setattr(settings, "smtp_host", "smtp.example.com")
        monkeypatch.setattr(MaintenanceManager, "_send_mail", staticmethod(sent.append))

        assert await stack["maintenance"].send_health_alert({"database": {"status": "critical", "message": "down"}})
        assert sent[0]["To"] == "ops@example.com"
        assert "- database: down" in sent[0].get_content()

    @pytest.mark.asyncio
    async def test_warm_all_caches(self, stack, db):
        await db.track_event("search", {"keyword": "kariba"})
        stats = await stack["maintenance"].warm_all_caches()
        assert stats["portfolios"] == 1
        assert stats["projects"] == 2
        assert stats["popular_searches"] == 1
        assert stats["search_results"] == 1
        assert stats["errors"] == 0

    @pytest.mark.asyncio
    async def test_database_maintenance(self, stack):
        stats = await stack["maintenance"].perform_database_maintenance()
        assert stats["analyzed"] == 1
        assert stats["errors"] == 0
        status = await stack["maintenance"].get_maintenance_status()
        assert status["database_maintenance"]["status"] == "completed"
