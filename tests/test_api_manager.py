"""Tests for vendor aggregation — fan-out, partial failure, quote selection, routing."""

import pytest

from carbon_marketplace.errors import MarketplaceError, ValidationError
from carbon_marketplace.schemas import CheckoutRequest, Portfolio, QuoteRequest
from carbon_marketplace.services.api_manager import ApiManager


@pytest.fixture
def manager():
    return ApiManager()


def _checkout(**overrides):
    data = {
        "amount_kg": 25,
        "success_url": "https://shop.example/ok",
        "cancel_url": "https://shop.example/cancel",
    }
    data.update(overrides)
    return CheckoutRequest(**data)


class TestRegistry:
    def test_register_and_lookup(self, manager, fake_client):
        client = fake_client("cnaught")
        manager.register_client("cnaught", client)
        assert manager.get_client("cnaught") is client
        assert manager.get_client("toucan") is None
        assert list(manager.get_all_clients()) == ["cnaught"]

    def test_unregister(self, manager, fake_client):
        manager.register_client("cnaught", fake_client("cnaught"))
        assert manager.unregister_client("cnaught") is True
        assert manager.unregister_client("cnaught") is False

    @pytest.mark.asyncio
    async def test_no_clients(self, manager):
        with pytest.raises(MarketplaceError) as exc:
            await manager.fetch_all_projects()
        assert exc.value.code == "no_clients"

    def test_vendor_config(self, manager, fake_client):
        manager.register_client("cnaught", fake_client("cnaught"))
        config = manager.get_vendor_config("cnaught")
        assert config["supports_quotes"] is True
        assert config["supports_checkout"] is True
        assert manager.get_vendor_config("missing") == {}


class TestFanOut:
    @pytest.mark.asyncio
    async def test_merges_projects(self, manager, fake_client, make_project):
        manager.register_client("cnaught", fake_client("cnaught", projects=[make_project("a")]))
        manager.register_client("toucan", fake_client("toucan", projects=[make_project("b", vendor="toucan")]))
        projects = await manager.fetch_all_projects()
        assert {p.id for p in projects} == {"a", "b"}
        assert manager.last_errors == {}

    @pytest.mark.asyncio
    async def test_partial_failure_is_tolerated(self, manager, fake_client, make_project):
        manager.register_client("cnaught", fake_client("cnaught", projects=[make_project("a")]))
        manager.register_client("toucan", fake_client("toucan", fail=True))
        projects = await manager.fetch_all_projects()
        assert [p.id for p in projects] == ["a"]
        assert "toucan" in manager.last_errors

    @pytest.mark.asyncio
    async def test_all_failed(self, manager, fake_client):
        manager.register_client("cnaught", fake_client("cnaught", fail=True))
        manager.register_client("toucan", fake_client("toucan", fail=True))
        with pytest.raises(MarketplaceError) as exc:
            await manager.fetch_all_portfolios()
        assert exc.value.code == "all_clients_failed"
        assert set(exc.value.details) == {"cnaught", "toucan"}

    @pytest.mark.asyncio
    async def test_empty_success_is_not_failure(self, manager, fake_client):
        manager.register_client("cnaught", fake_client("cnaught"))
        assert await manager.fetch_all_projects() == []

    @pytest.mark.asyncio
    async def test_portfolio_projects_used_without_project_listing(self, manager, make_project):
        class PortfolioOnly:
            async def get_portfolios(self):
                return [Portfolio(id="p", vendor="x", name="P", projects=[make_project("inner", vendor="x")])]

        manager.register_client("x", PortfolioOnly())
        projects = await manager.fetch_vendor_projects("x")
        assert [p.id for p in projects] == ["inner"]

    @pytest.mark.asyncio
    async def test_fetch_vendor_projects_unknown(self, manager):
        with pytest.raises(ValidationError) as exc:
            await manager.fetch_vendor_projects("nobody")
        assert exc.value.code == "invalid_vendor"

    @pytest.mark.asyncio
    async def test_filters_applied(self, manager, fake_client, make_project):
        manager.register_client("cnaught", fake_client("cnaught", projects=[
            make_project("a", location="Brazil", price_per_kg=0.01),
            make_project("b", location="Kenya", price_per_kg=0.05),
            make_project("c", location="Brazil", price_per_kg=0.09, available_quantity=0),
        ]))
        projects = await manager.fetch_all_projects({"location": "bra", "available_only": True})
        assert [p.id for p in projects] == ["a"]
        projects = await manager.fetch_all_projects({"min_price": 0.02, "max_price": 0.06})
        assert [p.id for p in projects] == ["b"]


class TestQuotes:
    @pytest.mark.asyncio
    async def test_cheapest_quote_wins(self, manager, fake_client):
        manager.register_client("cnaught", fake_client("cnaught", price_per_kg=0.03))
        manager.register_client("toucan", fake_client("toucan", price_per_kg=0.01))
        quote = await manager.get_quote(QuoteRequest(amount_kg=100))
        assert quote.vendor == "toucan"
        assert quote.total_price == 1.0

    @pytest.mark.asyncio
    async def test_prefixed_portfolio_routes_to_vendor(self, manager, fake_client):
        manager.register_client("cnaught", fake_client("cnaught", price_per_kg=0.03))
        manager.register_client("toucan", fake_client("toucan", price_per_kg=0.01))
        quote = await manager.get_quote(QuoteRequest(amount_kg=10, portfolio_id="cnaught_port_1"))
        assert quote.vendor == "cnaught"
        assert quote.portfolio_id == "port_1"

    @pytest.mark.asyncio
    async def test_invalid_amount(self, manager, fake_client):
        manager.register_client("cnaught", fake_client("cnaught"))
        with pytest.raises(ValidationError):
            await manager.get_quote(QuoteRequest(amount_kg=0))

    @pytest.mark.asyncio
    async def test_no_quotes(self, manager, fake_client):
        manager.register_client("cnaught", fake_client("cnaught", fail=True))
        with pytest.raises(MarketplaceError) as exc:
            await manager.get_quote(QuoteRequest(amount_kg=10))
        assert exc.value.code == "no_quotes"

    def test_select_best_quote_empty(self):
        assert ApiManager.select_best_quote([]) is None


class TestCheckoutRouting:
    @pytest.mark.asyncio
    async def test_routes_by_prefix(self, manager, fake_client):
        cnaught = fake_client("cnaught")
        toucan = fake_client("toucan")
        manager.register_client("cnaught", cnaught)
        manager.register_client("toucan", toucan)

        session = await manager.create_checkout_session(_checkout(portfolio_id="toucan_bct"))
        assert session.vendor == "toucan"
        assert toucan.checkout_requests[0].portfolio_id == "bct"
        assert cnaught.checkout_requests == []

    @pytest.mark.asyncio
    async def test_default_vendor(self, manager, fake_client):
        manager.register_client("cnaught", fake_client("cnaught"))
        session = await manager.create_checkout_session(_checkout(portfolio_id="port_1"))
        assert session.vendor == "cnaught"

    @pytest.mark.asyncio
    async def test_no_checkout_vendor(self, manager, make_project):
        class CatalogueOnly:
            async def get_portfolios(self):
                return []

        manager.register_client("x", CatalogueOnly())
        with pytest.raises(MarketplaceError) as exc:
            await manager.create_checkout_session(_checkout())
        assert exc.value.code == "no_checkout_vendor"


class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_validate_all_clients(self, manager, fake_client):
        manager.register_client("cnaught", fake_client("cnaught"))
        manager.register_client("toucan", fake_client("toucan", fail=True))
        report = await manager.validate_all_clients()
        assert report["cnaught"]["valid"] is True
        assert report["toucan"]["valid"] is False
        assert report["toucan"]["message"].startswith("server_error")

    def test_aggregate_project_data(self, make_project):
        stats = ApiManager.aggregate_project_data([
            make_project("a", price_per_kg=0.01, location="Brazil"),
            make_project("b", price_per_kg=0.05, location="Kenya", vendor="toucan"),
            make_project("c", price_per_kg=0.0, location="Brazil"),
        ])
        assert stats["total_projects"] == 3
        assert stats["vendor_counts"] == {"cnaught": 2, "toucan": 1}
        assert stats["price_range"] == {"min": 0.01, "max": 0.05}
        assert stats["locations"] == {"Brazil": 2, "Kenya": 1}
