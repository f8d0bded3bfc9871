"""Tests for vendor API integrations — CNaught REST, Toucan subgraph."""

import re

import httpx
import pytest

from carbon_marketplace.errors import ApiError, ValidationError
from carbon_marketplace.integrations.base_client import BaseApiClient
from carbon_marketplace.integrations.cnaught import CNaughtClient
from carbon_marketplace.integrations.toucan import POOLS, ToucanClient
from carbon_marketplace.schemas import CheckoutRequest, QuoteRequest

CNAUGHT = "https://api.cnaught.com/v1"
SUBGRAPH = "https://api.thegraph.com/subgraphs/name/toucanprotocol/matic"


async def _no_wait(seconds):
    return None


@pytest.fixture
def cnaught():
    client = CNaughtClient(api_key="sk_test", client_id="client_1", max_retries=3)
    client._wait = _no_wait
    return client


@pytest.fixture
def toucan():
    client = ToucanClient()
    client._wait = _no_wait
    return client


class StubClient(BaseApiClient):
    async def validate_credentials(self):
        return True


# ═══════════════ BaseApiClient ═══════════════


class TestBaseApiClient:
    def test_backoff_is_capped(self):
        assert BaseApiClient._backoff(1) == 2
        assert BaseApiClient._backoff(3) == 8
        assert BaseApiClient._backoff(10) == 60

    def test_rate_limit_delay_honours_retry_after(self):
        client = StubClient("https://example.com")
        response = httpx.Response(429, headers={"Retry-After": "12"})
        assert client._rate_limit_delay(response, 1) == 12
        # Floor of 5 seconds, ceiling of 60
        assert client._rate_limit_delay(httpx.Response(429, headers={"Retry-After": "1"}), 1) == 5
        assert client._rate_limit_delay(httpx.Response(429, headers={"Retry-After": "600"}), 1) == 60

    def test_base_client_is_abstract(self):
        with pytest.raises(TypeError):
            BaseApiClient("https://example.com")

    def test_rate_limit_status(self):
        client = StubClient("https://example.com", rate_limits={"requests_per_second": 4})
        status = client.get_rate_limit_status()
        assert status["requests_made"] == 0
        assert status["requests_remaining"] == 4

    @pytest.mark.asyncio
    async def test_client_side_rate_limit(self):
        client = StubClient("https://example.com", rate_limits={"requests_per_second": 0})
        with pytest.raises(ApiError) as exc:
            await client.make_request("GET", "anything")
        assert exc.value.code == "rate_limit_exceeded"
        assert exc.value.is_rate_limited()


# ═══════════════ CNaught ═══════════════


class TestCNaughtClient:
    def test_auth_headers(self, cnaught):
        headers = cnaught.get_auth_headers()
        assert headers["Authorization"] == "Bearer sk_test"
        assert headers["X-Client-ID"] == "client_1"

    def test_parse_project(self, cnaught, sample_cnaught_project):
        project = cnaught._parse_project(sample_cnaught_project)
        assert project.id == "proj_123"
        assert project.vendor == "cnaught"
        assert project.location == "Manaus, Amazonas, Brazil"
        assert project.project_type == "Forestry"
        assert project.price_per_kg == 0.015
        assert project.available_quantity == 50000
        assert project.sdgs == [13, 15]
        assert project.metadata["standard"] == "VCS"

    def test_parse_project_clamps_negative_price(self, cnaught):
        project = cnaught._parse_project({"id": "x", "name": "X", "price_per_kg": -3, "available_quantity": "n/a"})
        assert project.price_per_kg == 0.0
        assert project.available_quantity == 0

    @pytest.mark.asyncio
    async def test_get_portfolios(self, cnaught, httpx_mock, sample_cnaught_portfolio):
        httpx_mock.add_response(
            url=re.compile(rf"{CNAUGHT}/portfolios.*"),
            json={"data": [sample_cnaught_portfolio]},
        )
        portfolios = await cnaught.get_portfolios()

        assert len(portfolios) == 1
        assert portfolios[0].name == "Climate Positive Portfolio"
        assert portfolios[0].base_price_per_kg == 0.02
        assert portfolios[0].projects[0].id == "proj_123"

        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == "Bearer sk_test"
        assert request.url.params["limit"] == "100"

    @pytest.mark.asyncio
    async def test_get_requests_are_cached(self, cnaught, httpx_mock, sample_cnaught_project):
        httpx_mock.add_response(url=f"{CNAUGHT}/projects/proj_123", json=sample_cnaught_project)
        first = await cnaught.get_project_details("proj_123")
        second = await cnaught.get_project_details("proj_123")
        assert first == second
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_create_quote(self, cnaught, httpx_mock):
        httpx_mock.add_response(
            method="POST",
            url=f"{CNAUGHT}/quotes",
            json={"id": "q_1", "amount_kg": 100, "price_per_kg": 0.02, "total_price": 2.0, "currency": "USD"},
        )
        quote = await cnaught.create_quote(QuoteRequest(amount_kg=100, portfolio_id="port_1"))
        assert quote.id == "q_1"
        assert quote.total_price == 2.0
        assert quote.portfolio_id == "port_1"

    @pytest.mark.asyncio
    async def test_create_quote_rejects_zero_amount(self, cnaught):
        with pytest.raises(ValidationError):
            await cnaught.create_quote(QuoteRequest(amount_kg=0))

    @pytest.mark.asyncio
    async def test_create_checkout_session(self, cnaught, httpx_mock):
        httpx_mock.add_response(
            method="POST",
            url=f"{CNAUGHT}/checkout/sessions",
            json={
                "id": "cs_1",
                "checkout_url": "https://checkout.cnaught.com/cs_1",
                "amount_kg": 50,
                "total_price": 1.0,
                "status": "open",
            },
        )
        session = await cnaught.create_checkout_session(CheckoutRequest(
            amount_kg=50,
            success_url="https://shop.example/ok",
            cancel_url="https://shop.example/cancel",
            webhook_url="https://shop.example/webhooks/cnaught",
        ))
        assert session.id == "cs_1"
        assert session.status == "pending"  # unknown vendor status normalized
        body = httpx_mock.get_requests()[0].read()
        assert b"notification_config" in body

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, cnaught, httpx_mock):
        httpx_mock.add_response(url=f"{CNAUGHT}/orders/o1", status_code=503)
        httpx_mock.add_response(url=f"{CNAUGHT}/orders/o1", json={"id": "o1", "amount_kg": 5, "state": "fulfilled"})
        order = await cnaught.get_order("o1")
        assert order.status == "fulfilled"
        assert len(httpx_mock.get_requests()) == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, cnaught, httpx_mock):
        for _ in range(3):
            httpx_mock.add_response(url=f"{CNAUGHT}/orders/o1", status_code=500)
        with pytest.raises(ApiError) as exc:
            await cnaught.get_order("o1")
        assert exc.value.code == "max_retries_exceeded"
        assert exc.value.http_status == 500

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, cnaught, httpx_mock):
        httpx_mock.add_response(url=f"{CNAUGHT}/orders/o1", status_code=404, json={"error": "Order not found"})
        with pytest.raises(ApiError) as exc:
            await cnaught.get_order("o1")
        assert exc.value.code == "client_error"
        assert exc.value.message == "Order not found"
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_invalid_json(self, cnaught, httpx_mock):
        httpx_mock.add_response(url=f"{CNAUGHT}/orders/o1", content=b"<html>oops</html>")
        with pytest.raises(ApiError) as exc:
            await cnaught.get_order("o1")
        assert exc.value.code == "json_decode_error"

    @pytest.mark.asyncio
    async def test_validate_credentials_missing_key(self):
        with pytest.raises(ApiError) as exc:
            await CNaughtClient().validate_credentials()
        assert exc.value.code == "missing_credentials"

    @pytest.mark.asyncio
    async def test_validate_credentials_rejected(self, cnaught, httpx_mock):
        httpx_mock.add_response(url=re.compile(rf"{CNAUGHT}/portfolios.*"), status_code=401)
        with pytest.raises(ApiError) as exc:
            await cnaught.validate_credentials()
        assert exc.value.code == "invalid_credentials"


# ═══════════════ Toucan ═══════════════


class TestToucanClient:
    def test_parse_token(self, toucan, sample_toucan_token):
        project = toucan._parse_token(sample_toucan_token)
        assert project.vendor == "toucan"
        assert project.name == "Kariba REDD+ 2012"
        assert project.location == "Zimbabwe"
        assert project.project_type == "REDD+"
        assert project.available_quantity == 5000
        assert "Methodology: VM0009" in project.description
        assert "Vintage: 2012" in project.description
        assert project.metadata["pool_balances"] == [{"pool": "BCT", "balance": 2000}]
        assert project.registry_url.startswith("https://registry.verra.org")

    def test_parse_token_drops_non_http_uri(self, toucan, sample_toucan_token):
        sample_toucan_token["projectVintage"]["project"]["uri"] = "ipfs://abc"
        assert toucan._parse_token(sample_toucan_token).registry_url == ""

    @pytest.mark.asyncio
    async def test_fetch_all_tokens(self, toucan, httpx_mock, sample_toucan_token):
        httpx_mock.add_response(method="POST", url=SUBGRAPH, json={"data": {"tco2Tokens": [sample_toucan_token]}})
        projects = await toucan.fetch_all_tco2_tokens(limit=10)
        assert len(projects) == 1
        assert projects[0].id == sample_toucan_token["id"]

        body = httpx_mock.get_requests()[0].read()
        assert b'"first": 10' in body or b'"first":10' in body

    @pytest.mark.asyncio
    async def test_graphql_errors_raise(self, toucan, httpx_mock):
        httpx_mock.add_response(method="POST", url=SUBGRAPH, json={"errors": [{"message": "bad query"}]})
        with pytest.raises(ApiError) as exc:
            await toucan.execute_graphql_query("{ nope }")
        assert exc.value.code == "graphql_error"
        assert "bad query" in exc.value.message

    @pytest.mark.asyncio
    async def test_token_not_found(self, toucan, httpx_mock):
        httpx_mock.add_response(method="POST", url=SUBGRAPH, json={"data": {"tco2Token": None}})
        with pytest.raises(ApiError) as exc:
            await toucan.fetch_tco2_token_by_id("0xmissing")
        assert exc.value.code == "token_not_found"

    @pytest.mark.asyncio
    async def test_token_id_required(self, toucan):
        with pytest.raises(ValidationError):
            await toucan.fetch_tco2_token_by_id("")

    @pytest.mark.asyncio
    async def test_dex_price(self, toucan, httpx_mock):
        address = "0xabc"
        httpx_mock.add_response(method="POST", url=SUBGRAPH, json={"data": {"swaps": [
            {
                "id": "s1", "timestamp": "0",
                "token0": {"id": address}, "token1": {"id": "0xusdc"},
                "amount0In": "10", "amount0Out": "0", "amount1In": "0", "amount1Out": "15",
                "amountUSD": "15",
            },
            {
                "id": "s2", "timestamp": "0",
                "token0": {"id": "0xusdc"}, "token1": {"id": address},
                "amount0In": "25", "amount0Out": "0", "amount1In": "0", "amount1Out": "10",
                "amountUSD": "25",
            },
        ]}})
        price = await toucan.fetch_token_price_on_dex("0xABC")
        assert price.price_usd == 2.0
        assert price.data_source == "toucan_dex_swaps"

    @pytest.mark.asyncio
    async def test_dex_price_without_swaps(self, toucan, httpx_mock):
        httpx_mock.add_response(method="POST", url=SUBGRAPH, json={"data": {"swaps": []}})
        with pytest.raises(ApiError) as exc:
            await toucan.fetch_token_price_on_dex("0xabc")
        assert exc.value.code == "no_price_data"

    @pytest.mark.asyncio
    async def test_pools_are_static(self, toucan):
        pools = await toucan.get_portfolios()
        assert {p.metadata["symbol"] for p in pools} == set(POOLS)
