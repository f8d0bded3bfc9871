"""Shared test fixtures and configuration."""

import os

import pytest

# Deterministic settings for tests (no real vendor keys, no background jobs)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("CNAUGHT_API_KEY", "test-cnaught-key")
os.environ.setdefault("CNAUGHT_CLIENT_ID", "test-client")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("ENABLE_CACHE", "true")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from carbon_marketplace.database import Database  # noqa: E402
from carbon_marketplace.errors import ApiError  # noqa: E402
from carbon_marketplace.models import Base  # noqa: E402
from carbon_marketplace.schemas import CheckoutSession, Project, Quote  # noqa: E402


@pytest.fixture
async def db():
    """Database access layer over a fresh in-memory SQLite schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield Database(factory)
    await engine.dispose()


@pytest.fixture
def make_project():
    """Factory for Project models with sensible defaults."""

    def _make(project_id: str = "p1", **overrides) -> Project:
        data = {
            "id": project_id,
            "vendor": "cnaught",
            "name": f"Project {project_id}",
            "description": "Protecting forest land from logging",
            "location": "Brazil",
            "project_type": "Forestry",
            "methodology": "VM0015",
            "price_per_kg": 0.02,
            "available_quantity": 1000,
            "sdgs": [13, 15],
        }
        data.update(overrides)
        return Project(**data)

    return _make


@pytest.fixture
def sample_cnaught_project():
    """Sample CNaught project payload."""
    return {
        "id": "proj_123",
        "name": "Amazon Rainforest Protection",
        "description": "REDD+ project protecting 100,000 hectares of rainforest.",
        "location": {"city": "Manaus", "state": "Amazonas", "country": "Brazil"},
        "category": "Forestry",
        "methodology": "VM0015",
        "price_per_kg": 0.015,
        "available_quantity": 50000,
        "images": ["https://example.com/amazon.jpg"],
        "sdgs": [13, 15],
        "registry_url": "https://registry.verra.org/app/projectDetail/VCS/1234",
        "standard": "VCS",
        "vintage": "2022",
    }


@pytest.fixture
def sample_cnaught_portfolio(sample_cnaught_project):
    """Sample CNaught portfolio payload."""
    return {
        "id": "port_1",
        "name": "Climate Positive Portfolio",
        "description": "Blend of removal and avoidance credits",
        "price_per_kg": 0.02,
        "is_active": True,
        "categories": ["forestry", "renewable"],
        "projects": [sample_cnaught_project],
    }


@pytest.fixture
def sample_toucan_token():
    """Sample Toucan subgraph TCO2 token."""
    return {
        "id": "0xabc0000000000000000000000000000000000001",
        "name": "Toucan Protocol: TCO-VCS-1529-2012",
        "symbol": "TCO2-VCS-1529-2012",
        "address": "0xabc0000000000000000000000000000000000001",
        "createdAt": "1650000000",
        "totalSupply": "5000000000000000000000",
        "projectVintage": {
            "id": "1",
            "name": "Kariba REDD+ 2012",
            "startTime": "1325376000",
            "endTime": "1356912000",
            "project": {
                "id": "p1",
                "projectId": "VCS-1529",
                "standard": "VCS",
                "methodology": "VM0009",
                "region": "Zimbabwe",
                "storageMethod": "",
                "method": "",
                "emissionType": "Avoidance",
                "category": "REDD+",
                "uri": "https://registry.verra.org/app/projectDetail/VCS/1529",
            },
        },
        "poolBalances": [
            {"pool": {"id": "0x2f80", "name": "Base Carbon Tonne", "symbol": "BCT"}, "balance": "2000000000000000000000"},
        ],
    }


@pytest.fixture
def cnaught_webhook_payload():
    """CNaught checkout.session.completed webhook body."""
    return {
        "event_type": "checkout.session.completed",
        "data": {
            "session_id": "cs_test_1",
            "order_id": "ord_1",
            "project_allocations": [{"project_id": "proj_123", "amount_kg": 100}],
            "commission_amount": 0.15,
        },
    }


@pytest.fixture
def toucan_webhook_payload():
    """Toucan retirement.completed webhook body."""
    return {
        "type": "retirement.completed",
        "data": {
            "transaction_hash": "0xdeadbeef",
            "amount": "1.5",
            "beneficiary": "Acme Corp",
        },
    }


class FakeVendorClient:
    """In-process stand-in for a vendor client (catalogue, quotes, checkout)."""

    def __init__(self, vendor, projects=None, portfolios=None, price_per_kg=0.02, fail=False):
        self.vendor = vendor
        self.base_url = f"https://{vendor}.test"
        self.timeout = 30
        self.max_retries = 3
        self.rate_limits = {"requests_per_second": 10, "burst": 50}
        self.projects = list(projects or [])
        self.portfolios = list(portfolios or [])
        self.price_per_kg = price_per_kg
        self.fail = fail
        self.checkout_requests = []

    def _check(self):
        if self.fail:
            raise ApiError("server_error", f"{self.vendor} is down", status_code=503)

    async def validate_credentials(self):
        self._check()
        return True

    async def get_portfolios(self):
        self._check()
        return list(self.portfolios)

    async def get_all_projects(self):
        self._check()
        return list(self.projects)

    async def get_project_details(self, project_id):
        self._check()
        for project in self.projects:
            if project.id == project_id:
                return project
        raise ApiError("client_error", "Project not found", status_code=404)

    async def create_quote(self, request):
        self._check()
        return Quote(
            id=f"{self.vendor}_quote",
            vendor=self.vendor,
            amount_kg=request.amount_kg,
            price_per_kg=self.price_per_kg,
            total_price=round(self.price_per_kg * request.amount_kg, 2),
            portfolio_id=request.portfolio_id,
        )

    async def create_checkout_session(self, request):
        self._check()
        self.checkout_requests.append(request)
        return CheckoutSession(
            id=f"cs_{self.vendor}_{len(self.checkout_requests)}",
            vendor=self.vendor,
            checkout_url=f"https://{self.vendor}.test/checkout",
            amount_kg=request.amount_kg,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )


@pytest.fixture
def fake_client():
    """Factory for FakeVendorClient instances."""
    return FakeVendorClient
