"""CNaught REST API integration.

Docs: https://docs.cnaught.com
Base: https://api.cnaught.com/v1
"""

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from carbon_marketplace.errors import ApiError, ValidationError
from carbon_marketplace.integrations.base_client import BaseApiClient
from carbon_marketplace.schemas import (
    CheckoutRequest,
    CheckoutSession,
    Order,
    Portfolio,
    Project,
    Quote,
    QuoteRequest,
)

logger = logging.getLogger(__name__)

BASE_URL = "https://api.cnaught.com/v1"


class CNaughtClient(BaseApiClient):
    """Async client for the CNaught portfolio/checkout API."""

    vendor = "cnaught"

    def __init__(
        self,
        api_key: str = "",
        client_id: str = "",
        base_url: str = BASE_URL,
        timeout: int = 30,
        max_retries: int = 3,
    ):
        super().__init__(
            base_url,
            credentials={"api_key": api_key, "client_id": client_id},
            timeout=timeout,
            max_retries=max_retries,
            rate_limits={"requests_per_second": 100, "burst": 200},
        )

    def get_auth_headers(self) -> dict[str, str]:
        headers = {}
        if self.credentials.get("api_key"):
            headers["Authorization"] = f"Bearer {self.credentials['api_key']}"
        if self.credentials.get("client_id"):
            headers["X-Client-ID"] = self.credentials["client_id"]
        return headers

    async def validate_credentials(self) -> bool:
        """Probe the API with a one-item listing. Raises ApiError on bad credentials."""
        if not self.credentials.get("api_key"):
            raise ApiError("missing_credentials", "CNaught API key is not configured")
        try:
            await self.make_request("GET", "portfolios", {"limit": 1}, use_cache=False)
        except ApiError as e:
            if e.is_auth_error():
                raise ApiError(
                    "invalid_credentials", "CNaught rejected the API key",
                    status_code=e.http_status, endpoint=e.endpoint,
                ) from e
            raise
        return True

    # ═══════════════ CATALOGUE ═══════════════

    async def get_portfolios(self, limit: int = 100, offset: int = 0) -> list[Portfolio]:
        response = await self.make_request("GET", "portfolios", {"limit": limit, "offset": offset})
        return [self._parse_portfolio(p) for p in _data_list(response)]

    async def get_portfolio_details(self, portfolio_id: str) -> Portfolio:
        _require(portfolio_id, "portfolio_id")
        response = await self.make_request("GET", f"portfolios/{portfolio_id}")
        return self._parse_portfolio(response)

    async def get_project_details(self, project_id: str) -> Project:
        _require(project_id, "project_id")
        response = await self.make_request("GET", f"projects/{project_id}")
        return self._parse_project(response)

    # ═══════════════ PRICING / CHECKOUT ═══════════════

    async def create_quote(self, request: QuoteRequest) -> Quote:
        if request.amount_kg <= 0:
            raise ValidationError("Amount must be a positive number", code="invalid_parameter")

        payload: dict[str, Any] = {"amount_kg": float(request.amount_kg)}
        if request.portfolio_id:
            payload["portfolio_id"] = request.portfolio_id
        response = await self.make_request("POST", "quotes", payload)
        return self._parse_quote(response, request)

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        errors = request.get_validation_errors()
        if errors:
            raise ValidationError(", ".join(errors), details=errors, code="invalid_parameter")

        payload: dict[str, Any] = {
            "amount_kg": float(request.amount_kg),
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
        }
        for field in ("portfolio_id", "customer_email", "customer_name"):
            value = getattr(request, field)
            if value:
                payload[field] = value
        if request.metadata:
            payload["metadata"] = request.metadata
        if request.webhook_url:
            payload["notification_config"] = {"url": request.webhook_url}

        response = await self.make_request("POST", "checkout/sessions", payload)
        return self._parse_checkout_session(response)

    async def get_checkout_session(self, session_id: str) -> CheckoutSession:
        _require(session_id, "session_id")
        response = await self.make_request("GET", f"checkout/sessions/{session_id}", use_cache=False)
        return self._parse_checkout_session(response)

    # ═══════════════ ORDERS / IMPACT ═══════════════

    async def get_orders(self, limit: int = 50, offset: int = 0) -> list[Order]:
        response = await self.make_request("GET", "orders", {"limit": limit, "offset": offset}, use_cache=False)
        orders = []
        for raw in _data_list(response):
            try:
                orders.append(self._parse_order(raw))
            except PydanticValidationError as e:
                logger.warning("CNaught order skipped | id=%s | %s", raw.get("id"), str(e)[:200])
        return orders

    async def get_order(self, order_id: str) -> Order:
        _require(order_id, "order_id")
        response = await self.make_request("GET", f"orders/{order_id}", use_cache=False)
        return self._parse_order(response)

    async def get_impact_data(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.make_request("GET", "impact/data", params or {})

    # ═══════════════ PARSING ═══════════════

    def _parse_portfolio(self, data: dict) -> Portfolio:
        projects = [
            self._parse_project(p) for p in data.get("projects", []) if isinstance(p, dict)
        ]
        return Portfolio(
            id=str(data.get("id", "")),
            vendor=self.vendor,
            name=data.get("name", "") or str(data.get("id", "")),
            description=data.get("description", "") or "",
            projects=projects,
            base_price_per_kg=_non_negative(data.get("price_per_kg")),
            is_active=bool(data.get("is_active", True)),
            metadata={
                "categories": data.get("categories", []),
                "total_supply": data.get("total_supply", 0),
                "available_supply": data.get("available_supply", 0),
                "currency": data.get("currency", "USD"),
            },
        )

    def _parse_project(self, data: dict) -> Project:
        """Parse a CNaught project into the shared Project model."""
        return Project(
            id=str(data.get("id", "")),
            vendor=self.vendor,
            name=data.get("name", "") or str(data.get("id", "")),
            description=data.get("description", "") or "",
            location=_extract_location(data),
            project_type=data.get("category") or data.get("project_type") or "",
            methodology=data.get("methodology", "") or "",
            price_per_kg=_non_negative(data.get("price_per_kg")),
            available_quantity=int(_non_negative(data.get("available_quantity"))),
            images=list(data.get("images") or []),
            sdgs=list(data.get("sdgs") or []),
            registry_url=data.get("registry_url", "") or "",
            metadata={
                "standard": data.get("standard", ""),
                "vintage": data.get("vintage", ""),
                "verification_body": data.get("verification_body", ""),
                "project_developer": data.get("project_developer", ""),
                "emission_type": data.get("emission_type", ""),
                "additional_certifications": data.get("additional_certifications", []),
            },
        )

    def _parse_quote(self, data: dict, request: QuoteRequest) -> Quote:
        return Quote(
            id=str(data.get("id", "")),
            vendor=self.vendor,
            amount_kg=float(data.get("amount_kg") or request.amount_kg),
            price_per_kg=_non_negative(data.get("price_per_kg")),
            total_price=_non_negative(data.get("total_price")),
            currency=data.get("currency", "USD"),
            expires_at=data.get("expires_at"),
            portfolio_id=data.get("portfolio_id") or request.portfolio_id,
            metadata={
                "fees": data.get("fees", []),
                "taxes": data.get("taxes", []),
                "breakdown": data.get("breakdown", []),
            },
        )

    def _parse_checkout_session(self, data: dict) -> CheckoutSession:
        status = data.get("status", "pending")
        if status not in ("pending", "complete", "expired", "cancelled"):
            status = "pending"
        return CheckoutSession(
            id=str(data.get("id", "")),
            vendor=self.vendor,
            checkout_url=data.get("checkout_url", ""),
            amount_kg=_non_negative(data.get("amount_kg")),
            total_price=_non_negative(data.get("total_price")),
            currency=data.get("currency", "USD"),
            status=status,
            success_url=data.get("success_url", ""),
            cancel_url=data.get("cancel_url", ""),
            expires_at=data.get("expires_at"),
            metadata={
                "customer_email": data.get("customer_email", ""),
                "customer_name": data.get("customer_name", ""),
                "portfolio_id": data.get("portfolio_id", ""),
                **(data.get("metadata") or {}),
            },
        )

    def _parse_order(self, data: dict) -> Order:
        status = data.get("state") or data.get("status") or "pending"
        if status not in ("pending", "processing", "completed", "fulfilled", "cancelled", "failed", "refunded"):
            status = "pending"
        return Order(
            vendor_order_id=str(data.get("id", "")),
            vendor=self.vendor,
            amount_kg=float(data.get("amount_kg") or 0),
            total_price=_non_negative(data.get("total_price")),
            currency=data.get("currency", "USD"),
            status=status,
            project_allocations=list(data.get("project_allocations") or []),
            retirement_certificate=data.get("certificate_public_url"),
            retirement_data=data.get("retirement_data") or {},
            created_at=data.get("created_on") or data.get("created_at"),
        )


def _data_list(response: Any) -> list[dict]:
    if isinstance(response, dict):
        data = response.get("data", [])
    else:
        data = response
    return [d for d in data or [] if isinstance(d, dict)]


def _extract_location(data: dict) -> str:
    location = data.get("location")
    if isinstance(location, str) and location:
        return location
    if isinstance(location, dict):
        parts = [location.get(k) for k in ("city", "state", "country")]
        joined = ", ".join(p for p in parts if p)
        if joined:
            return joined
    return data.get("country") or data.get("region") or ""


def _non_negative(value: Any) -> float:
    try:
        return max(float(value or 0), 0.0)
    except (TypeError, ValueError):
        return 0.0


def _require(value: str, name: str):
    if not value:
        raise ValidationError(f"{name} is required", code="invalid_parameter")
