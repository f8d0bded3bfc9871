"""Pydantic models shared across vendors, search, checkout and the HTTP API.

Split into: catalogue (projects, portfolios), pricing (quotes, token prices),
checkout/orders, and search queries.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field

SORT_FIELDS = ("name", "price_per_kg", "location", "project_type", "created_at")
SORT_ORDERS = ("asc", "desc")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_url(url: str) -> bool:
    """Basic http(s) URL validation."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except Exception:
        return False


# ═══════════════ CATALOGUE ═══════════════

class Project(BaseModel):
    """A vendor-scoped carbon offset project."""

    id: str = Field(min_length=1, max_length=255)
    vendor: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    location: str = Field(default="", max_length=255)
    project_type: str = Field(default="", max_length=100)
    methodology: str = Field(default="", max_length=255)
    price_per_kg: float = Field(default=0.0, ge=0)
    available_quantity: int = Field(default=0, ge=0)
    images: list[str] = Field(default_factory=list)
    sdgs: list[Any] = Field(default_factory=list)
    registry_url: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_available(self) -> bool:
        return self.available_quantity > 0

    def get_formatted_price(self) -> str:
        return f"${self.price_per_kg:.2f}/kg"

    def get_summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vendor": self.vendor,
            "name": self.name,
            "location": self.location,
            "project_type": self.project_type,
            "price": self.get_formatted_price(),
            "available": self.is_available(),
        }

    def get_validation_errors(self) -> list[str]:
        """Checks the model constraints can't express."""
        errors = []
        if self.registry_url and not is_valid_url(self.registry_url):
            errors.append("Registry URL must be a valid URL")
        return errors


class Portfolio(BaseModel):
    """A vendor-curated bundle of projects sold as a unit."""

    id: str = Field(min_length=1)
    vendor: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    projects: list[Project] = Field(default_factory=list)
    base_price_per_kg: float = Field(default=0.0, ge=0)
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    def add_project(self, project: Project):
        self.projects.append(project)

    def remove_project(self, project_id: str) -> bool:
        before = len(self.projects)
        self.projects = [p for p in self.projects if p.id != project_id]
        return len(self.projects) < before

    def get_project_count(self) -> int:
        return len(self.projects)

    def has_projects(self) -> bool:
        return bool(self.projects)


# ═══════════════ PRICING ═══════════════

class Quote(BaseModel):
    id: str
    vendor: str
    amount_kg: float = Field(gt=0)
    price_per_kg: float = Field(default=0.0, ge=0)
    total_price: float = Field(default=0.0, ge=0)
    currency: str = "USD"
    expires_at: datetime | None = None
    portfolio_id: str | None = None
    project_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= _now()


class TokenPrice(BaseModel):
    """Spot price of a tokenized credit derived from DEX activity."""

    token_address: str
    price_usd: float = Field(ge=0)
    currency: str = "USD"
    volume_24h: float = 0.0
    data_source: str = ""
    updated_at: datetime = Field(default_factory=_now)

    def is_fresh(self, max_age_minutes: int = 15) -> bool:
        return _now() - self.updated_at <= timedelta(minutes=max_age_minutes)


class QuoteRequest(BaseModel):
    amount_kg: float = 0.0
    portfolio_id: str | None = None
    project_id: str | None = None
    currency: str = "USD"

    def get_validation_errors(self) -> list[str]:
        errors = []
        if self.amount_kg <= 0:
            errors.append("Amount must be greater than 0")
        if len(self.currency) != 3:
            errors.append("Currency must be a 3-letter code")
        return errors


# ═══════════════ CHECKOUT / ORDERS ═══════════════

class CheckoutRequest(QuoteRequest):
    success_url: str = ""
    cancel_url: str = ""
    webhook_url: str | None = None
    customer_email: str = ""
    customer_name: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    def get_validation_errors(self) -> list[str]:
        errors = super().get_validation_errors()
        if not self.success_url:
            errors.append("Success URL is required")
        elif not is_valid_url(self.success_url):
            errors.append("Invalid success URL")
        if not self.cancel_url:
            errors.append("Cancel URL is required")
        elif not is_valid_url(self.cancel_url):
            errors.append("Invalid cancel URL")
        return errors


class CheckoutSession(BaseModel):
    id: str
    vendor: str
    checkout_url: str = ""
    amount_kg: float = 0.0
    total_price: float = 0.0
    currency: str = "USD"
    status: Literal["pending", "complete", "expired", "cancelled"] = "pending"
    success_url: str = ""
    cancel_url: str = ""
    expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def mark_complete(self):
        self.status = "complete"

    def is_expired(self) -> bool:
        if self.status == "expired":
            return True
        return self.expires_at is not None and self.expires_at <= _now()


ORDER_STATUSES = ("pending", "processing", "completed", "fulfilled", "cancelled", "failed", "refunded")


class Order(BaseModel):
    """A purchase record, mutated by vendor webhooks."""

    id: int | None = None
    vendor_order_id: str = Field(min_length=1)
    vendor: str = Field(min_length=1)
    user_id: int | None = None
    amount_kg: float = Field(gt=0)
    total_price: float = Field(default=0.0, ge=0)
    currency: str = "USD"
    status: Literal[
        "pending", "processing", "completed", "fulfilled", "cancelled", "failed", "refunded",
    ] = "pending"
    project_allocations: list[dict[str, Any]] = Field(default_factory=list)
    retirement_certificate: str | None = None
    retirement_data: dict[str, Any] = Field(default_factory=dict)
    commission_amount: float = 0.0
    created_at: datetime | None = None
    completed_at: datetime | None = None

    def mark_processing(self):
        self.status = "processing"

    def mark_completed(self):
        self.status = "completed"
        self.completed_at = _now()

    def mark_fulfilled(self):
        self.status = "fulfilled"

    def mark_cancelled(self):
        self.status = "cancelled"

    def mark_failed(self):
        self.status = "failed"

    def mark_refunded(self):
        self.status = "refunded"

    def is_completed(self) -> bool:
        return self.status in ("completed", "fulfilled")

    def get_allocation_summary(self) -> dict[str, Any]:
        total = sum(float(a.get("amount_kg", 0)) for a in self.project_allocations)
        return {
            "project_count": len(self.project_allocations),
            "allocated_kg": total,
            "unallocated_kg": max(self.amount_kg - total, 0.0),
        }

    def get_age_in_days(self) -> int:
        if not self.created_at:
            return 0
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (_now() - created).days


# ═══════════════ SEARCH ═══════════════

class SearchQuery(BaseModel):
    """Search parameters. Invalid values are reported, not raised."""

    keyword: str = ""
    location: str = ""
    project_type: str = ""
    min_price: float | None = None
    max_price: float | None = None
    vendor: str = ""
    sdgs: list[Any] = Field(default_factory=list)
    limit: int = 20
    offset: int = 0
    sort_by: str = "name"
    sort_order: str = "asc"

    def get_validation_errors(self) -> list[str]:
        errors = []
        if not 1 <= self.limit <= 100:
            errors.append("Limit must be between 1 and 100")
        if self.offset < 0:
            errors.append("Offset must be non-negative")
        if self.min_price is not None and self.min_price < 0:
            errors.append("Minimum price must be non-negative")
        if self.max_price is not None and self.max_price < 0:
            errors.append("Maximum price must be non-negative")
        if (
            self.min_price is not None
            and self.max_price is not None
            and self.min_price > self.max_price
        ):
            errors.append("Minimum price cannot be greater than maximum price")
        for field, max_len in (("keyword", 255), ("location", 255), ("project_type", 100), ("vendor", 50)):
            if len(getattr(self, field)) > max_len:
                errors.append(f"{field} must be at most {max_len} characters")
        if self.sort_by not in SORT_FIELDS:
            errors.append(f"Invalid sort field: {self.sort_by}")
        if self.sort_order not in SORT_ORDERS:
            errors.append(f"Invalid sort order: {self.sort_order}")
        return errors

    def is_valid(self) -> bool:
        return not self.get_validation_errors()

    def get_active_filters(self) -> dict[str, Any]:
        filters: dict[str, Any] = {}
        for field in ("keyword", "location", "project_type", "vendor"):
            value = getattr(self, field)
            if value:
                filters[field] = value
        if self.min_price is not None:
            filters["min_price"] = self.min_price
        if self.max_price is not None:
            filters["max_price"] = self.max_price
        if self.sdgs:
            filters["sdgs"] = list(self.sdgs)
        return filters

    def has_filters(self) -> bool:
        return bool(self.get_active_filters())

    def get_page(self) -> int:
        return self.offset // self.limit + 1 if self.limit > 0 else 1

    def get_next_page(self) -> SearchQuery:
        return self.model_copy(update={"offset": self.offset + self.limit})

    def get_previous_page(self) -> SearchQuery:
        return self.model_copy(update={"offset": max(self.offset - self.limit, 0)})

    def cache_params(self) -> dict[str, Any]:
        return self.model_dump()
