"""Async database engine, session management and the SQL access layer.

Uses SQLAlchemy 2.0 async with asyncpg driver.
Graceful degradation: if PostgreSQL is unavailable, the app continues without DB.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from carbon_marketplace.config import settings
from carbon_marketplace.models import (
    AnalyticsEvent,
    CheckoutSessionRecord,
    Option,
    OrderRecord,
    PortfolioRecord,
    ProjectRecord,
    SecurityLog,
    WebhookLog,
)
from carbon_marketplace.schemas import SORT_FIELDS, CheckoutSession, Order, Portfolio, Project

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"echo": False}
    return {"echo": False, "pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}


engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db():
    """FastAPI dependency — yields an async DB session."""
    async with async_session_factory() as session:
        yield session


async def init_db() -> bool:
    """Create tables if they don't exist. Returns True on success."""
    from carbon_marketplace.models import Base

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
        return True
    except Exception as e:
        logger.warning("Database unavailable — continuing without persistence: %s", str(e)[:200])
        return False


async def close_db():
    """Dispose engine connections on shutdown."""
    await engine.dispose()
    logger.info("Database connections closed")


# ═══════════════ ROW CONVERSION ═══════════════

def project_from_record(record: ProjectRecord) -> Project:
    return Project(
        id=record.vendor_id,
        vendor=record.vendor,
        name=record.name,
        description=record.description or "",
        location=record.location or "",
        project_type=record.project_type or "",
        methodology=record.methodology or "",
        price_per_kg=max(record.price_per_kg or 0.0, 0.0),
        available_quantity=max(record.available_quantity or 0, 0),
        images=list(record.images or []),
        sdgs=list(record.sdgs or []),
        registry_url=record.registry_url or "",
        metadata=dict(record.data or {}),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _project_columns(project: Project) -> dict[str, Any]:
    return {
        "vendor_id": project.id,
        "vendor": project.vendor,
        "name": project.name,
        "description": project.description,
        "location": project.location,
        "project_type": project.project_type,
        "methodology": project.methodology,
        "price_per_kg": project.price_per_kg,
        "available_quantity": project.available_quantity,
        "images": list(project.images),
        "sdgs": list(project.sdgs),
        "registry_url": project.registry_url,
        "data": dict(project.metadata),
    }


def order_from_record(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        vendor_order_id=record.vendor_order_id,
        vendor=record.vendor,
        user_id=record.user_id,
        amount_kg=record.amount_kg,
        total_price=record.total_price,
        currency=record.currency,
        status=record.status,
        project_allocations=list(record.project_allocations or []),
        retirement_certificate=record.retirement_certificate,
        retirement_data=dict(record.retirement_data or {}),
        commission_amount=record.commission_amount or 0.0,
        created_at=record.created_at,
        completed_at=record.completed_at,
    )


def _order_columns(order: Order) -> dict[str, Any]:
    return {
        "vendor_order_id": order.vendor_order_id,
        "vendor": order.vendor,
        "user_id": order.user_id,
        "amount_kg": order.amount_kg,
        "total_price": order.total_price,
        "currency": order.currency,
        "status": order.status,
        "project_allocations": list(order.project_allocations),
        "retirement_certificate": order.retirement_certificate,
        "retirement_data": dict(order.retirement_data),
        "commission_amount": order.commission_amount,
        "completed_at": order.completed_at,
    }


def session_from_record(record: CheckoutSessionRecord) -> CheckoutSession:
    data = dict(record.data or {})
    return CheckoutSession(
        id=record.session_id,
        vendor=record.vendor,
        checkout_url=record.checkout_url,
        amount_kg=record.amount_kg,
        total_price=record.total_price,
        currency=record.currency,
        status=record.status,
        success_url=record.success_url,
        cancel_url=record.cancel_url,
        expires_at=data.pop("expires_at", None),
        metadata=data,
    )


# ═══════════════ ACCESS LAYER ═══════════════

class Database:
    """Thin async access layer over the marketplace tables."""

    def __init__(self, session_factory: async_sessionmaker | None = None):
        self._session_factory = session_factory or async_session_factory

    # ── projects ──

    async def insert_project(self, project: Project) -> int:
        async with self._session_factory() as session:
            record = ProjectRecord(**_project_columns(project))
            session.add(record)
            await session.commit()
            return record.id

    async def update_project(self, record_id: int, fields: dict[str, Any]) -> bool:
        async with self._session_factory() as session:
            record = await session.get(ProjectRecord, record_id)
            if record is None:
                return False
            for key, value in fields.items():
                if key == "metadata":
                    key = "data"
                if hasattr(record, key) and key != "id":
                    setattr(record, key, value)
            await session.commit()
            return True

    async def upsert_project(self, project: Project) -> int:
        """Insert or update by (vendor, vendor id). Returns the row id."""
        async with self._session_factory() as session:
            stmt = select(ProjectRecord).where(
                ProjectRecord.vendor == project.vendor,
                ProjectRecord.vendor_id == project.id,
            )
            record = (await session.execute(stmt)).scalar_one_or_none()
            columns = _project_columns(project)
            if record is None:
                record = ProjectRecord(**columns)
                session.add(record)
            else:
                for key, value in columns.items():
                    setattr(record, key, value)
            await session.commit()
            return record.id

    async def get_project(self, record_id: int) -> Project | None:
        async with self._session_factory() as session:
            record = await session.get(ProjectRecord, record_id)
            return project_from_record(record) if record else None

    async def get_project_by_vendor_id(self, vendor: str, vendor_id: str) -> Project | None:
        async with self._session_factory() as session:
            stmt = select(ProjectRecord).where(
                ProjectRecord.vendor == vendor,
                ProjectRecord.vendor_id == vendor_id,
            )
            record = (await session.execute(stmt)).scalar_one_or_none()
            return project_from_record(record) if record else None

    def _project_filters(self, filters: dict[str, Any]) -> list:
        conditions = []
        keyword = filters.get("keyword")
        if keyword:
            like = f"%{keyword}%"
            conditions.append(or_(
                ProjectRecord.name.ilike(like),
                ProjectRecord.description.ilike(like),
                ProjectRecord.location.ilike(like),
                ProjectRecord.project_type.ilike(like),
            ))
        if filters.get("location"):
            conditions.append(ProjectRecord.location.ilike(f"%{filters['location']}%"))
        if filters.get("project_type"):
            conditions.append(func.lower(ProjectRecord.project_type) == filters["project_type"].lower())
        if filters.get("vendor"):
            conditions.append(ProjectRecord.vendor == filters["vendor"])
        if filters.get("min_price") is not None:
            conditions.append(ProjectRecord.price_per_kg >= float(filters["min_price"]))
        if filters.get("max_price") is not None:
            conditions.append(ProjectRecord.price_per_kg <= float(filters["max_price"]))
        return conditions

    async def search_projects(
        self,
        filters: dict[str, Any] | None = None,
        limit: int = 20,
        offset: int = 0,
        order_by: str = "name",
        order: str = "asc",
    ) -> list[Project]:
        """SQL-level filtering. Unknown order fields fall back to name."""
        if order_by not in SORT_FIELDS:
            order_by = "name"
        column = getattr(ProjectRecord, order_by)
        ordering = column.desc() if order.lower() == "desc" else column.asc()

        stmt = (
            select(ProjectRecord)
            .where(*self._project_filters(filters or {}))
            .order_by(ordering, ProjectRecord.id.asc())
            .offset(max(offset, 0))
        )
        if limit:
            stmt = stmt.limit(limit)

        async with self._session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()
            return [project_from_record(r) for r in records]

    async def count_projects(self, filters: dict[str, Any] | None = None) -> int:
        stmt = select(func.count(ProjectRecord.id)).where(*self._project_filters(filters or {}))
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def delete_projects_not_updated_since(self, cutoff: datetime) -> int:
        return await self._delete(ProjectRecord, ProjectRecord.updated_at < cutoff)

    # ── portfolios ──

    async def upsert_portfolio(self, portfolio: Portfolio) -> int:
        columns = {
            "vendor_id": portfolio.id,
            "vendor": portfolio.vendor,
            "name": portfolio.name,
            "description": portfolio.description,
            "base_price_per_kg": portfolio.base_price_per_kg,
            "is_active": portfolio.is_active,
            "project_ids": [p.id for p in portfolio.projects],
            "data": dict(portfolio.metadata),
        }
        async with self._session_factory() as session:
            stmt = select(PortfolioRecord).where(
                PortfolioRecord.vendor == portfolio.vendor,
                PortfolioRecord.vendor_id == portfolio.id,
            )
            record = (await session.execute(stmt)).scalar_one_or_none()
            if record is None:
                record = PortfolioRecord(**columns)
                session.add(record)
            else:
                for key, value in columns.items():
                    setattr(record, key, value)
            await session.commit()
            return record.id

    async def get_portfolios(self, vendor: str | None = None) -> list[Portfolio]:
        stmt = select(PortfolioRecord).where(PortfolioRecord.is_active.is_(True))
        if vendor:
            stmt = stmt.where(PortfolioRecord.vendor == vendor)
        async with self._session_factory() as session:
            records = (await session.execute(stmt.order_by(PortfolioRecord.name))).scalars().all()
            return [
                Portfolio(
                    id=r.vendor_id,
                    vendor=r.vendor,
                    name=r.name,
                    description=r.description or "",
                    base_price_per_kg=r.base_price_per_kg,
                    is_active=r.is_active,
                    metadata={**(r.data or {}), "project_ids": list(r.project_ids or [])},
                )
                for r in records
            ]

    # ── orders ──

    async def insert_order(self, order: Order) -> int:
        async with self._session_factory() as session:
            record = OrderRecord(**_order_columns(order))
            session.add(record)
            await session.commit()
            return record.id

    async def update_order(self, order_id: int, fields: dict[str, Any]) -> bool:
        async with self._session_factory() as session:
            record = await session.get(OrderRecord, order_id)
            if record is None:
                return False
            for key, value in fields.items():
                if hasattr(record, key) and key != "id":
                    setattr(record, key, value)
            await session.commit()
            return True

    async def save_order(self, order: Order) -> bool:
        if order.id is None:
            return False
        return await self.update_order(order.id, _order_columns(order))

    async def get_order(self, order_id: int) -> Order | None:
        async with self._session_factory() as session:
            record = await session.get(OrderRecord, order_id)
            return order_from_record(record) if record else None

    async def get_order_by_vendor_id(self, vendor_order_id: str, vendor: str | None = None) -> Order | None:
        stmt = select(OrderRecord).where(OrderRecord.vendor_order_id == vendor_order_id)
        if vendor:
            stmt = stmt.where(OrderRecord.vendor == vendor)
        async with self._session_factory() as session:
            record = (await session.execute(stmt.limit(1))).scalar_one_or_none()
            return order_from_record(record) if record else None

    def _order_filters(self, filters: dict[str, Any]) -> list:
        conditions = []
        if filters.get("user_id"):
            conditions.append(OrderRecord.user_id == int(filters["user_id"]))
        if filters.get("vendor"):
            conditions.append(OrderRecord.vendor == filters["vendor"])
        if filters.get("status"):
            conditions.append(OrderRecord.status == filters["status"])
        if filters.get("date_from"):
            conditions.append(OrderRecord.created_at >= filters["date_from"])
        if filters.get("date_to"):
            conditions.append(OrderRecord.created_at <= filters["date_to"])
        if filters.get("search"):
            conditions.append(OrderRecord.vendor_order_id.ilike(f"%{filters['search']}%"))
        return conditions

    async def list_orders(self, filters: dict[str, Any] | None = None, limit: int = 50, offset: int = 0) -> list[Order]:
        stmt = (
            select(OrderRecord)
            .where(*self._order_filters(filters or {}))
            .order_by(OrderRecord.created_at.desc(), OrderRecord.id.desc())
            .offset(offset)
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            return [order_from_record(r) for r in (await session.execute(stmt)).scalars().all()]

    async def get_orders_by_user(self, user_id: int, limit: int = 50, offset: int = 0) -> list[Order]:
        return await self.list_orders({"user_id": user_id}, limit=limit, offset=offset)

    async def order_totals(self, filters: dict[str, Any] | None = None) -> dict[str, Any]:
        """Counts and sums used by the order statistics."""
        conditions = self._order_filters(filters or {})
        completed = [*conditions, OrderRecord.status.in_(("completed", "fulfilled"))]
        async with self._session_factory() as session:
            total = (await session.execute(
                select(func.count(OrderRecord.id)).where(*conditions)
            )).scalar_one()
            row = (await session.execute(
                select(
                    func.count(OrderRecord.id),
                    func.coalesce(func.sum(OrderRecord.amount_kg), 0),
                    func.coalesce(func.sum(OrderRecord.total_price), 0),
                ).where(*completed)
            )).one()
            by_status = (await session.execute(
                select(OrderRecord.status, func.count(OrderRecord.id)).where(*conditions).group_by(OrderRecord.status)
            )).all()
            by_vendor = (await session.execute(
                select(OrderRecord.vendor, func.count(OrderRecord.id)).where(*conditions).group_by(OrderRecord.vendor)
            )).all()
        return {
            "total_orders": int(total),
            "completed_orders": int(row[0]),
            "total_carbon_kg": float(row[1]),
            "total_revenue": float(row[2]),
            "by_status": {status: int(count) for status, count in by_status},
            "by_vendor": {vendor: int(count) for vendor, count in by_vendor},
        }

    async def delete_completed_orders_before(self, cutoff: datetime) -> int:
        return await self._delete(
            OrderRecord,
            OrderRecord.status.in_(("completed", "fulfilled")),
            OrderRecord.created_at < cutoff,
        )

    # ── checkout sessions ──

    async def insert_checkout_session(self, checkout: CheckoutSession) -> int:
        async with self._session_factory() as session:
            record = CheckoutSessionRecord(
                session_id=checkout.id,
                vendor=checkout.vendor,
                amount_kg=checkout.amount_kg,
                total_price=checkout.total_price,
                currency=checkout.currency,
                status=checkout.status,
                checkout_url=checkout.checkout_url,
                success_url=checkout.success_url,
                cancel_url=checkout.cancel_url,
                data=_session_data(checkout),
            )
            session.add(record)
            await session.commit()
            return record.id

    async def update_checkout_session(self, checkout: CheckoutSession) -> bool:
        async with self._session_factory() as session:
            stmt = select(CheckoutSessionRecord).where(CheckoutSessionRecord.session_id == checkout.id)
            record = (await session.execute(stmt)).scalar_one_or_none()
            if record is None:
                return False
            record.status = checkout.status
            record.data = _session_data(checkout)
            await session.commit()
            return True

    async def get_checkout_session(self, session_id: str) -> CheckoutSession | None:
        async with self._session_factory() as session:
            stmt = select(CheckoutSessionRecord).where(CheckoutSessionRecord.session_id == session_id)
            record = (await session.execute(stmt)).scalar_one_or_none()
            return session_from_record(record) if record else None

    async def checkout_totals(self) -> dict[str, int]:
        async with self._session_factory() as session:
            total = (await session.execute(select(func.count(CheckoutSessionRecord.id)))).scalar_one()
            completed = (await session.execute(
                select(func.count(CheckoutSessionRecord.id)).where(CheckoutSessionRecord.status == "complete")
            )).scalar_one()
        return {"total_sessions": int(total), "completed_sessions": int(completed)}

    # ── audit logs ──

    async def log_security_event(
        self,
        event_type: str,
        data: dict[str, Any],
        ip_address: str = "0.0.0.0",
        user_agent: str = "",
        user_id: int | None = None,
    ):
        async with self._session_factory() as session:
            session.add(SecurityLog(
                event_type=event_type,
                user_id=user_id,
                ip_address=ip_address[:45],
                user_agent=user_agent,
                event_data=data,
            ))
            await session.commit()

    async def log_webhook(self, vendor: str, status: str, payload: dict[str, Any], error: str = ""):
        async with self._session_factory() as session:
            session.add(WebhookLog(vendor=vendor, status=status, payload=payload, error_message=error))
            await session.commit()

    async def track_event(self, event_type: str, data: dict[str, Any], session_id: str = ""):
        async with self._session_factory() as session:
            session.add(AnalyticsEvent(event_type=event_type, session_id=session_id[:64], event_data=data))
            await session.commit()

    async def count_grouped(self, column, since: datetime | None = None, limit: int | None = None) -> dict[str, int]:
        """COUNT(*) grouped by a log column, most frequent first."""
        model = column.class_
        stmt = select(column, func.count()).group_by(column).order_by(func.count().desc())
        if since is not None:
            stmt = stmt.where(model.created_at >= since)
        if limit:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            return {str(key): int(count) for key, count in (await session.execute(stmt)).all()}

    async def count_rows(self, model, since: datetime | None = None, **equals: Any) -> int:
        stmt = select(func.count()).select_from(model)
        if since is not None:
            stmt = stmt.where(model.created_at >= since)
        for key, value in equals.items():
            stmt = stmt.where(getattr(model, key) == value)
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def list_events(
        self,
        event_type: str | None = None,
        session_id: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> list[dict[str, Any]]:
        stmt = select(AnalyticsEvent).order_by(AnalyticsEvent.created_at.asc(), AnalyticsEvent.id.asc())
        if event_type:
            stmt = stmt.where(AnalyticsEvent.event_type == event_type)
        if session_id:
            stmt = stmt.where(AnalyticsEvent.session_id == session_id)
        if date_from:
            stmt = stmt.where(AnalyticsEvent.created_at >= date_from)
        if date_to:
            stmt = stmt.where(AnalyticsEvent.created_at <= date_to)
        async with self._session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()
            return [
                {
                    "event_type": r.event_type,
                    "session_id": r.session_id,
                    "event_data": dict(r.event_data or {}),
                    "created_at": r.created_at,
                }
                for r in records
            ]

    async def popular_search_terms(self, since: datetime, limit: int = 10) -> list[tuple[str, int]]:
        stmt = select(AnalyticsEvent.event_data).where(
            AnalyticsEvent.event_type == "search",
            AnalyticsEvent.created_at >= since,
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        terms = Counter(
            str(data.get("keyword", "")).strip().lower()
            for data in rows
            if isinstance(data, dict) and str(data.get("keyword", "")).strip()
        )
        return terms.most_common(limit)

    async def delete_logs_before(self, model, cutoff: datetime) -> int:
        return await self._delete(model, model.created_at < cutoff)

    # ── options ──

    async def get_option(self, name: str, default: Any = None) -> Any:
        async with self._session_factory() as session:
            record = await session.get(Option, name)
            if record is None:
                return default
            return record.value

    async def set_option(self, name: str, value: Any):
        async with self._session_factory() as session:
            record = await session.get(Option, name)
            if record is None:
                session.add(Option(name=name, value=value))
            else:
                record.value = value
            await session.commit()

    # ── maintenance ──

    async def ping(self) -> bool:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True

    async def analyze(self) -> bool:
        """Refresh planner statistics where the backend supports it."""
        async with self._session_factory() as session:
            await session.execute(text("ANALYZE"))
            await session.commit()
        return True

    async def _delete(self, model, *conditions) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(model).where(*conditions))
            await session.commit()
            return int(result.rowcount or 0)


def _session_data(checkout: CheckoutSession) -> dict[str, Any]:
    data = dict(checkout.metadata)
    if checkout.expires_at:
        data["expires_at"] = checkout.expires_at.isoformat()
    return data
