"""Order lookups, status transitions, retirement certificates and CSV export."""

import csv
import io
import logging
from typing import Any

from carbon_marketplace.database import Database
from carbon_marketplace.schemas import ORDER_STATUSES, Order

logger = logging.getLogger(__name__)

CSV_HEADER = (
    "Order ID",
    "Vendor Order ID",
    "Vendor",
    "Amount (kg)",
    "Total Price",
    "Currency",
    "Status",
    "Created At",
    "Completed At",
)


class OrderManager:
    def __init__(self, database: Database, certificate_base_url: str = "/api/orders"):
        self.database = database
        self.certificate_base_url = certificate_base_url.rstrip("/")

    async def get_order(self, order_id: int) -> Order | None:
        return await self.database.get_order(order_id)

    async def get_order_by_vendor_id(self, vendor_order_id: str, vendor: str | None = None) -> Order | None:
        return await self.database.get_order_by_vendor_id(vendor_order_id, vendor)

    async def get_user_orders(self, user_id: int, filters: dict[str, Any] | None = None) -> list[Order]:
        filters = dict(filters or {})
        limit = int(filters.pop("limit", 50))
        offset = int(filters.pop("offset", 0))
        return await self.database.list_orders({**filters, "user_id": user_id}, limit=limit, offset=offset)

    async def search_orders(self, search_term: str, filters: dict[str, Any] | None = None) -> list[Order]:
        filters = dict(filters or {})
        limit = int(filters.pop("limit", 20))
        offset = int(filters.pop("offset", 0))
        if search_term:
            filters["search"] = search_term
        return await self.database.list_orders(filters, limit=limit, offset=offset)

    async def update_order(self, order: Order) -> bool:
        return await self.database.save_order(order)

    async def update_order_status(self, order_id: int, status: str) -> bool:
        if status not in ORDER_STATUSES:
            return False
        order = await self.get_order(order_id)
        if order is None:
            return False
        if status == "completed":
            order.mark_completed()
        else:
            order.status = status
        logger.info("Order status | order=%d | status=%s", order_id, status)
        return await self.update_order(order)

    async def add_retirement_data(self, order_id: int, retirement_data: dict[str, Any]) -> bool:
        order = await self.get_order(order_id)
        if order is None:
            return False
        order.retirement_data = dict(retirement_data)
        order.mark_completed()
        return await self.update_order(order)

    async def get_order_statistics(self, filters: dict[str, Any] | None = None) -> dict[str, Any]:
        stats = await self.database.order_totals(filters)
        completed = stats["completed_orders"]
        stats["average_order_value"] = stats["total_revenue"] / completed if completed else 0.0
        return stats

    async def get_retirement_certificate(self, order_id: int) -> dict[str, Any] | None:
        """Certificate data for a completed order that carries retirement data."""
        order = await self.get_order(order_id)
        if order is None or not order.is_completed() or not order.retirement_data:
            return None
        return {
            "order_id": order.id,
            "vendor_order_id": order.vendor_order_id,
            "vendor": order.vendor,
            "amount_kg": order.amount_kg,
            "total_price": order.total_price,
            "currency": order.currency,
            "completed_at": order.completed_at.isoformat() if order.completed_at else None,
            "project_allocations": order.project_allocations,
            "retirement_data": order.retirement_data,
            "certificate_url": self._certificate_url(order),
        }

    def _certificate_url(self, order: Order) -> str:
        data = order.retirement_data
        return data.get("registry_url") or data.get("certificate_url") or (
            f"{self.certificate_base_url}/{order.id}/certificate"
        )

    async def export_orders_csv(self, filters: dict[str, Any] | None = None) -> str:
        filters = dict(filters or {})
        limit = int(filters.pop("limit", 0))
        orders = await self.database.list_orders(filters, limit=limit)

        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(CSV_HEADER)
        for order in orders:
            writer.writerow([
                order.id,
                order.vendor_order_id,
                order.vendor,
                order.amount_kg,
                order.total_price,
                order.currency,
                order.status,
                order.created_at.strftime("%Y-%m-%d %H:%M:%S") if order.created_at else "",
                order.completed_at.strftime("%Y-%m-%d %H:%M:%S") if order.completed_at else "",
            ])
        return output.getvalue()
