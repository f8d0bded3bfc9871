"""Event tracking and reporting over the analytics table.

Event types: page_view, search, project_view, quote_request, checkout_start,
conversion, fulfillment, retirement.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from carbon_marketplace.database import Database
from carbon_marketplace.schemas import Order

logger = logging.getLogger(__name__)

FUNNEL_STEPS = (
    ("page_view", "Page Views"),
    ("search", "Searches"),
    ("project_view", "Project Views"),
    ("quote_request", "Quote Requests"),
    ("checkout_start", "Checkout Started"),
    ("conversion", "Conversions"),
)


class AnalyticsTracker:
    def __init__(self, database: Database):
        self.database = database

    async def track_event(self, event_type: str, event_data: dict[str, Any] | None = None, session_id: str = "") -> bool:
        """Record one event. Failures are logged, never raised."""
        try:
            await self.database.track_event(event_type, event_data or {}, session_id)
            return True
        except Exception as e:
            logger.warning("Analytics write failed | type=%s | %s", event_type, str(e)[:200])
            return False

    async def track_conversion(self, order: Order, session_id: str = "") -> bool:
        return await self.track_event("conversion", {
            "order_id": order.id,
            "vendor_order_id": order.vendor_order_id,
            "vendor": order.vendor,
            "amount_kg": order.amount_kg,
            "total_price": order.total_price,
            "currency": order.currency,
            "commission_amount": order.commission_amount,
        }, session_id)

    async def track_fulfillment(self, order: Order) -> bool:
        return await self.track_event("fulfillment", {
            "order_id": order.id,
            "vendor_order_id": order.vendor_order_id,
            "vendor": order.vendor,
            "project_allocations": order.project_allocations,
        })

    async def track_retirement(self, order: Order) -> bool:
        return await self.track_event("retirement", {
            "order_id": order.id,
            "vendor_order_id": order.vendor_order_id,
            "vendor": order.vendor,
            "amount_kg": order.amount_kg,
            "retirement_data": order.retirement_data,
        })

    # ═══════════════ REPORTING ═══════════════

    async def get_analytics_data(self, filters: dict[str, Any] | None = None) -> dict[str, Any]:
        filters = filters or {}
        events = await self.database.list_events(
            date_from=filters.get("date_from"), date_to=filters.get("date_to"),
        )

        events_by_type: dict[str, int] = {}
        conversions_by_vendor: dict[str, dict[str, float]] = {}
        revenue = commission = carbon = 0.0
        conversions = 0
        for event in events:
            events_by_type[event["event_type"]] = events_by_type.get(event["event_type"], 0) + 1
            if event["event_type"] != "conversion":
                continue
            data = event["event_data"]
            price = float(data.get("total_price") or 0)
            conversions += 1
            revenue += price
            commission += float(data.get("commission_amount") or 0)
            carbon += float(data.get("amount_kg") or 0)
            vendor = conversions_by_vendor.setdefault(str(data.get("vendor", "unknown")), {"count": 0, "revenue": 0.0})
            vendor["count"] += 1
            vendor["revenue"] += price

        return {
            "total_events": len(events),
            "events_by_type": events_by_type,
            "total_conversions": conversions,
            "total_revenue": revenue,
            "total_commission": commission,
            "total_carbon_kg": carbon,
            "average_order_value": revenue / conversions if conversions else 0.0,
            "conversions_by_vendor": conversions_by_vendor,
        }

    async def get_conversion_funnel(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Distinct sessions reaching each step, as a share of page views."""
        filters = filters or {}
        events = await self.database.list_events(
            date_from=filters.get("date_from"), date_to=filters.get("date_to"),
        )
        sessions: dict[str, set[str]] = {step: set() for step, _ in FUNNEL_STEPS}
        for event in events:
            if event["event_type"] in sessions:
                sessions[event["event_type"]].add(event["session_id"])

        visitors = len(sessions["page_view"])
        return [
            {
                "step": step,
                "label": label,
                "count": len(sessions[step]),
                "conversion_rate": len(sessions[step]) / visitors * 100 if visitors else 0.0,
            }
            for step, label in FUNNEL_STEPS
        ]

    async def get_popular_search_terms(self, days: int = 7, limit: int = 10) -> list[dict[str, Any]]:
        since = datetime.now(timezone.utc) - timedelta(days=days)
        terms = await self.database.popular_search_terms(since, limit)
        return [{"search_term": term, "search_count": count} for term, count in terms]

    async def get_user_journey(self, session_id: str) -> list[dict[str, Any]]:
        events = await self.database.list_events(session_id=session_id)
        return [
            {"event_type": e["event_type"], "event_data": e["event_data"], "timestamp": e["created_at"]}
            for e in events
        ]
