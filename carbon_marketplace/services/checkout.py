"""Checkout flow: quote, vendor session, persistence, and completion into orders."""

import logging
import time
from typing import Any

from carbon_marketplace.database import Database
from carbon_marketplace.errors import MarketplaceError, ValidationError
from carbon_marketplace.schemas import CheckoutRequest, CheckoutSession, Order, QuoteRequest
from carbon_marketplace.services.analytics import AnalyticsTracker
from carbon_marketplace.services.api_manager import ApiManager

logger = logging.getLogger(__name__)


class CheckoutManager:
    def __init__(
        self,
        api_manager: ApiManager,
        database: Database,
        analytics: AnalyticsTracker | None = None,
    ):
        self.api_manager = api_manager
        self.database = database
        self.analytics = analytics

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        """Quote first, then open the vendor session and store it."""
        errors = request.get_validation_errors()
        if errors:
            raise ValidationError(", ".join(errors), details=errors)

        start = time.monotonic()
        try:
            quote = await self.api_manager.get_quote(QuoteRequest(
                amount_kg=request.amount_kg,
                portfolio_id=request.portfolio_id,
                project_id=request.project_id,
                currency=request.currency,
            ))
        except MarketplaceError as e:
            logger.warning("Checkout quote failed | %s", str(e)[:200])
            raise MarketplaceError(
                "quote_failed", "Failed to get pricing quote", details=e.details, status_code=502,
            ) from e

        session = await self.api_manager.create_checkout_session(request)
        if not session.total_price:
            session.total_price = quote.total_price
        session.metadata.setdefault("quote_id", quote.id)

        try:
            await self.database.insert_checkout_session(session)
        except Exception as e:
            logger.warning("Checkout session not stored | session=%s | %s", session.id, str(e)[:200])

        if self.analytics:
            await self.analytics.track_event("checkout_start", {
                "session_id": session.id,
                "vendor": session.vendor,
                "amount_kg": session.amount_kg,
                "total_price": session.total_price,
            })
        logger.info(
            "Checkout session OK | vendor=%s | session=%s | %dms",
            session.vendor, session.id, int((time.monotonic() - start) * 1000),
        )
        return session

    async def get_checkout_session(self, session_id: str) -> CheckoutSession | None:
        return await self.database.get_checkout_session(session_id)

    async def handle_checkout_completion(self, session_id: str, completion_data: dict[str, Any]) -> Order | None:
        """Mark the stored session complete and open a pending order for it."""
        session = await self.get_checkout_session(session_id)
        if session is None:
            logger.warning("Checkout session not found | session=%s", session_id)
            return None

        vendor_order_id = str(completion_data.get("order_id") or session.id)
        if session.status == "complete":
            existing = await self.database.get_order_by_vendor_id(vendor_order_id, session.vendor)
            if existing is not None:
                logger.info("Checkout already completed | session=%s | order=%s", session_id, vendor_order_id)
                return existing

        session.mark_complete()
        await self.database.update_checkout_session(session)

        order = Order(
            vendor_order_id=vendor_order_id,
            vendor=session.vendor,
            user_id=completion_data.get("user_id"),
            amount_kg=session.amount_kg,
            total_price=session.total_price,
            currency=session.currency,
            status="pending",
            project_allocations=list(completion_data.get("project_allocations") or []),
            retirement_data=dict(completion_data.get("retirement_data") or {}),
            commission_amount=float(completion_data.get("commission_amount") or 0),
        )
        order.id = await self.database.insert_order(order)
        logger.info("Checkout completed | session=%s | order=%s", session_id, order.vendor_order_id)

        if self.analytics:
            await self.analytics.track_conversion(order, session_id)
        return order

    async def get_checkout_statistics(self) -> dict[str, Any]:
        sessions = await self.database.checkout_totals()
        orders = await self.database.order_totals()
        total_sessions = sessions["total_sessions"]
        return {
            **sessions,
            "conversion_rate": sessions["completed_sessions"] / total_sessions * 100 if total_sessions else 0.0,
            "total_orders": orders["total_orders"],
            "total_revenue": orders["total_revenue"],
            "average_order_value": (
                orders["total_revenue"] / orders["total_orders"] if orders["total_orders"] else 0.0
            ),
        }
