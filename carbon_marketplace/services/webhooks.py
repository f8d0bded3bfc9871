"""Vendor webhook event handling.

Every delivery is written to webhook_logs ("received" or "error"). Handlers
return `(http_status, body)`; signature, replay and source checks happen in
WebhookSecurity before a payload reaches this module.
"""

import logging
from typing import Any, Awaitable, Callable

from carbon_marketplace.database import Database
from carbon_marketplace.models import WebhookLog
from carbon_marketplace.services.analytics import AnalyticsTracker
from carbon_marketplace.services.cache import CacheManager
from carbon_marketplace.services.checkout import CheckoutManager
from carbon_marketplace.services.orders import OrderManager

logger = logging.getLogger(__name__)

WebhookResult = tuple[int, dict[str, Any]]
CustomHandler = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any] | None]]


class WebhookHandler:
    def __init__(
        self,
        checkout_manager: CheckoutManager,
        order_manager: OrderManager,
        database: Database,
        analytics: AnalyticsTracker | None = None,
        cache: CacheManager | None = None,
    ):
        self.checkout_manager = checkout_manager
        self.order_manager = order_manager
        self.database = database
        self.analytics = analytics
        self.cache = cache
        self._custom_handlers: dict[str, CustomHandler] = {}

    def register_handler(self, vendor: str, handler: CustomHandler):
        """Handle generic webhooks for a vendor without a dedicated integration."""
        self._custom_handlers[vendor] = handler

    # ═══════════════ ENTRY POINTS ═══════════════

    async def handle_cnaught_webhook(self, payload: dict[str, Any]) -> WebhookResult:
        if not payload:
            return 400, {"error": "Empty payload"}
        await self._log("cnaught", "received", payload)
        event = payload.get("event_type", "")
        try:
            if event == "checkout.session.completed":
                return await self._handle_checkout_completion(payload)
            if event == "order.fulfilled":
                return await self._handle_order_fulfillment(payload)
            if event == "order.retired":
                return await self._handle_order_retirement(payload)
            if event == "order.cancelled":
                return await self._handle_order_cancellation(payload)
        except Exception as e:
            await self._log("cnaught", "error", payload, str(e)[:500])
            logger.error("CNaught webhook failed | event=%s | %s", event, str(e)[:200])
            return 500, {"error": "Webhook processing failed"}

        await self._log("cnaught", "error", payload, "Unknown event type")
        return 400, {"error": "Unknown event type"}

    async def handle_toucan_webhook(self, payload: dict[str, Any]) -> WebhookResult:
        if not payload:
            return 400, {"error": "Empty payload"}
        await self._log("toucan", "received", payload)
        event = payload.get("type", "")
        try:
            if event == "retirement.completed":
                return await self._handle_toucan_retirement(payload)
            if event == "token.transferred":
                logger.info("Toucan token transfer | %s", str(payload.get("data", {}))[:200])
                return 200, {"message": "Token transfer processed"}
            if event == "pool.updated":
                if self.cache:
                    await self.cache.invalidate_vendor_cache("toucan")
                return 200, {"message": "Pool update processed"}
        except Exception as e:
            await self._log("toucan", "error", payload, str(e)[:500])
            logger.error("Toucan webhook failed | event=%s | %s", event, str(e)[:200])
            return 500, {"error": "Webhook processing failed"}

        await self._log("toucan", "error", payload, "Unknown event type")
        return 400, {"error": "Unknown event type"}

    async def handle_generic_webhook(self, vendor: str, payload: dict[str, Any]) -> WebhookResult:
        vendor = vendor or "unknown"
        await self._log(vendor, "received", payload)
        handler = self._custom_handlers.get(vendor)
        if handler is None:
            return 200, {"message": "Webhook received"}
        try:
            result = await handler(vendor, payload)
        except Exception as e:
            await self._log(vendor, "error", payload, str(e)[:500])
            logger.error("Generic webhook failed | vendor=%s | %s", vendor, str(e)[:200])
            return 500, {"error": "Webhook processing failed"}
        return 200, result if result is not None else {"message": "Webhook received"}

    # ═══════════════ CNAUGHT EVENTS ═══════════════

    async def _handle_checkout_completion(self, payload: dict[str, Any]) -> WebhookResult:
        data = payload.get("data") or {}
        session_id = data.get("session_id")
        if not session_id:
            return 400, {"error": "Missing session ID"}
        order = await self.checkout_manager.handle_checkout_completion(session_id, {
            "order_id": data.get("order_id", ""),
            "project_allocations": data.get("project_allocations") or [],
            "commission_amount": data.get("commission_amount") or 0,
        })
        if order is None:
            return 500, {"error": "Failed to process checkout completion"}
        return 200, {"message": "Checkout completion processed"}

    async def _handle_order_fulfillment(self, payload: dict[str, Any]) -> WebhookResult:
        data = payload.get("data") or {}
        if not data.get("order_id"):
            return 400, {"error": "Missing order ID"}
        order = await self.order_manager.get_order_by_vendor_id(str(data["order_id"]), "cnaught")
        if order is None:
            return 404, {"error": "Order not found"}

        order.mark_fulfilled()
        order.project_allocations = list(data.get("project_allocations") or [])
        await self.order_manager.update_order(order)
        if self.analytics:
            await self.analytics.track_fulfillment(order)
        return 200, {"message": "Order fulfillment processed"}

    async def _handle_order_retirement(self, payload: dict[str, Any]) -> WebhookResult:
        data = payload.get("data") or {}
        if not data.get("order_id"):
            return 400, {"error": "Missing order ID"}
        order = await self.order_manager.get_order_by_vendor_id(str(data["order_id"]), "cnaught")
        if order is None:
            return 404, {"error": "Order not found"}

        order.mark_completed()
        order.retirement_data = dict(data.get("retirement_data") or {})
        await self.order_manager.update_order(order)
        if self.analytics:
            await self.analytics.track_retirement(order)
        return 200, {"message": "Order retirement processed"}

    async def _handle_order_cancellation(self, payload: dict[str, Any]) -> WebhookResult:
        data = payload.get("data") or {}
        if not data.get("order_id"):
            return 400, {"error": "Missing order ID"}
        order = await self.order_manager.get_order_by_vendor_id(str(data["order_id"]), "cnaught")
        if order is None:
            return 404, {"error": "Order not found"}
        order.mark_cancelled()
        await self.order_manager.update_order(order)
        return 200, {"message": "Order cancellation processed"}

    # ═══════════════ TOUCAN EVENTS ═══════════════

    async def _handle_toucan_retirement(self, payload: dict[str, Any]) -> WebhookResult:
        data = dict(payload.get("data") or {})
        order = None
        for key in ("order_id", "transaction_hash"):
            if data.get(key):
                order = await self.order_manager.get_order_by_vendor_id(str(data[key]), "toucan")
                if order:
                    break

        if order is not None:
            order.mark_completed()
            order.retirement_data = data
            await self.order_manager.update_order(order)
            if self.analytics:
                await self.analytics.track_retirement(order)
        else:
            logger.info("Toucan retirement without matching order | tx=%s", data.get("transaction_hash", ""))
        return 200, {"message": "Toucan retirement processed"}

    # ═══════════════ LOGGING / STATS ═══════════════

    async def _log(self, vendor: str, status: str, payload: dict[str, Any], error: str = ""):
        if status == "error":
            logger.warning("Webhook error | vendor=%s | %s", vendor, error[:200])
        try:
            await self.database.log_webhook(vendor, status, payload, error)
        except Exception as e:
            logger.warning("Webhook log write failed | vendor=%s | %s", vendor, str(e)[:200])

    async def get_webhook_statistics(self) -> dict[str, Any]:
        total = await self.database.count_rows(WebhookLog)
        successful = await self.database.count_rows(WebhookLog, status="received")
        failed = await self.database.count_rows(WebhookLog, status="error")
        return {
            "total_webhooks": total,
            "successful_webhooks": successful,
            "failed_webhooks": failed,
            "success_rate": successful / total * 100 if total else 0.0,
            "by_vendor": await self.database.count_grouped(WebhookLog.vendor),
        }
