"""Inbound webhook verification: signatures, replay protection, source allow-lists."""

import hashlib
import hmac
import ipaddress
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from cachetools import TTLCache

from carbon_marketplace.config import settings
from carbon_marketplace.database import Database
from carbon_marketplace.errors import ValidationError
from carbon_marketplace.models import SecurityLog
from carbon_marketplace.services.security import strip_tags

logger = logging.getLogger(__name__)

CNAUGHT_EVENTS = (
    "checkout.session.completed",
    "order.fulfilled",
    "order.retired",
    "order.cancelled",
)
TOUCAN_EVENTS = ("retirement.completed", "token.transferred", "pool.updated")


class WebhookSecurity:
    def __init__(self, database: Database | None = None, replay_window: int | None = None):
        self.database = database
        self.replay_window = replay_window or settings.webhook_replay_window
        self._processed: TTLCache = TTLCache(maxsize=10000, ttl=self.replay_window)
        self._rate_counters: TTLCache = TTLCache(maxsize=10000, ttl=settings.webhook_rate_window)
        self._secrets: dict[str, str] = {}
        self._allowed_ips: dict[str, list[str]] = {}

    # ═══════════════ SIGNATURES ═══════════════

    def verify_signature(self, payload: str | bytes, signature: str, secret: str, algorithm: str = "sha256") -> bool:
        """Constant-time HMAC check; accepts an `algo=` prefix on the signature."""
        if not signature or not secret:
            return False
        if "=" in signature:
            algorithm, signature = signature.split("=", 1)
        try:
            expected = self.generate_signature(payload, secret, algorithm)
        except ValueError:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

    def generate_signature(self, payload: str | bytes, secret: str, algorithm: str = "sha256") -> str:
        body = payload.encode("utf-8") if isinstance(payload, str) else payload
        return hmac.new(secret.encode("utf-8"), body, algorithm).hexdigest()

    def get_webhook_secret(self, vendor: str) -> str:
        return self._secrets.get(vendor) or settings.webhook_secret(vendor)

    def set_webhook_secret(self, vendor: str, secret: str):
        self._secrets[vendor] = secret

    def verify_vendor_signature(self, vendor: str, payload: str | bytes, signature: str) -> bool:
        secret = self.get_webhook_secret(vendor)
        if not secret:
            logger.warning("Webhook secret not configured | vendor=%s", vendor)
            return True
        return self.verify_signature(payload, signature, secret)

    def verify_cnaught_signature(self, payload: str | bytes, signature: str) -> bool:
        return self.verify_vendor_signature("cnaught", payload, signature)

    def verify_toucan_signature(self, payload: str | bytes, signature: str) -> bool:
        return self.verify_vendor_signature("toucan", payload, signature)

    # ═══════════════ REPLAY / RATE ═══════════════

    async def prevent_replay_attack(self, timestamp: str | int, webhook_id: str = "") -> bool:
        """False when the timestamp is stale or the webhook ID was already seen."""
        try:
            webhook_time = int(timestamp)
        except (TypeError, ValueError):
            webhook_time = 0
        drift = abs(int(time.time()) - webhook_time)
        if drift > self.replay_window:
            await self.log_security_event("webhook_replay_attempt", {
                "timestamp": str(timestamp), "webhook_id": webhook_id, "time_diff": drift,
            })
            return False

        if webhook_id:
            key = hashlib.md5(webhook_id.encode("utf-8")).hexdigest()
            if key in self._processed:
                await self.log_security_event("webhook_duplicate_attempt", {
                    "webhook_id": webhook_id, "timestamp": str(timestamp),
                })
                return False
            self._processed[key] = webhook_time
        return True

    async def check_webhook_rate_limit(self, vendor: str, ip_address: str) -> bool:
        key = f"{vendor}_{ip_address}"
        counter = self._rate_counters.get(key)
        if counter is None:
            self._rate_counters[key] = [1]
            return True
        if counter[0] >= settings.webhook_rate_limit:
            await self.log_security_event("webhook_rate_limit_exceeded", {
                "vendor": vendor, "ip_address": ip_address, "count": counter[0],
            })
            return False
        counter[0] += 1
        return True

    # ═══════════════ PAYLOADS ═══════════════

    def validate_webhook_payload(self, payload: dict[str, Any], vendor: str) -> bool:
        if vendor == "cnaught":
            self._require_fields(payload, ("event_type", "data"))
            event = payload["event_type"]
            if event not in CNAUGHT_EVENTS:
                raise ValidationError(f"Invalid event type: {event}", code="invalid_event_type")
            data = payload.get("data") or {}
            if event == "checkout.session.completed" and not data.get("session_id"):
                raise ValidationError("Session ID is required", code="missing_session_id")
            if event in ("order.fulfilled", "order.retired") and not data.get("order_id"):
                raise ValidationError("Order ID is required", code="missing_order_id")
            return True
        if vendor == "toucan":
            self._require_fields(payload, ("type", "data"))
            if payload["type"] not in TOUCAN_EVENTS:
                raise ValidationError(f"Invalid event type: {payload['type']}", code="invalid_event_type")
            return True
        raise ValidationError(f"Unknown webhook vendor: {vendor}", code="invalid_vendor")

    @staticmethod
    def _require_fields(payload: dict[str, Any], fields: tuple[str, ...]):
        for field in fields:
            if field not in payload:
                raise ValidationError(f"Missing required field: {field}", code="missing_field")

    def sanitize_webhook_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        sanitized: dict[str, Any] = {}
        for key, value in payload.items():
            clean_key = re.sub(r"[^a-z0-9_\-.]", "", str(key).lower())
            if isinstance(value, (bool, int, float)):
                sanitized[clean_key] = value
            elif isinstance(value, str):
                sanitized[clean_key] = strip_tags(value)
            elif isinstance(value, dict):
                sanitized[clean_key] = self.sanitize_webhook_payload(value)
            elif isinstance(value, list):
                sanitized[clean_key] = [
                    self.sanitize_webhook_payload(v) if isinstance(v, dict)
                    else strip_tags(v) if isinstance(v, str) else v
                    for v in value
                ]
        return sanitized

    # ═══════════════ SOURCE IP ═══════════════

    def get_allowed_webhook_ips(self, vendor: str) -> list[str]:
        if vendor in self._allowed_ips:
            return list(self._allowed_ips[vendor])
        return settings.webhook_allowed_ips(vendor)

    def set_allowed_webhook_ips(self, vendor: str, ranges: list[str]):
        self._allowed_ips[vendor] = list(ranges)

    async def validate_webhook_source(self, ip_address: str, vendor: str) -> bool:
        allowed = self.get_allowed_webhook_ips(vendor)
        if not allowed:
            return True
        if any(ip_in_range(ip_address, r) for r in allowed):
            return True
        await self.log_security_event("webhook_invalid_source_ip", {
            "vendor": vendor, "ip_address": ip_address, "allowed_ips": allowed,
        }, ip_address)
        return False

    # ═══════════════ AUDIT ═══════════════

    async def log_security_event(self, event_type: str, data: dict[str, Any], ip_address: str = "0.0.0.0"):
        logger.warning("Webhook security event | type=%s | %s", event_type, str(data)[:200])
        if self.database is None:
            return
        try:
            await self.database.log_security_event(event_type, data, ip_address)
        except Exception as e:
            logger.warning("Security log write failed | %s", str(e)[:200])

    async def get_security_statistics(self) -> dict[str, Any]:
        if self.database is None:
            return {"total_events": 0, "events_by_type": {}, "recent_events": 0, "top_ips": {}}
        since = datetime.now(timezone.utc) - timedelta(hours=24)
        return {
            "total_events": await self.database.count_rows(SecurityLog),
            "events_by_type": await self.database.count_grouped(SecurityLog.event_type),
            "recent_events": await self.database.count_rows(SecurityLog, since=since),
            "top_ips": await self.database.count_grouped(SecurityLog.ip_address, limit=10),
        }


def ip_in_range(ip: str, allowed: str) -> bool:
    """Exact match or CIDR membership, IPv4 and IPv6."""
    try:
        address = ipaddress.ip_address(ip.strip())
        if "/" not in allowed:
            return address == ipaddress.ip_address(allowed.strip())
        network = ipaddress.ip_network(allowed.strip(), strict=False)
    except ValueError:
        return False
    return address.version == network.version and address in network
