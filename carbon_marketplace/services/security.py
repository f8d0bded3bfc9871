"""Request hardening — input sanitization, nonces, rate limits, secret encryption.

Nonces are HMAC tokens bound to an action and a 12-hour tick; a nonce stays
valid for the current and the previous tick (12–24h lifetime).
"""

import base64
import hashlib
import hmac
import html
import ipaddress
import logging
import re
import time
from typing import Any

from cachetools import TTLCache
from cryptography.fernet import Fernet, InvalidToken
from fastapi import Request

from carbon_marketplace.config import settings
from carbon_marketplace.database import Database
from carbon_marketplace.errors import MarketplaceError, ValidationError
from carbon_marketplace.schemas import SORT_FIELDS, SORT_ORDERS, CheckoutRequest, is_valid_url

logger = logging.getLogger(__name__)

NONCE_TICK_SECONDS = 12 * 3600
NONCE_LENGTH = 20

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

_SCRIPT_BLOCK = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]*>?")
_EVENT_ATTR = re.compile(r"\s+on\w+\s*=\s*(\"[^\"]*\"|'[^']*'|[^\s>]+)", re.IGNORECASE)
_JS_URL = re.compile(r"javascript\s*:", re.IGNORECASE)
_EMAIL = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")
_CREDENTIAL = re.compile(r"^[a-zA-Z0-9_-]+$")


def _derive_key(secret: str) -> bytes:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def strip_tags(value: str) -> str:
    """Drop script/style blocks and every remaining tag, collapse whitespace."""
    value = _SCRIPT_BLOCK.sub("", value)
    value = _TAG.sub("", value)
    return " ".join(value.split())


class SecurityManager:
    """Sanitization and request-level security checks."""

    def __init__(self, secret_key: str | None = None, database: Database | None = None):
        self.secret_key = secret_key or settings.secret_key
        self.database = database
        self._fernet = Fernet(_derive_key(self.secret_key))
        self._rate_counters: dict[int, TTLCache] = {}

    # ═══════════════ SANITIZATION ═══════════════

    def sanitize_input(self, value: Any, input_type: str = "text") -> Any:
        if input_type == "int":
            try:
                return int(float(value))
            except (TypeError, ValueError):
                return 0
        if input_type == "float":
            try:
                return float(value)
            except (TypeError, ValueError):
                return 0.0

        text = "" if value is None else str(value)
        if input_type == "email":
            text = text.strip()
            return text if _EMAIL.match(text) else ""
        if input_type == "url":
            text = strip_tags(text).replace(" ", "")
            return text if is_valid_url(text) else ""
        if input_type == "key":
            return re.sub(r"[^a-z0-9_\-]", "", text.lower())
        if input_type == "slug":
            slug = re.sub(r"[^a-z0-9]+", "-", strip_tags(text).lower())
            return slug.strip("-")
        if input_type == "html":
            text = _SCRIPT_BLOCK.sub("", text)
            text = _EVENT_ATTR.sub("", text)
            return _JS_URL.sub("", text)
        return strip_tags(text)

    def sanitize_search_params(self, params: dict[str, Any]) -> dict[str, Any]:
        """Clean raw search parameters; invalid prices are dropped."""
        sanitized: dict[str, Any] = {}
        for field in ("keyword", "location", "project_type", "vendor"):
            if field in params and params[field] is not None:
                sanitized[field] = self.sanitize_input(params[field])

        for field in ("min_price", "max_price"):
            if params.get(field) in (None, ""):
                continue
            try:
                price = float(params[field])
            except (TypeError, ValueError):
                continue
            if price >= 0:
                sanitized[field] = price

        if "limit" in params:
            sanitized["limit"] = min(max(self.sanitize_input(params["limit"], "int"), 1), 100)
        if "offset" in params:
            sanitized["offset"] = max(self.sanitize_input(params["offset"], "int"), 0)
        if "sort_by" in params:
            sort_by = self.sanitize_input(params["sort_by"], "key")
            sanitized["sort_by"] = sort_by if sort_by in SORT_FIELDS else "name"
        if "sort_order" in params:
            sort_order = str(params["sort_order"]).lower()
            sanitized["sort_order"] = sort_order if sort_order in SORT_ORDERS else "asc"
        if isinstance(params.get("sdgs"), list):
            sanitized["sdgs"] = [self.sanitize_input(s) for s in params["sdgs"] if s not in (None, "")]
        return sanitized

    def _sanitize_metadata(self, metadata: dict[str, Any]) -> dict[str, Any]:
        clean: dict[str, Any] = {}
        for key, value in metadata.items():
            clean_key = self.sanitize_input(key, "key")
            if isinstance(value, bool) or isinstance(value, (int, float)):
                clean[clean_key] = value
            elif isinstance(value, str):
                clean[clean_key] = self.sanitize_input(value)
            elif isinstance(value, dict):
                clean[clean_key] = self._sanitize_metadata(value)
        return clean

    def validate_checkout_request(self, data: dict[str, Any]) -> CheckoutRequest:
        """Validate raw checkout input, reporting every problem at once."""
        errors = []
        amount = 0.0
        if data.get("amount_kg") in (None, "", 0):
            errors.append("Amount is required")
        else:
            try:
                amount = float(data["amount_kg"])
                if amount <= 0:
                    errors.append("Amount must be greater than 0")
            except (TypeError, ValueError):
                errors.append("Invalid amount format")

        for field, label in (("success_url", "success"), ("cancel_url", "cancel")):
            url = data.get(field) or ""
            if not url:
                errors.append(f"{label.capitalize()} URL is required")
            elif not is_valid_url(url):
                errors.append(f"Invalid {label} URL")

        email = data.get("customer_email") or ""
        if email and not _EMAIL.match(email.strip()):
            errors.append("Invalid email address")

        if errors:
            raise ValidationError(", ".join(errors), details=errors)

        return CheckoutRequest(
            amount_kg=amount,
            portfolio_id=self.sanitize_input(data.get("portfolio_id") or "") or None,
            project_id=self.sanitize_input(data.get("project_id") or "") or None,
            currency=self.sanitize_input(data.get("currency") or "USD").upper()[:3],
            success_url=self.sanitize_input(data["success_url"], "url"),
            cancel_url=self.sanitize_input(data["cancel_url"], "url"),
            webhook_url=self.sanitize_input(data.get("webhook_url") or "", "url") or None,
            customer_email=self.sanitize_input(email, "email"),
            customer_name=self.sanitize_input(data.get("customer_name") or ""),
            metadata=self._sanitize_metadata(data.get("metadata") or {}),
        )

    def validate_api_credentials(self, credentials: dict[str, Any], vendor: str) -> bool:
        api_key = str(credentials.get("api_key") or "")
        if vendor == "cnaught":
            if not api_key:
                raise ValidationError("API key is required", code="missing_api_key")
            if not credentials.get("client_id"):
                raise ValidationError("Client ID is required", code="missing_client_id")
            if not _CREDENTIAL.match(api_key):
                raise ValidationError("Invalid API key format", code="invalid_api_key")
            return True
        if vendor == "toucan":
            # Public subgraph: the key is optional, only its format is checked.
            if api_key and not _CREDENTIAL.match(api_key):
                raise ValidationError("Invalid API key format", code="invalid_api_key")
            return True
        raise ValidationError(f"Unknown vendor: {vendor}", code="invalid_vendor")

    # ═══════════════ NONCES / RATE LIMITS ═══════════════

    @staticmethod
    def _tick(now: float | None = None) -> int:
        return int((time.time() if now is None else now) // NONCE_TICK_SECONDS) + 1

    def _nonce_for(self, action: str, tick: int) -> str:
        message = f"{tick}|{action}".encode("utf-8")
        digest = hmac.new(self.secret_key.encode("utf-8"), message, hashlib.sha256).hexdigest()
        return digest[:NONCE_LENGTH]

    def generate_nonce(self, action: str) -> str:
        return self._nonce_for(action, self._tick())

    def verify_nonce(self, nonce: str | None, action: str) -> bool:
        if not nonce:
            return False
        tick = self._tick()
        return any(
            hmac.compare_digest(nonce.encode("utf-8"), self._nonce_for(action, t).encode("utf-8"))
            for t in (tick, tick - 1)
        )

    def check_rate_limit(self, identifier: str, limit: int = 100, window: int = 3600) -> bool:
        """Counting limiter: True while the identifier is under `limit` per window."""
        counters = self._rate_counters.get(window)
        if counters is None:
            counters = self._rate_counters[window] = TTLCache(maxsize=10000, ttl=window)
        key = hashlib.md5(identifier.encode("utf-8")).hexdigest()
        counter = counters.get(key)
        if counter is None:
            # Mutated in place so the entry keeps the expiry of the first request.
            counters[key] = [1]
            return limit > 0
        if counter[0] >= limit:
            return False
        counter[0] += 1
        return True

    # ═══════════════ ENCRYPTION ═══════════════

    def encrypt_data(self, data: str) -> str:
        return self._fernet.encrypt(data.encode("utf-8")).decode("ascii")

    def decrypt_data(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise MarketplaceError("decryption_failed", "Unable to decrypt data", status_code=400) from e

    # ═══════════════ AUDIT ═══════════════

    async def log_security_event(
        self,
        event_type: str,
        data: dict[str, Any] | None = None,
        request: Request | None = None,
    ):
        ip = get_client_ip(request) if request is not None else "0.0.0.0"
        user_agent = request.headers.get("user-agent", "") if request is not None else ""
        logger.warning("Security event | type=%s | ip=%s | %s", event_type, ip, str(data or {})[:200])
        if self.database is None:
            return
        try:
            await self.database.log_security_event(event_type, data or {}, ip, user_agent[:500])
        except Exception as e:
            logger.warning("Security log write failed | %s", str(e)[:200])

    @staticmethod
    def escape_output(value: str) -> str:
        return html.escape(value or "")


def get_client_ip(request: Request) -> str:
    """First valid address from proxy headers, else the socket peer."""
    candidates = []
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        candidates.append(forwarded.split(",")[0].strip())
    candidates.append(request.headers.get("x-real-ip", "").strip())
    if request.client:
        candidates.append(request.client.host)

    for candidate in candidates:
        try:
            return str(ipaddress.ip_address(candidate))
        except ValueError:
            continue
    return "0.0.0.0"
