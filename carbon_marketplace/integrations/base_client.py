"""Shared HTTP plumbing for vendor API clients.

Every vendor client goes through BaseApiClient.make_request, which provides:
  - client-side rate limiting (sliding one-second window)
  - a short-lived response cache for idempotent reads
  - bounded retries with exponential backoff for timeouts, 429 and 5xx
  - uniform ApiError reporting for everything else
"""

import asyncio
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx
from cachetools import TTLCache

from carbon_marketplace.errors import ApiError

logger = logging.getLogger(__name__)

USER_AGENT = "CarbonMarketplace/1.0"
MAX_BACKOFF_SECONDS = 60
RATE_LIMIT_FLOOR_SECONDS = 5


class BaseApiClient(ABC):
    """Async HTTP client base with retry, backoff and response caching."""

    vendor = ""

    def __init__(
        self,
        base_url: str,
        credentials: dict[str, str] | None = None,
        timeout: int = 30,
        max_retries: int = 3,
        rate_limits: dict[str, int] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials or {}
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.rate_limits = {"requests_per_second": 10, "burst": 50, **(rate_limits or {})}
        self._request_times: list[float] = []
        self._response_cache: TTLCache = TTLCache(maxsize=128, ttl=300)

    # ═══════════════ OVERRIDABLE HOOKS ═══════════════

    def get_auth_headers(self) -> dict[str, str]:
        return {}

    @abstractmethod
    async def validate_credentials(self) -> bool:
        """Probe the vendor with the configured credentials."""

    # ═══════════════ REQUESTS ═══════════════

    async def make_request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        use_cache: bool | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises ApiError on client errors, undecodable bodies and exhausted retries.
        """
        method = method.upper()
        if use_cache is None:
            use_cache = method == "GET"

        cache_key = self._cache_key(method, endpoint, data)
        if use_cache and cache_key in self._response_cache:
            logger.debug("%s response cache hit | endpoint=%s", self.vendor, endpoint)
            return self._response_cache[cache_key]

        if not self._check_rate_limit():
            raise ApiError(
                "rate_limit_exceeded",
                f"Client-side rate limit reached for {self.vendor or self.base_url}",
                status_code=429,
                endpoint=endpoint,
            )

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        request_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
            **self.get_auth_headers(),
            **(headers or {}),
        }

        last_error: ApiError | None = None
        for attempt in range(1, self.max_retries + 1):
            self._request_times.append(time.monotonic())
            start = time.monotonic()
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    if method == "GET":
                        response = await client.request(method, url, params=data, headers=request_headers)
                    else:
                        response = await client.request(method, url, json=data, headers=request_headers)
            except httpx.TimeoutException:
                elapsed_ms = int((time.monotonic() - start) * 1000)
                logger.warning(
                    "%s timeout | endpoint=%s | attempt=%d/%d | %dms",
                    self.vendor, endpoint, attempt, self.max_retries, elapsed_ms,
                )
                last_error = ApiError("request_timeout", "Request timed out", endpoint=endpoint)
                if attempt < self.max_retries:
                    await self._wait(self._backoff(attempt))
                continue
            except httpx.HTTPError as e:
                logger.warning(
                    "%s transport error | endpoint=%s | attempt=%d/%d | %s",
                    self.vendor, endpoint, attempt, self.max_retries, str(e)[:200],
                )
                last_error = ApiError("request_failed", str(e)[:200], endpoint=endpoint)
                if attempt < self.max_retries:
                    await self._wait(self._backoff(attempt))
                continue

            elapsed_ms = int((time.monotonic() - start) * 1000)
            status = response.status_code

            if status == 429:
                logger.warning(
                    "%s rate limited | endpoint=%s | attempt=%d/%d | %dms",
                    self.vendor, endpoint, attempt, self.max_retries, elapsed_ms,
                )
                last_error = ApiError(
                    "rate_limited", "Vendor rate limit exceeded",
                    status_code=429, response_data=_safe_json(response), endpoint=endpoint,
                )
                if attempt < self.max_retries:
                    await self._wait(self._rate_limit_delay(response, attempt))
                continue

            if status >= 500:
                logger.warning(
                    "%s server error | status=%d | endpoint=%s | attempt=%d/%d | %dms",
                    self.vendor, status, endpoint, attempt, self.max_retries, elapsed_ms,
                )
                last_error = ApiError(
                    "server_error", f"HTTP Error {status}",
                    status_code=status, response_data=_safe_json(response), endpoint=endpoint,
                )
                if attempt < self.max_retries:
                    await self._wait(self._backoff(attempt))
                continue

            if status >= 400:
                body = _safe_json(response)
                logger.warning(
                    "%s client error | status=%d | endpoint=%s | %dms",
                    self.vendor, status, endpoint, elapsed_ms,
                )
                raise ApiError(
                    "client_error", _extract_error_message(body, status),
                    status_code=status, response_data=body, endpoint=endpoint,
                )

            if not response.content:
                body: Any = {}
            else:
                try:
                    body = response.json()
                except ValueError:
                    raise ApiError(
                        "json_decode_error", "Invalid JSON in vendor response",
                        status_code=status, response_data=response.text[:500], endpoint=endpoint,
                    )

            logger.info("%s OK | %s %s | status=%d | %dms", self.vendor, method, endpoint, status, elapsed_ms)
            if use_cache:
                self._response_cache[cache_key] = body
            return body

        message = last_error.message if last_error else "unknown error"
        raise ApiError(
            "max_retries_exceeded",
            f"Request failed after {self.max_retries} attempts: {message}",
            status_code=last_error.http_status if last_error else 0,
            response_data=last_error.response_data if last_error else None,
            endpoint=endpoint,
        )

    # ═══════════════ RATE LIMIT / CACHE ═══════════════

    def _check_rate_limit(self) -> bool:
        now = time.monotonic()
        self._request_times = [t for t in self._request_times if now - t < 1]
        return len(self._request_times) < self.rate_limits["requests_per_second"]

    async def wait_for_rate_limit(self):
        """Sleep until the one-second window has room for another request."""
        if self.rate_limits["requests_per_second"] <= 0:
            return
        while not self._check_rate_limit():
            elapsed = time.monotonic() - self._request_times[0]
            await asyncio.sleep(max(0.0, 1 - elapsed) + 0.01)

    def get_rate_limit_status(self) -> dict[str, Any]:
        now = time.monotonic()
        recent = [t for t in self._request_times if now - t < 1]
        limit = self.rate_limits["requests_per_second"]
        return {
            "requests_made": len(recent),
            "requests_remaining": max(0, limit - len(recent)),
            "reset_time": time.time() + 1,
        }

    def clear_cache(self):
        self._response_cache.clear()

    @staticmethod
    def _cache_key(method: str, endpoint: str, data: dict | None) -> str:
        payload = json.dumps(data or {}, sort_keys=True, default=str)
        return hashlib.sha256(f"{method}:{endpoint}:{payload}".encode()).hexdigest()[:32]

    # ═══════════════ BACKOFF ═══════════════

    @staticmethod
    def _backoff(attempt: int) -> float:
        return min(2 ** attempt, MAX_BACKOFF_SECONDS)

    def _rate_limit_delay(self, response: httpx.Response, attempt: int) -> float:
        retry_after = response.headers.get("Retry-After", "")
        try:
            delay = float(retry_after)
        except ValueError:
            delay = float(self._backoff(attempt))
        return min(max(delay, RATE_LIMIT_FLOOR_SECONDS), MAX_BACKOFF_SECONDS)

    async def _wait(self, seconds: float):
        await asyncio.sleep(seconds)


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _extract_error_message(body: Any, status: int) -> str:
    if isinstance(body, dict):
        for key in ("error", "message", "error_description", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and value.get("message"):
                return str(value["message"])
    return f"HTTP Error {status}"
