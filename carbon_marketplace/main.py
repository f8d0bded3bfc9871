"""Carbon Marketplace — FastAPI application entry point.

Search, quote and checkout endpoints for the storefront, signed vendor
webhooks, and admin routes for sync, health and order export.
"""

import hmac
import logging
import re
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from carbon_marketplace.config import settings
from carbon_marketplace.database import Database, close_db, init_db
from carbon_marketplace.errors import MarketplaceError, NotFoundError, ValidationError
from carbon_marketplace.schemas import Project, QuoteRequest, SearchQuery
from carbon_marketplace.search.engine import SearchEngine
from carbon_marketplace.services.analytics import AnalyticsTracker
from carbon_marketplace.services.api_manager import build_api_manager
from carbon_marketplace.services.cache import cache_manager
from carbon_marketplace.services.checkout import CheckoutManager
from carbon_marketplace.services.orders import OrderManager
from carbon_marketplace.services.security import SECURITY_HEADERS, SecurityManager, get_client_ip
from carbon_marketplace.services.webhook_security import WebhookSecurity
from carbon_marketplace.services.webhooks import WebhookHandler
from carbon_marketplace.sync.maintenance import MaintenanceManager
from carbon_marketplace.sync.scheduler import Scheduler
from carbon_marketplace.sync.synchronizer import DataSynchronizer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger("carbon_marketplace")

DESCRIPTION_WORDS = 30


# ═══════════════ RATE LIMITER ═══════════════

class RateLimiter:
    """Fixed-window rate limiter by IP."""

    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._hits: dict[str, list[float]] = defaultdict(list)

    def is_limited(self, ip: str) -> bool:
        now = time.monotonic()
        window_start = now - self.window
        hits = self._hits[ip]
        # Remove expired entries
        self._hits[ip] = [t for t in hits if t > window_start]
        if len(self._hits[ip]) >= self.max_requests:
            return True
        self._hits[ip].append(now)
        return False


rate_limiter = RateLimiter(settings.rate_limit_per_minute)


# ═══════════════ LIFESPAN ═══════════════

def build_services(app: FastAPI, database: Database | None = None):
    """Wire every service onto app.state."""
    database = database or Database()
    api_manager = build_api_manager()
    search_engine = SearchEngine(database, api_manager, cache_manager)
    analytics = AnalyticsTracker(database)
    checkout_manager = CheckoutManager(api_manager, database, analytics)
    order_manager = OrderManager(database)
    scheduler = Scheduler()
    synchronizer = DataSynchronizer(api_manager, cache_manager, database, search_engine)
    maintenance = MaintenanceManager(api_manager, cache_manager, database, search_engine)
    synchronizer.schedule(scheduler)
    maintenance.schedule(scheduler)

    app.state.database = database
    app.state.cache = cache_manager
    app.state.api_manager = api_manager
    app.state.search_engine = search_engine
    app.state.security = SecurityManager(database=database)
    app.state.webhook_security = WebhookSecurity(database)
    app.state.analytics = analytics
    app.state.checkout_manager = checkout_manager
    app.state.order_manager = order_manager
    app.state.webhook_handler = WebhookHandler(
        checkout_manager, order_manager, database, analytics, cache_manager,
    )
    app.state.scheduler = scheduler
    app.state.synchronizer = synchronizer
    app.state.maintenance = maintenance


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Carbon marketplace starting | cnaught=%s", settings.has_cnaught_credentials)

    # Initialize database (graceful degradation if unavailable)
    db_ok = await init_db()
    logger.info("Database: %s", "connected" if db_ok else "unavailable (continuing without)")

    # Initialize Redis cache (graceful degradation if unavailable)
    redis_ok = await cache_manager.connect()
    logger.info("Redis: %s", "connected" if redis_ok else "unavailable (using in-memory fallback)")

    build_services(app)
    if settings.scheduler_enabled:
        app.state.scheduler.start()

    yield

    await app.state.scheduler.stop()
    await cache_manager.disconnect()
    await close_db()
    logger.info("Carbon marketplace shutting down")


# ═══════════════ APP ═══════════════

app = FastAPI(
    title="Carbon Marketplace API",
    description="Carbon offset search, quotes and checkout across vendors",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["POST", "OPTIONS", "GET"],
    allow_headers=["Content-Type", "X-Nonce", "X-Admin-Token"],
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


def error_response(message: str, status_code: int = 400, code: str = "error", details: Any = None) -> JSONResponse:
    error: dict[str, Any] = {"message": message, "code": code}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("Request failed | path=%s | code=%s | %s", request.url.path, exc.code, exc.message[:200])
    return error_response(exc.message, exc.status_code, exc.code, exc.details)


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid request body", code="invalid_json")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", code="invalid_json")
    return body


def _check_nonce(request: Request, action: str):
    if not settings.require_nonce:
        return
    nonce = request.headers.get("x-nonce")
    if not request.app.state.security.verify_nonce(nonce, action):
        raise MarketplaceError("invalid_nonce", "Invalid security token", status_code=403)


def _check_admin(token: str | None):
    if not settings.admin_token or not token or not hmac.compare_digest(
        token.encode("utf-8"), settings.admin_token.encode("utf-8")
    ):
        raise MarketplaceError("forbidden", "Admin token required", status_code=403)


def trim_words(text: str, words: int = DESCRIPTION_WORDS) -> str:
    parts = re.sub(r"<[^>]*>", "", text or "").split()
    if len(parts) <= words:
        return " ".join(parts)
    return " ".join(parts[:words]) + "…"


def format_projects_for_response(projects: list[Project]) -> list[dict[str, Any]]:
    return [
        {
            "id": p.id,
            "name": p.name,
            "description": trim_words(p.description),
            "location": p.location,
            "project_type": p.project_type,
            "methodology": p.methodology,
            "price_per_kg": p.price_per_kg,
            "available_quantity": p.available_quantity,
            "images": p.images,
            "sdgs": p.sdgs,
            "vendor": p.vendor,
        }
        for p in projects
    ]


# ═══════════════ PUBLIC ENDPOINTS ═══════════════

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "cache_backend": cache_manager.backend,
        "has_cnaught": settings.has_cnaught_credentials,
    }


@app.get("/api/nonce")
async def nonce(request: Request, action: str = "search"):
    return {"nonce": request.app.state.security.generate_nonce(action), "action": action}


@app.post("/api/search")
async def search(request: Request):
    """Project search with filters, ranking and pagination."""
    client_ip = get_client_ip(request)
    if rate_limiter.is_limited(client_ip):
        return error_response("Too many requests", 429, "rate_limited")

    _check_nonce(request, "search")
    state = request.app.state
    body = await _json_body(request)

    start = time.monotonic()
    query = SearchQuery(**state.security.sanitize_search_params(body))
    errors = query.get_validation_errors()
    if errors:
        return error_response("Invalid search query: " + ", ".join(errors), 400, "invalid_query")

    results = await state.search_engine.search(query)
    if results.has_errors():
        return error_response("Search failed: " + ", ".join(results.errors.values()), 500, "search_failed")

    await state.analytics.track_event("search", {
        "keyword": query.keyword,
        "filters": query.get_active_filters(),
        "results": results.total_count,
    }, request.headers.get("x-session-id", ""))

    pagination = results.get_pagination_info(query.limit, query.offset)
    elapsed_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "Search request | keyword=%s | total=%d | %dms | ip=%s",
        query.keyword[:50], results.total_count, elapsed_ms, client_ip,
    )
    return {
        "success": True,
        "data": {
            "projects": format_projects_for_response(results.projects),
            "total_count": results.total_count,
            "filters_applied": query.get_active_filters(),
            "pagination": {
                "current_page": pagination["current_page"],
                "total_pages": pagination["total_pages"],
                "per_page": query.limit,
                "total_items": results.total_count,
            },
            "response_time": elapsed_ms / 1000,
        },
    }


@app.get("/api/suggestions")
async def suggestions(request: Request, q: str = "", limit: int = 10):
    terms = await request.app.state.search_engine.get_suggestions(q, min(max(limit, 1), 50))
    return {"success": True, "data": {"suggestions": terms}}


@app.get("/api/projects/{vendor}/{project_id}")
async def project_details(request: Request, vendor: str, project_id: str):
    state = request.app.state
    project = await state.cache.get_project(vendor, project_id)
    if project is None:
        if state.api_manager.get_client(vendor) is None:
            raise NotFoundError("Vendor", vendor)
        project = await state.api_manager.get_project_details(project_id, vendor)
        await state.cache.cache_project(project)
    await state.analytics.track_event("project_view", {"vendor": vendor, "project_id": project_id})
    return {"success": True, "data": project.model_dump(mode="json")}


@app.post("/api/quote")
async def quote(request: Request):
    _check_nonce(request, "quote")
    state = request.app.state
    body = await _json_body(request)
    try:
        quote_request = QuoteRequest(
            amount_kg=state.security.sanitize_input(body.get("amount_kg", 0), "float"),
            portfolio_id=body.get("portfolio_id") or None,
            project_id=body.get("project_id") or None,
            currency=str(body.get("currency") or "USD").upper()[:3],
        )
    except ValueError as e:
        raise ValidationError("Invalid quote request", details=str(e)[:200])
    errors = quote_request.get_validation_errors()
    if errors:
        raise ValidationError(", ".join(errors), details=errors)

    params = quote_request.model_dump()
    result = await state.cache.get_quote(params)
    if result is None:
        result = await state.api_manager.get_quote(quote_request)
        await state.cache.cache_quote(params, result)
    return {"success": True, "data": result.model_dump(mode="json")}


@app.post("/api/checkout")
async def checkout(request: Request):
    _check_nonce(request, "checkout")
    state = request.app.state
    body = await _json_body(request)
    checkout_request = state.security.validate_checkout_request(body)
    session = await state.checkout_manager.create_checkout_session(checkout_request)
    return {"success": True, "data": session.model_dump(mode="json")}


@app.get("/api/orders/{order_id}/certificate")
async def retirement_certificate(request: Request, order_id: int):
    certificate = await request.app.state.order_manager.get_retirement_certificate(order_id)
    if certificate is None:
        raise NotFoundError("Certificate", str(order_id))
    return {"success": True, "data": certificate}


# ═══════════════ WEBHOOKS ═══════════════

async def _receive_webhook(request: Request, vendor: str) -> tuple[int, dict[str, Any]]:
    """Source, rate, signature and replay checks, then dispatch."""
    state = request.app.state
    guard: WebhookSecurity = state.webhook_security
    ip = get_client_ip(request)

    if not await guard.validate_webhook_source(ip, vendor):
        return 403, {"error": "Forbidden"}
    if not await guard.check_webhook_rate_limit(vendor, ip):
        return 429, {"error": "Rate limit exceeded"}

    raw = await request.body()
    if not guard.verify_vendor_signature(vendor, raw, request.headers.get("x-signature", "")):
        await guard.log_security_event("webhook_invalid_signature", {"vendor": vendor}, ip)
        return 401, {"error": "Invalid signature"}

    timestamp = request.headers.get("x-webhook-timestamp")
    if timestamp is not None:
        webhook_id = request.headers.get("x-webhook-id", "")
        if not await guard.prevent_replay_attack(timestamp, webhook_id):
            return 400, {"error": "Replay detected"}

    try:
        payload = await request.json()
    except ValueError:
        return 400, {"error": "Invalid JSON"}
    if not isinstance(payload, dict):
        return 400, {"error": "Invalid JSON"}

    handler: WebhookHandler = state.webhook_handler
    if vendor in ("cnaught", "toucan"):
        try:
            guard.validate_webhook_payload(payload, vendor)
        except ValidationError as e:
            return 400, {"error": e.message, "code": e.code}
        payload = guard.sanitize_webhook_payload(payload)
        if vendor == "cnaught":
            return await handler.handle_cnaught_webhook(payload)
        return await handler.handle_toucan_webhook(payload)

    payload = guard.sanitize_webhook_payload(payload)
    return await handler.handle_generic_webhook(str(payload.get("vendor") or "unknown"), payload)


@app.post("/webhooks/{vendor}")
async def webhook(request: Request, vendor: str):
    if vendor not in ("cnaught", "toucan", "generic"):
        return JSONResponse(status_code=404, content={"error": "Unknown webhook endpoint"})
    status, body = await _receive_webhook(request, vendor)
    logger.info("Webhook | vendor=%s | status=%d", vendor, status)
    return JSONResponse(status_code=status, content=body)


# ═══════════════ ADMIN ═══════════════

@app.get("/api/admin/sync-status")
async def sync_status(request: Request, x_admin_token: str | None = Header(default=None)):
    _check_admin(x_admin_token)
    state = request.app.state
    return {
        "success": True,
        "data": {
            "sync": await state.synchronizer.get_sync_status(),
            "maintenance": await state.maintenance.get_maintenance_status(),
            "scheduler": state.scheduler.get_status(),
        },
    }


@app.post("/api/admin/sync/{sync_type}")
async def manual_sync(request: Request, sync_type: str, x_admin_token: str | None = Header(default=None)):
    _check_admin(x_admin_token)
    status = await request.app.state.synchronizer.handle_manual_sync(sync_type)
    return {"success": True, "data": status}


@app.post("/api/admin/health-check")
async def health_check(request: Request, x_admin_token: str | None = Header(default=None)):
    _check_admin(x_admin_token)
    report = await request.app.state.maintenance.perform_health_check()
    return {"success": True, "data": report}


@app.get("/api/admin/cache-stats")
async def cache_stats(request: Request, x_admin_token: str | None = Header(default=None)):
    _check_admin(x_admin_token)
    return {"success": True, "data": request.app.state.cache.get_cache_stats()}


@app.get("/api/admin/orders/export")
async def export_orders(
    request: Request,
    status: str = "",
    vendor: str = "",
    x_admin_token: str | None = Header(default=None),
):
    _check_admin(x_admin_token)
    filters = {k: v for k, v in (("status", status), ("vendor", vendor)) if v}
    csv_text = await request.app.state.order_manager.export_orders_csv(filters)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=carbon-orders.csv"},
    )
