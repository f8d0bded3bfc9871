"""Cache manager with Redis backend and in-memory fallback.

TTL per data type (from config):
  - portfolios: 15 min
  - projects: 1 hour
  - project_details: 30 min
  - quotes: 5 min
  - search_results: 10 min

Keys look like `carbon_marketplace_{type}_{vendor}_{hash}`; invalidation takes
glob patterns relative to the prefix. A side metadata map tracks type, vendor,
item count and timestamps per key for stats and bulk invalidation.

Graceful degradation: if Redis is unavailable, uses a cachetools TLRUCache in-memory.
"""

import base64
import fnmatch
import gzip
import hashlib
import json
import logging
import time
from typing import Any, Awaitable, Callable

from cachetools import TLRUCache

from carbon_marketplace.config import settings
from carbon_marketplace.schemas import Portfolio, Project, Quote

logger = logging.getLogger(__name__)

CACHE_PREFIX = "carbon_marketplace_"


def _entry_expiry(_key: str, value: tuple[int, str], now: float) -> float:
    return now + value[0]


class CacheManager:
    """Async cache with Redis primary and in-memory fallback."""

    def __init__(
        self,
        enable_cache: bool | None = None,
        compression: bool | None = None,
        max_cache_size: int | None = None,
    ):
        self.prefix = CACHE_PREFIX
        self.enable_cache = settings.enable_cache if enable_cache is None else enable_cache
        self.compression = settings.cache_compression if compression is None else compression
        self.max_cache_size = max_cache_size or settings.max_cache_size
        self._redis = None
        self._fallback = TLRUCache(maxsize=max(self.max_cache_size * 2, 256), ttu=_entry_expiry)
        self._available = False
        self._metadata: dict[str, dict[str, Any]] = {}

    @property
    def backend(self) -> str:
        return "redis" if self._available else "memory"

    async def connect(self) -> bool:
        """Connect to Redis. Returns True on success."""
        try:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=3,
            )
            await self._redis.ping()
            self._available = True
            return True
        except Exception as e:
            logger.warning("Redis connection failed — using in-memory fallback: %s", str(e)[:100])
            self._redis = None
            self._available = False
            return False

    async def disconnect(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._available = False

    # ═══════════════ KEYS / TTL ═══════════════

    def make_key(self, cache_type: str, vendor: str | None = None, params: Any = None) -> str:
        """Build `{prefix}{type}_{vendor?}_{hash(params)?}`."""
        parts = [cache_type]
        if vendor:
            parts.append(vendor)
        if params is not None:
            if isinstance(params, (dict, list, tuple)):
                normalized = json.dumps(params, sort_keys=True, ensure_ascii=False, default=str)
                parts.append(hashlib.sha256(normalized.encode()).hexdigest()[:32])
            else:
                parts.append(str(params))
        return self.prefix + "_".join(parts)

    def get_ttl(self, cache_type: str) -> int:
        """Get TTL in seconds based on data type."""
        ttl_map = {
            "portfolios": settings.cache_ttl_portfolios,
            "projects": settings.cache_ttl_projects,
            "project_details": settings.cache_ttl_project_details,
            "quotes": settings.cache_ttl_quotes,
            "search_results": settings.cache_ttl_search_results,
        }
        return ttl_map.get(cache_type, settings.cache_ttl_projects)

    # ═══════════════ SERIALIZATION ═══════════════

    def _encode(self, data: Any) -> str:
        raw = json.dumps(data, ensure_ascii=False, default=str)
        if not self.compression:
            return raw
        packed = base64.b64encode(gzip.compress(raw.encode("utf-8"))).decode("ascii")
        return json.dumps({"compressed": True, "data": packed})

    @staticmethod
    def _decode(stored: str) -> Any:
        value = json.loads(stored)
        if isinstance(value, dict) and value.get("compressed") is True and isinstance(value.get("data"), str):
            return json.loads(gzip.decompress(base64.b64decode(value["data"])).decode("utf-8"))
        return value

    # ═══════════════ RAW GET / SET ═══════════════

    async def get(self, key: str) -> Any:
        """Read from cache. Returns None on miss."""
        if not self.enable_cache:
            return None

        # Try Redis
        if self._available and self._redis:
            try:
                stored = await self._redis.get(key)
                if stored:
                    logger.info("Cache HIT (Redis) | key=%s", key[:60])
                    return self._decode(stored)
            except Exception as e:
                logger.debug("Redis GET error: %s", str(e)[:100])

        # Try in-memory fallback
        entry = self._fallback.get(key)
        if entry:
            logger.info("Cache HIT (memory) | key=%s", key[:60])
            return self._decode(entry[1])

        return None

    async def set(
        self,
        key: str,
        data: Any,
        ttl: int | None = None,
        cache_type: str = "",
        vendor: str = "",
    ) -> bool:
        """Write to cache with TTL. Empty data is not cached."""
        if not self.enable_cache or not data:
            return False

        ttl = ttl or self.get_ttl(cache_type)
        stored = self._encode(data)

        # Write to Redis
        if self._available and self._redis:
            try:
                await self._redis.setex(key, ttl, stored)
                logger.info("Cache SET (Redis) | key=%s | ttl=%ds", key[:60], ttl)
            except Exception as e:
                logger.debug("Redis SET error: %s", str(e)[:100])

        # Always write to in-memory fallback too
        self._fallback[key] = (ttl, stored)

        now = time.time()
        self._update_metadata(key, {
            "type": cache_type,
            "vendor": vendor,
            "count": len(data) if isinstance(data, (list, dict)) else 1,
            "size": len(stored),
            "cached_at": now,
            "expires_at": now + ttl,
        })
        return True

    async def delete(self, key: str):
        if self._available and self._redis:
            try:
                await self._redis.delete(key)
            except Exception as e:
                logger.debug("Redis DELETE error: %s", str(e)[:100])
        self._fallback.pop(key, None)
        self._metadata.pop(key, None)

    def _update_metadata(self, key: str, entry: dict[str, Any]):
        self._metadata[key] = entry
        if len(self._metadata) > self.max_cache_size:
            newest = sorted(self._metadata.items(), key=lambda kv: kv[1].get("cached_at", 0))
            self._metadata = dict(newest[-self.max_cache_size:])

    def get_metadata(self, key: str) -> dict[str, Any] | None:
        return self._metadata.get(key)

    # ═══════════════ TYPED HELPERS ═══════════════

    async def get_portfolios(self, vendor: str | None = None) -> list[Portfolio] | None:
        data = await self.get(self.make_key("portfolios", vendor))
        return [Portfolio(**p) for p in data] if data else None

    async def cache_portfolios(self, portfolios: list[Portfolio], vendor: str | None = None, ttl: int | None = None) -> bool:
        return await self.set(
            self.make_key("portfolios", vendor),
            [p.model_dump(mode="json") for p in portfolios],
            ttl, cache_type="portfolios", vendor=vendor or "",
        )

    async def get_projects(self, vendor: str | None = None, filters: dict | None = None) -> list[Project] | None:
        data = await self.get(self.make_key("projects", vendor, filters or None))
        return [Project(**p) for p in data] if data else None

    async def cache_projects(
        self,
        projects: list[Project],
        vendor: str | None = None,
        filters: dict | None = None,
        ttl: int | None = None,
    ) -> bool:
        return await self.set(
            self.make_key("projects", vendor, filters or None),
            [p.model_dump(mode="json") for p in projects],
            ttl, cache_type="projects", vendor=vendor or "",
        )

    async def get_project(self, vendor: str, project_id: str) -> Project | None:
        data = await self.get(self.make_key("project_details", vendor, project_id))
        return Project(**data) if data else None

    async def cache_project(self, project: Project, ttl: int | None = None) -> bool:
        return await self.set(
            self.make_key("project_details", project.vendor, project.id),
            project.model_dump(mode="json"),
            ttl, cache_type="project_details", vendor=project.vendor,
        )

    async def get_search_results(self, params: dict) -> dict | None:
        return await self.get(self.make_key("search_results", None, params))

    async def cache_search_results(self, params: dict, results: dict, ttl: int | None = None) -> bool:
        return await self.set(
            self.make_key("search_results", None, params),
            results, ttl, cache_type="search_results",
        )

    async def get_quote(self, params: dict) -> Quote | None:
        data = await self.get(self.make_key("quotes", None, params))
        return Quote(**data) if data else None

    async def cache_quote(self, params: dict, quote: Quote, ttl: int | None = None) -> bool:
        return await self.set(
            self.make_key("quotes", None, params),
            quote.model_dump(mode="json"),
            ttl, cache_type="quotes", vendor=quote.vendor,
        )

    # ═══════════════ INVALIDATION ═══════════════

    async def invalidate_cache(self, pattern: str) -> int:
        """Delete keys matching a glob pattern relative to the prefix."""
        glob = self.prefix + pattern
        deleted: set[str] = set()

        if self._available and self._redis:
            try:
                keys = []
                async for key in self._redis.scan_iter(match=glob):
                    keys.append(key)
                if keys:
                    await self._redis.delete(*keys)
                deleted.update(keys)
            except Exception as e:
                logger.debug("Redis invalidate error: %s", str(e)[:100])

        for key in [k for k in list(self._fallback.keys()) if fnmatch.fnmatchcase(k, glob)]:
            self._fallback.pop(key, None)
            deleted.add(key)

        for key in [k for k in self._metadata if fnmatch.fnmatchcase(k, glob)]:
            del self._metadata[key]

        if deleted:
            logger.info("Cache invalidated %d keys matching '%s'", len(deleted), glob)
        return len(deleted)

    async def invalidate_all_cache(self) -> int:
        return await self.invalidate_cache("*")

    async def invalidate_vendor_cache(self, vendor: str) -> int:
        return await self.invalidate_cache(f"*_{vendor}_*") + await self.invalidate_cache(f"*_{vendor}")

    async def invalidate_cache_by_type(self, cache_type: str) -> int:
        return await self.invalidate_cache(f"{cache_type}*")

    # ═══════════════ STATS / MAINTENANCE ═══════════════

    def get_cache_stats(self) -> dict[str, Any]:
        now = time.time()
        types: dict[str, int] = {}
        vendors: dict[str, int] = {}
        total_size = 0
        expired = 0
        for entry in self._metadata.values():
            types[entry.get("type") or "unknown"] = types.get(entry.get("type") or "unknown", 0) + 1
            if entry.get("vendor"):
                vendors[entry["vendor"]] = vendors.get(entry["vendor"], 0) + 1
            total_size += entry.get("size", 0)
            if entry.get("expires_at", 0) < now:
                expired += 1
        return {
            "total_entries": len(self._metadata),
            "types": types,
            "vendors": vendors,
            "total_size": total_size,
            "expired_entries": expired,
            "backend": self.backend,
            "enabled": self.enable_cache,
        }

    async def cleanup_expired_cache(self) -> int:
        """Drop metadata (and any leftover values) for expired keys."""
        now = time.time()
        expired = [k for k, v in self._metadata.items() if v.get("expires_at", 0) < now]
        for key in expired:
            await self.delete(key)
        self._fallback.expire()
        if expired:
            logger.info("Cache cleanup removed %d expired entries", len(expired))
        return len(expired)

    async def warm_cache(
        self,
        sources: dict[str, dict[str, Callable[[], Awaitable[list]]]],
    ) -> dict[str, dict[str, Any]]:
        """Run loaders and cache their output.

        `sources` maps type → vendor → async loader, e.g.
        {"portfolios": {"cnaught": client.get_portfolios}}.
        """
        results: dict[str, dict[str, Any]] = {}
        for cache_type, loaders in sources.items():
            for vendor, loader in loaders.items():
                label = f"{cache_type}_{vendor}"
                try:
                    data = await loader()
                    if cache_type == "portfolios":
                        await self.cache_portfolios(data, vendor)
                    elif cache_type == "projects":
                        await self.cache_projects(data, vendor)
                    else:
                        await self.set(self.make_key(cache_type, vendor), data, cache_type=cache_type, vendor=vendor)
                    results[label] = {"success": True, "count": len(data)}
                except Exception as e:
                    logger.warning("Cache warm failed | %s | %s", label, str(e)[:200])
                    results[label] = {"success": False, "error": str(e)[:200]}
        return results


# Singleton instance
cache_manager = CacheManager()
