"""
Report cache.

Short-lived cache in front of the financial reporting queries. Each
ReportingAggregator owns one ReportCache; there is no module-level store.

Invalidation is all-or-nothing: aggregate queries can span arbitrary date
ranges, so any ledger write clears the whole cache.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def make_cache_key(namespace: str, params: Dict[str, Any]) -> str:
    """Stable key for a query namespace and its filter parameters."""
    normalized = {k: v for k, v in sorted(params.items()) if v is not None}
    return f"{namespace}:{json.dumps(normalized, sort_keys=True, default=str)}"


class MemoryCacheBackend:
    """In-process TTL map, private to one cache instance."""

    def __init__(self):
        self._store: Dict[str, dict] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if not entry:
            return None

        if datetime.utcnow() > entry["expires_at"]:
            del self._store[key]
            return None

        return entry["data"]

    async def set(self, key: str, data: Any, ttl_seconds: int):
        self._store[key] = {
            "data": data,
            "expires_at": datetime.utcnow() + timedelta(seconds=ttl_seconds)
        }

    async def clear(self):
        self._store.clear()

    def __len__(self):
        return len(self._store)


class RedisCacheBackend:
    """
    Redis-backed cache shared between worker processes.

    Keys embed a generation number; clearing bumps the generation with a
    single INCR so stale entries are never read again and simply expire.
    Values must be JSON-serializable.
    """

    def __init__(self, redis_client, prefix: str = "finance-report"):
        self.redis = redis_client
        self.prefix = prefix
        self.generation_key = f"{prefix}:generation"

    async def _generation(self) -> str:
        generation = await self.redis.get(self.generation_key)
        return str(generation or 0)

    async def _key(self, key: str) -> str:
        return f"{self.prefix}:{await self._generation()}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis.get(await self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, data: Any, ttl_seconds: int):
        await self.redis.set(await self._key(key), json.dumps(data, default=str), ex=ttl_seconds)

    async def clear(self):
        await self.redis.incr(self.generation_key)


class ReportCache:
    """
    Cache facade used by the reporting aggregator.

    Backend errors are logged and treated as misses, so a cache outage
    degrades to uncached reads instead of failing the report.
    """

    def __init__(self, backend, ttl_seconds: int = 300):
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    async def get(self, key: str) -> Optional[Any]:
        try:
            return await self.backend.get(key)
        except Exception as e:
            logger.warning("Report cache read failed for %s: %s", key, e)
            return None

    async def set(self, key: str, data: Any):
        try:
            await self.backend.set(key, data, self.ttl_seconds)
        except Exception as e:
            logger.warning("Report cache write failed for %s: %s", key, e)

    async def clear(self):
        await self.backend.clear()
        logger.info("Report cache cleared")


def build_report_cache(settings, redis_client=None) -> ReportCache:
    """Create the report cache selected by configuration."""
    if settings.report_cache_backend == "redis":
        if redis_client is None:
            from backend.app.core.redis_client import redis_client
        backend = RedisCacheBackend(redis_client)
    else:
        backend = MemoryCacheBackend()
    return ReportCache(backend, ttl_seconds=settings.report_cache_ttl_seconds)
