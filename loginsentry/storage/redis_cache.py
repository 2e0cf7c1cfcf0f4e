from __future__ import annotations

import json
import threading
import time
from typing import Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from loginsentry.storage.models import GeoLocation

_GEO_PREFIX = "geo:ip:"


def _encode_geo(location: GeoLocation) -> str:
    return json.dumps(
        {
            "country": location.country,
            "city": location.city,
            "latitude": location.latitude,
            "longitude": location.longitude,
        }
    )


def _decode_geo(raw: Optional[str]) -> Optional[GeoLocation]:
    if not raw:
        return None
    try:
        return GeoLocation(**json.loads(raw))
    except (json.JSONDecodeError, TypeError):
        return None


class RedisCache:
    """Thin Redis wrapper for geolocation lookups."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_geo_location(self, ip: str) -> Optional[GeoLocation]:
        return _decode_geo(await self.client.get(f"{_GEO_PREFIX}{ip}"))

    async def set_geo_location(self, ip: str, location: GeoLocation, ttl_seconds: int) -> None:
        await self.client.set(f"{_GEO_PREFIX}{ip}", _encode_geo(location), ex=max(1, ttl_seconds))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues in pytest,
    but exposes the same awaitable methods as :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get_geo_location(self, ip: str) -> Optional[GeoLocation]:
        return _decode_geo(self._sync_client.get(f"{_GEO_PREFIX}{ip}"))

    async def set_geo_location(self, ip: str, location: GeoLocation, ttl_seconds: int) -> None:
        self._sync_client.set(f"{_GEO_PREFIX}{ip}", _encode_geo(location), ex=max(1, ttl_seconds))

    def close_sync(self) -> None:
        self._sync_client.close()

    async def close(self) -> None:
        self.close_sync()


class LocalGeoCache:
    """Process-local TTL cache used when Redis is not available."""

    def __init__(self, *, max_entries: int = 10_000):
        self._entries: Dict[str, Tuple[float, GeoLocation]] = {}
        self._lock = threading.Lock()
        self._max_entries = max_entries

    async def get_geo_location(self, ip: str) -> Optional[GeoLocation]:
        with self._lock:
            entry = self._entries.get(ip)
            if entry is None:
                return None
            expires_at, location = entry
            if time.monotonic() >= expires_at:
                self._entries.pop(ip, None)
                return None
            return location

    async def set_geo_location(self, ip: str, location: GeoLocation, ttl_seconds: int) -> None:
        with self._lock:
            if len(self._entries) >= self._max_entries:
                # Drop the entry closest to expiry
                oldest = min(self._entries, key=lambda key: self._entries[key][0])
                self._entries.pop(oldest, None)
            self._entries[ip] = (time.monotonic() + ttl_seconds, location)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
