from __future__ import annotations

import ipaddress
from typing import Mapping, Optional, Protocol

import httpx

from loginsentry.config import Settings
from loginsentry.logging import get_logger
from loginsentry.storage.models import DeviceInfo, GeoLocation

logger = get_logger(__name__)

UNKNOWN_IP = "Unknown"

# Checked in order; the first header carrying a value wins
_CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip", "true-client-ip")

# Order matters: Edge and Opera advertise Chrome, Chrome advertises Safari
_BROWSER_RULES = (
    (("Edg/", "Edge/"), "Edge"),
    (("OPR/", "Opera"), "Opera"),
    (("Firefox/", "FxiOS/"), "Firefox"),
    (("Chrome/", "CriOS/"), "Chrome"),
    (("Safari/",), "Safari"),
    (("MSIE ", "Trident/"), "Internet Explorer"),
)

_OS_RULES = (
    (("Windows",), "Windows"),
    (("Android",), "Android"),
    (("iPhone", "iPad", "iPod"), "iOS"),
    (("Mac OS X", "Macintosh"), "macOS"),
    (("CrOS",), "ChromeOS"),
    (("Linux",), "Linux"),
)


def extract_client_ip(
    headers: Mapping[str, str],
    remote_addr: Optional[str],
    *,
    trust_proxy_headers: bool = True,
) -> str:
    """Resolve the originating client address of a request.

    Proxy headers are consulted in priority order (the first entry of
    ``X-Forwarded-For`` is the original client), then the socket peer.
    """
    if trust_proxy_headers:
        lowered = {key.lower(): value for key, value in headers.items()}
        for header in _CLIENT_IP_HEADERS:
            raw = lowered.get(header)
            if not raw:
                continue
            candidate = raw.split(",")[0].strip()
            if candidate:
                return candidate
    return remote_addr or UNKNOWN_IP


def _first_match(user_agent: str, rules) -> Optional[str]:
    for needles, label in rules:
        if any(needle in user_agent for needle in needles):
            return label
    return None


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    if not user_agent:
        return DeviceInfo()
    browser = _first_match(user_agent, _BROWSER_RULES) or "Unknown"
    os_name = _first_match(user_agent, _OS_RULES) or "Unknown"
    if "iPad" in user_agent or "Tablet" in user_agent:
        device_type = "tablet"
    elif any(token in user_agent for token in ("Mobi", "iPhone", "Android")):
        device_type = "mobile"
    else:
        device_type = "desktop"
    return DeviceInfo(browser=browser, os=os_name, device_type=device_type, user_agent=user_agent)


def is_public_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_reserved
        or addr.is_multicast
        or addr.is_unspecified
    )


class GeoCache(Protocol):
    async def get_geo_location(self, ip: str) -> Optional[GeoLocation]: ...

    async def set_geo_location(self, ip: str, location: GeoLocation, ttl_seconds: int) -> None: ...


class GeoResolver(Protocol):
    async def resolve(self, ip: str) -> Optional[GeoLocation]: ...


class StaticGeoResolver:
    """Resolver backed by a fixed address table; unknown addresses resolve to ``None``."""

    def __init__(self, table: Optional[Mapping[str, GeoLocation]] = None):
        self.table = dict(table or {})

    async def resolve(self, ip: str) -> Optional[GeoLocation]:
        return self.table.get(ip)


class IpApiGeoResolver:
    """Resolve public addresses through the ip-api.com JSON endpoint.

    Results are cached; private, loopback and malformed addresses are never
    looked up. Any lookup failure (timeout, transport error, ``status: fail``)
    yields ``None`` so callers simply skip location-based checks.
    """

    _FIELDS = "status,message,country,countryCode,region,city,lat,lon"

    def __init__(
        self,
        settings: Settings,
        cache: GeoCache,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url_template = settings.geo_lookup_url
        self.timeout = settings.geo_lookup_timeout_seconds
        self.cache_ttl = settings.geo_cache_ttl_seconds
        self.enabled = settings.geo_lookup_enabled
        self.cache = cache
        self._transport = transport

    async def resolve(self, ip: str) -> Optional[GeoLocation]:
        if not is_public_ip(ip):
            return None
        try:
            cached = await self.cache.get_geo_location(ip)
        except Exception as exc:
            logger.warning("geo_cache_read_failed", ip=ip, error=str(exc))
            cached = None
        if cached is not None:
            return cached
        if not self.enabled:
            return None

        location = await self._lookup(ip)
        if location is not None:
            try:
                await self.cache.set_geo_location(ip, location, self.cache_ttl)
            except Exception as exc:
                logger.warning("geo_cache_write_failed", ip=ip, error=str(exc))
        return location

    async def _lookup(self, ip: str) -> Optional[GeoLocation]:
        url = self.url_template.format(ip=ip)
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.get(url, params={"fields": self._FIELDS})
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as exc:
            logger.warning("geo_lookup_timeout", ip=ip, error=str(exc))
            return None
        except httpx.HTTPError as exc:
            logger.warning("geo_lookup_failed", ip=ip, error_type=type(exc).__name__, error=str(exc))
            return None
        except ValueError as exc:
            logger.warning("geo_lookup_bad_payload", ip=ip, error=str(exc))
            return None

        if not isinstance(payload, dict):
            logger.warning("geo_lookup_bad_payload", ip=ip, payload_type=type(payload).__name__)
            return None
        if payload.get("status") != "success":
            logger.info("geo_lookup_no_result", ip=ip, message=payload.get("message"))
            return None
        return GeoLocation(
            country=payload.get("countryCode") or payload.get("country"),
            city=payload.get("city"),
            latitude=payload.get("lat"),
            longitude=payload.get("lon"),
        )
