"""
IP geolocation via ip-api.com with an in-process TTL cache.

The resolver never raises: private addresses, provider errors, timeouts and
malformed responses all come back as an all-null record so a degraded provider
only lowers enrichment quality.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from pixeltrack.core.config import settings

logger = logging.getLogger(__name__)

GEO_FIELDS = "status,message,country,countryCode,region,city,zip,lat,lon,timezone,isp"

# Addresses that never leave the process. Explicit list, not a catch-all.
_PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",  # "this network"; also the unknown-client sentinel
        "127.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)


@dataclass(frozen=True)
class GeoData:
    country: str | None = None
    country_code: str | None = None
    region: str | None = None
    city: str | None = None
    zip: str | None = None
    lat: float | None = None
    lon: float | None = None
    timezone: str | None = None
    isp: str | None = None


NULL_GEO = GeoData()


def is_private_ip(ip: str | None) -> bool:
    """True for loopback, RFC1918, link-local and unique-local addresses."""
    try:
        address = ipaddress.ip_address(str(ip or "").strip())
    except ValueError:
        return False
    if getattr(address, "ipv4_mapped", None) is not None:
        address = address.ipv4_mapped
    return any(address in network for network in _PRIVATE_NETWORKS if network.version == address.version)


class GeoCache:
    """
    Thread-safe IP -> GeoData cache with a fixed TTL.

    Expired entries are dropped lazily on read and by a sweep that runs once the
    cache grows past `sweep_threshold`. If a sweep cannot bring the size under
    `max_entries`, the oldest entries are evicted.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 3600,
        sweep_threshold: int = 10000,
        max_entries: int = 50000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self.sweep_threshold = max(1, int(sweep_threshold))
        self.max_entries = max(self.sweep_threshold, int(max_entries))
        self._clock = clock
        self._entries: dict[str, tuple[GeoData, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, ip: str) -> GeoData | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(ip)
            if entry is None:
                return None
            data, stored_at = entry
            if now - stored_at >= self.ttl_seconds:
                del self._entries[ip]
                return None
            return data

    def set(self, ip: str, data: GeoData) -> None:
        now = self._clock()
        with self._lock:
            # Re-insert so dict order stays oldest-first.
            self._entries.pop(ip, None)
            self._entries[ip] = (data, now)
            if len(self._entries) > self.sweep_threshold:
                self._sweep_locked(now)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _sweep_locked(self, now: float) -> int:
        expired = [ip for ip, (_, stored_at) in self._entries.items() if now - stored_at >= self.ttl_seconds]
        for ip in expired:
            del self._entries[ip]
        evicted = len(expired)
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            for ip in list(self._entries)[:overflow]:
                del self._entries[ip]
            evicted += overflow
        if evicted:
            logger.debug("Geo cache sweep evicted %s entries (%s remain)", evicted, len(self._entries))
        return evicted


def _clean_str(value: Any) -> str | None:
    text_value = str(value or "").strip()
    return text_value or None


def _clean_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def geo_from_response(data: dict[str, Any]) -> GeoData:
    return GeoData(
        country=_clean_str(data.get("country")),
        country_code=_clean_str(data.get("countryCode")),
        region=_clean_str(data.get("region")),
        city=_clean_str(data.get("city")),
        zip=_clean_str(data.get("zip")),
        lat=_clean_float(data.get("lat")),
        lon=_clean_float(data.get("lon")),
        timezone=_clean_str(data.get("timezone")),
        isp=_clean_str(data.get("isp")),
    )


class GeoResolver:
    """Resolves client IPs to coarse location data, best effort."""

    def __init__(
        self,
        cache: GeoCache | None = None,
        *,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        enabled: bool | None = None,
        http: Any = None,
    ) -> None:
        self.cache = cache if cache is not None else GeoCache(
            ttl_seconds=settings.GEO_CACHE_TTL_SECONDS,
            sweep_threshold=settings.GEO_CACHE_SWEEP_THRESHOLD,
            max_entries=settings.GEO_CACHE_MAX_ENTRIES,
        )
        self.base_url = (base_url or settings.GEO_API_BASE_URL).rstrip("/")
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else settings.GEO_LOOKUP_TIMEOUT_SECONDS
        )
        self.enabled = settings.GEO_LOOKUP_ENABLED if enabled is None else bool(enabled)
        self._http = http or requests

    def lookup(self, ip: str | None) -> GeoData:
        ip = str(ip or "").strip()
        if not self.enabled or not ip:
            return NULL_GEO
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            logger.debug("Skipping geo lookup for unparseable IP %r", ip[:64])
            return NULL_GEO
        if is_private_ip(ip):
            return NULL_GEO

        cached = self.cache.get(ip)
        if cached is not None:
            return cached

        data = self._fetch(ip)
        if data is None:
            return NULL_GEO
        self.cache.set(ip, data)
        return data

    def _fetch(self, ip: str) -> GeoData | None:
        try:
            response = self._http.get(
                f"{self.base_url}/json/{ip}",
                params={"fields": GEO_FIELDS},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout:
            logger.warning("Geo lookup timed out for %s after %.1fs", ip, self.timeout_seconds)
            return None
        except Exception as exc:
            logger.warning("Geo lookup error for %s: %s", ip, exc)
            return None

        if not 200 <= int(response.status_code) < 300:
            logger.warning("Geo lookup failed for %s: HTTP %s", ip, response.status_code)
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Geo lookup for %s returned a non-JSON body", ip)
            return None

        if not isinstance(payload, dict) or payload.get("status") != "success":
            logger.info(
                "Geo lookup for %s unsuccessful: %s",
                ip,
                payload.get("message") if isinstance(payload, dict) else "malformed response",
            )
            return None

        return geo_from_response(payload)


geo_resolver = GeoResolver()


def get_geo_resolver() -> GeoResolver:
    """Dependency returning the process-wide resolver."""
    return geo_resolver
