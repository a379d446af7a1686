from __future__ import annotations

import ipaddress
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from guardian.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GeoLocation:
    country: str
    city: str


LOCAL = GeoLocation("Local", "Local")
UNKNOWN = GeoLocation("Unknown", "Unknown")

_STATIC_LOCATIONS: Dict[str, GeoLocation] = {
    "8.8.8.8": GeoLocation("US", "Mountain View"),
    "8.8.4.4": GeoLocation("US", "Mountain View"),
    "1.1.1.1": GeoLocation("US", "San Francisco"),
    "1.0.0.1": GeoLocation("US", "San Francisco"),
    "208.67.222.222": GeoLocation("US", "San Francisco"),
}

_MAX_CACHED_LOOKUPS = 4096


class GeoResolver:
    """Best-effort country and city lookup for client addresses.

    Loopback and private ranges resolve to ``Local``. Well-known public
    resolvers come from a static table. Anything else is looked up over HTTP
    when ``lookup_url`` is configured. Lookup failures resolve to ``Unknown``
    and are never raised.
    """

    def __init__(
        self,
        lookup_url: Optional[str] = None,
        *,
        timeout: float = 2.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.lookup_url = lookup_url
        self.timeout = timeout
        self._client = client
        self._cache: Dict[str, GeoLocation] = {}
        self._lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        with self._lock:
            if self._client is None:
                self._client = httpx.Client(
                    timeout=httpx.Timeout(self.timeout, connect=self.timeout),
                    follow_redirects=False,
                )
            return self._client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    @staticmethod
    def normalize(address: Optional[str]) -> Optional[str]:
        if not address:
            return None
        address = address.strip()
        if address in {"::1", "0:0:0:0:0:0:0:1"}:
            return "127.0.0.1"
        return address

    def locate(self, address: Optional[str]) -> GeoLocation:
        address = self.normalize(address)
        if not address or address == "unknown":
            return UNKNOWN
        if address == "localhost":
            return LOCAL
        try:
            parsed = ipaddress.ip_address(address)
        except ValueError:
            return UNKNOWN
        if parsed.is_loopback or parsed.is_private or parsed.is_link_local:
            return LOCAL
        static = _STATIC_LOCATIONS.get(address)
        if static:
            return static
        if not self.lookup_url:
            return UNKNOWN
        with self._lock:
            cached = self._cache.get(address)
        if cached:
            return cached
        location = self._lookup(address)
        if location is not UNKNOWN:
            with self._lock:
                if len(self._cache) >= _MAX_CACHED_LOOKUPS:
                    self._cache.clear()
                self._cache[address] = location
        return location

    def _lookup(self, address: str) -> GeoLocation:
        url = self.lookup_url.format(ip=address)
        try:
            response = self._get_client().get(url)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "geo_lookup_http_error", status_code=exc.response.status_code, ip=address
            )
            return UNKNOWN
        except httpx.HTTPError as exc:
            logger.warning("geo_lookup_failed", error=str(exc), ip=address)
            return UNKNOWN
        except ValueError as exc:
            logger.warning("geo_lookup_bad_payload", error=str(exc), ip=address)
            return UNKNOWN
        if not isinstance(data, dict):
            return UNKNOWN
        country = data.get("country_name") or data.get("country")
        city = data.get("city")
        if not country:
            return UNKNOWN
        return GeoLocation(str(country), str(city or "Unknown"))


__all__ = ["GeoLocation", "GeoResolver", "LOCAL", "UNKNOWN"]
