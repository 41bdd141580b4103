"""
Reverse Geocoding with Caching and Retries

Maps device coordinates to a readable street address through a
Nominatim-compatible /reverse endpoint.

- GeoCache: thread-safe TTL cache keyed by coordinates rounded to 4 places
- ReverseGeocoder: bounded retries with exponential backoff, a fixed delay
  before every request, and a "Location (lat, lon)" fallback

Provider failures never reach the caller: the address is advisory.
"""

import logging
import math
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

import requests
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from errors import GeocodingError
from models import GeoCacheEntry


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIG
# =============================================================================

NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
USER_AGENT = "CivicFixApp/1.0"

CACHE_TTL_SECONDS = 24 * 60 * 60
CACHE_MAX_SIZE = 1000
CACHE_SWEEP_EVERY = 50

REQUEST_TIMEOUT = 8.0
DEFAULT_RETRIES = 2
RATE_LIMIT_DELAY = 0.5
BACKOFF_INITIAL = 1.0
BACKOFF_MAX = 5.0

ADDRESS_NOT_AVAILABLE = "Address not available"


# =============================================================================
# CACHE
# =============================================================================

def get_cache_key(latitude: float, longitude: float) -> str:
    """Rounds to 4 decimal places (~11 m) so nearby reports share an entry."""
    return f"{float(latitude):.4f},{float(longitude):.4f}"


class GeoCache:
    """
    In-memory address cache shared by all requests of one process.

    Insertion order doubles as age order, so size eviction drops the
    oldest entries first. All map access happens under one lock; callers
    never hold it while talking to the network.
    """

    def __init__(
        self,
        ttl: float = CACHE_TTL_SECONDS,
        max_size: int = CACHE_MAX_SIZE,
        sweep_every: int = CACHE_SWEEP_EVERY,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.max_size = max_size
        self.sweep_every = sweep_every
        self.clock = clock
        self._entries: "OrderedDict[str, GeoCacheEntry]" = OrderedDict()
        self._inserts = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not entry.is_fresh(self.clock(), self.ttl):
                del self._entries[key]
                return None
            return entry.address

    def set(self, key: str, address: str) -> None:
        with self._lock:
            # Re-inserting moves the key to the young end
            self._entries.pop(key, None)
            self._entries[key] = GeoCacheEntry(address=address, created_at=self.clock())
            self._inserts += 1

            if self._inserts % self.sweep_every == 0 or len(self._entries) > self.max_size:
                self._sweep_locked()

    def sweep(self) -> int:
        """Drop expired entries, then trim to size. Returns entries removed."""
        with self._lock:
            return self._sweep_locked()

    def _sweep_locked(self) -> int:
        now = self.clock()
        expired = [k for k, e in self._entries.items() if not e.is_fresh(now, self.ttl)]
        for key in expired:
            del self._entries[key]

        evicted = 0
        if len(self._entries) > self.max_size:
            to_evict = len(self._entries) - self.max_size + max(self.max_size // 10, 1)
            while evicted < to_evict and self._entries:
                self._entries.popitem(last=False)
                evicted += 1
            logger.info("Geocoding cache evicted %d old entries", evicted)

        return len(expired) + evicted

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._entries)
        return {
            "size": size,
            "max_size": self.max_size,
            "ttl_hours": self.ttl / 3600,
        }


# =============================================================================
# FORMATTING
# =============================================================================

def format_coordinates_as_address(latitude: float, longitude: float) -> str:
    """Fallback address used when the provider cannot be reached."""
    return f"Location ({latitude:.4f}, {longitude:.4f})"


def format_address(payload: Dict[str, Any]) -> str:
    """
    Build a readable address from a provider response.

    Picks the best field of each level: street, neighbourhood, city,
    state, country, postcode. Falls back to the free-text display_name.
    """
    address = payload.get("address") or {}
    parts = []

    # Building/Street level
    if address.get("house_number") and address.get("road"):
        parts.append(f"{address['house_number']} {address['road']}")
    elif address.get("road"):
        parts.append(address["road"])
    elif address.get("pedestrian"):
        parts.append(address["pedestrian"])

    # Neighbourhood/Suburb
    if address.get("suburb"):
        parts.append(address["suburb"])
    elif address.get("neighbourhood"):
        parts.append(address["neighbourhood"])

    # City/Town
    for key in ("city", "town", "village"):
        if address.get(key):
            parts.append(address[key])
            break

    for key in ("state", "country", "postcode"):
        if address.get(key):
            parts.append(address[key])

    if parts:
        return ", ".join(str(p) for p in parts)

    return payload.get("display_name") or ADDRESS_NOT_AVAILABLE


# =============================================================================
# GEOCODER
# =============================================================================

class ReverseGeocoder:
    """Resolves numeric coordinates to an address; provider failures never raise."""

    def __init__(
        self,
        cache: GeoCache,
        *,
        url: str = NOMINATIM_REVERSE_URL,
        user_agent: str = USER_AGENT,
        timeout: float = REQUEST_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        rate_limit_delay: float = RATE_LIMIT_DELAY,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cache = cache
        self.url = url
        self.user_agent = user_agent
        self.timeout = timeout
        self.retries = retries
        self.rate_limit_delay = rate_limit_delay
        self.session = session or requests.Session()
        self._sleep = sleep

    def close(self) -> None:
        self.session.close()

    def reverse(self, latitude: float, longitude: float) -> str:
        """Reverse geocode with cache, retries and fallback. Coordinates must be numeric."""
        lat = float(latitude)
        lon = float(longitude)

        if not (math.isfinite(lat) and math.isfinite(lon)):
            return format_coordinates_as_address(lat, lon)

        cache_key = get_cache_key(lat, lon)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug("Geocoding cache hit for %s", cache_key)
            return cached

        retrying = Retrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=BACKOFF_INITIAL, max=BACKOFF_MAX),
            retry=retry_if_exception_type(GeocodingError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            address = retrying(self._perform_geocode, lat, lon)
        except GeocodingError as e:
            logger.error("Geocoding failed after %d attempts: %s", self.retries + 1, e)
            address = format_coordinates_as_address(lat, lon)

        # Fallbacks are cached too so a failing cell does not hammer the provider
        self.cache.set(cache_key, address)
        return address

    def _perform_geocode(self, latitude: float, longitude: float) -> str:
        """One request to the provider. Raises GeocodingError on any failure."""
        self._sleep(self.rate_limit_delay)

        params = {
            "format": "json",
            "lat": latitude,
            "lon": longitude,
            "zoom": 18,
            "addressdetails": 1,
        }
        headers = {
            "User-Agent": self.user_agent,
            "Accept-Language": "en",
        }

        try:
            response = self.session.get(
                self.url, params=params, headers=headers, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise GeocodingError("Geocoding request timeout") from e
        except requests.RequestException as e:
            raise GeocodingError(f"Network error: {e}") from e

        status = response.status_code
        if status == 429:
            raise GeocodingError("Geocoder rate limited (429)")
        if status == 503:
            raise GeocodingError("Geocoder service unavailable (503)")
        if status != 200:
            raise GeocodingError(f"Geocoder returned {status}")

        try:
            payload = response.json()
        except ValueError as e:
            raise GeocodingError("Failed to parse geocoding response") from e

        if not isinstance(payload, dict):
            raise GeocodingError("Unexpected geocoding response shape")
        if payload.get("error"):
            raise GeocodingError(f"Geocoder error: {payload['error']}")

        return format_address(payload)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            "Geocoding attempt %d/%d failed. Retrying in %.0fms... Error: %s",
            retry_state.attempt_number,
            self.retries + 1,
            delay * 1000,
            exc,
        )
