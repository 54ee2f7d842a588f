"""
Optional fact-checking for itinerary events (OpenStreetMap Nominatim + Wikipedia).

Checks that a place exists, how far it is from the trip centre, and whether
the model's price looks plausible.  Everything here is best-effort
enrichment: a failed lookup returns ``{"verified": False}`` and never
raises into the itinerary pipeline.

Both public endpoints ask for light usage, so every outbound call goes
through a minimum-interval rate limiter, and answers are kept in a TTL
cache owned by the checker (cleared when the app shuts down).

Usage (from main):
    checker = FactChecker()
    result = checker.validate_location("Belem Tower", {"lat": 38.72, "lng": -9.14})
"""

from __future__ import annotations

import logging
import math
import os
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

import requests

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_NOMINATIM_SEARCH_URL = "https://nominatim.openstreetmap.org/search"
_NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
_WIKIPEDIA_API_URL = "https://en.wikipedia.org/w/api.php"

MAX_DISTANCE_KM = 50
EARTH_RADIUS_KM = 6371


def _user_agent() -> str:
    # Nominatim rejects requests without an explicit User-Agent
    return os.getenv("FACT_CHECK_USER_AGENT", "trip-planner/1.0 (fact-check)")


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in km."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2))
         * math.sin(d_lon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


# ---------------------------------------------------------------------------
# Rate limiting + caching
# ---------------------------------------------------------------------------

class RateLimiter:
    """Blocks until at least ``min_interval`` seconds passed since the last call."""

    def __init__(self, min_interval: float = 1.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None
        self._lock = threading.Lock()

    def wait(self) -> None:
        with self._lock:
            now = self._clock()
            if self._last_call is not None:
                remaining = self.min_interval - (now - self._last_call)
                if remaining > 0:
                    self._sleep(remaining)
                    now = self._clock()
            self._last_call = now


class TTLCache:
    """Small in-memory cache: entries expire after ``ttl`` seconds, oldest evicted when full."""

    def __init__(self, ttl: float = 3600, max_entries: int = 512,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._data: "OrderedDict[str, tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            now = self._clock()
            self._data[key] = (now, value)
            self._data.move_to_end(key)
            if len(self._data) > self.max_entries:
                # Expired entries go first, then the oldest live ones
                self._drop_expired(now)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def _drop_expired(self, now: float) -> int:
        expired = [k for k, (t, _) in self._data.items() if now - t > self.ttl]
        for key in expired:
            del self._data[key]
        return len(expired)

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        with self._lock:
            return self._drop_expired(self._clock())

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


# ---------------------------------------------------------------------------
# Price helpers
# ---------------------------------------------------------------------------

def _prices(estimates: Dict[str, Any]) -> list[float]:
    return [float(p) for p in estimates.values()
            if isinstance(p, (int, float)) and not isinstance(p, bool) and p]


def average_price(estimates: Dict[str, Any]) -> float:
    """Rounded mean of the usable estimates, or the provided cost if none."""
    prices = _prices(estimates)
    if not prices:
        provided = estimates.get("provided")
        return provided if isinstance(provided, (int, float)) else 0
    return round(sum(prices) / len(prices))


def price_confidence(estimates: Dict[str, Any]) -> str:
    """high / medium / low from the coefficient of variation across sources."""
    prices = _prices(estimates)
    if len(prices) < 2:
        return "low"
    avg = average_price(estimates)
    if not avg:
        return "low"
    variance = sum((p - avg) ** 2 for p in prices) / len(prices)
    variation = math.sqrt(variance) / avg * 100
    if variation < 15:
        return "high"
    if variation < 30:
        return "medium"
    return "low"


def _parse_fee(fee: Any) -> Optional[float]:
    """OSM ``fee`` tags are free text ('yes', '5 EUR', '12'); keep the number if any."""
    if not isinstance(fee, str):
        return None
    digits = "".join(ch for ch in fee if ch.isdigit() or ch == ".")
    try:
        return float(digits) if digits else None
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Core public API
# ---------------------------------------------------------------------------

class FactChecker:
    """Location / price plausibility checks with rate limiting and caching."""

    def __init__(self, rate_limiter: Optional[RateLimiter] = None,
                 cache: Optional[TTLCache] = None,
                 session: Optional[requests.Session] = None,
                 timeout: float = 10):
        self.rate_limiter = rate_limiter or RateLimiter(
            float(os.getenv("FACT_CHECK_MIN_INTERVAL", "1.0")))
        self.cache = cache or TTLCache(float(os.getenv("FACT_CHECK_CACHE_TTL", "3600")))
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = _user_agent()
        self.session = session
        self.timeout = timeout

    def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        self.rate_limiter.wait()
        resp = self.session.get(url, params=params, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def validate_location(self, name: str, center: Dict[str, float]) -> Dict[str, Any]:
        """Check a place exists and lies within MAX_DISTANCE_KM of *center*."""
        cache_key = f"location:{name}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            hits = self._get_json(_NOMINATIM_SEARCH_URL, {
                "q": name, "format": "json", "limit": 1,
                "addressdetails": 1, "extratags": 1,
            })
            if not hits:
                return {"exists": False, "verified": False}

            coords = {"lat": float(hits[0]["lat"]), "lng": float(hits[0]["lon"])}
            distance = haversine_km(center["lat"], center["lng"],
                                    coords["lat"], coords["lng"])
            result = {
                "exists": True,
                "tooFar": distance > MAX_DISTANCE_KM,
                "distance": distance,
                "coordinates": coords,
                **self.get_location_details(name, coords),
                "verified": True,
            }
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            log.warning("Location check failed for %r: %s", name, exc)
            return {"verified": False}

        self.cache.set(cache_key, result)
        return result

    def get_location_details(self, name: str, coords: Dict[str, float]) -> Dict[str, Any]:
        try:
            data = self._get_json(_NOMINATIM_REVERSE_URL, {
                "lat": coords["lat"], "lon": coords["lng"],
                "format": "json", "extratags": 1,
            })
        except (requests.RequestException, ValueError) as exc:
            log.warning("Reverse lookup failed for %r: %s", name, exc)
            return {}

        extratags = data.get("extratags") or {}
        return {
            "type": data.get("type"),
            "category": data.get("category"),
            "opening_hours": extratags.get("opening_hours"),
            "website": extratags.get("website"),
            "phone": extratags.get("phone"),
            "wheelchair": extratags.get("wheelchair"),
            "description": self.get_wiki_description(name),
        }

    def get_wiki_description(self, name: str) -> Optional[str]:
        """Intro extract of the Wikipedia article titled *name*, or None."""
        cache_key = f"wiki:{name}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached or None

        try:
            data = self._get_json(_WIKIPEDIA_API_URL, {
                "action": "query", "format": "json", "prop": "extracts",
                "exintro": 1, "explaintext": 1, "titles": name,
            })
            pages = data["query"]["pages"]
            extract = next(iter(pages.values()), {}).get("extract") or None
        except (requests.RequestException, ValueError, KeyError) as exc:
            log.warning("Wikipedia lookup failed for %r: %s", name, exc)
            return None

        self.cache.set(cache_key, extract or "")
        return extract

    def get_osm_price(self, name: str) -> Optional[float]:
        try:
            hits = self._get_json(_NOMINATIM_SEARCH_URL, {
                "q": name, "format": "json", "extratags": 1,
            })
        except (requests.RequestException, ValueError) as exc:
            log.warning("OSM price lookup failed for %r: %s", name, exc)
            return None
        if not hits:
            return None
        return _parse_fee((hits[0].get("extratags") or {}).get("fee"))

    def validate_price(self, activity: Dict[str, Any]) -> Dict[str, Any]:
        """Compare the model's cost with OSM fee data."""
        name = activity.get("name", "")
        cache_key = f"price:{name}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        estimates = {"provided": activity.get("cost"), "osm": self.get_osm_price(name)}
        result = {
            "verified": True,
            "suggestedPrice": average_price(estimates),
            "priceConfidence": price_confidence(estimates),
        }
        self.cache.set(cache_key, result)
        return result

    def close(self) -> None:
        self.cache.clear()
        self.session.close()
