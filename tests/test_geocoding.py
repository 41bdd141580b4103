from __future__ import annotations

import threading

import pytest
import requests

from geocoding import (
    ADDRESS_NOT_AVAILABLE,
    GeoCache,
    format_address,
    format_coordinates_as_address,
    get_cache_key,
)
from helpers import ADDRESS_PAYLOAD, SPRINGFIELD, SPRINGFIELD_ADDRESS, FakeResponse

LAT, LON = SPRINGFIELD
FALLBACK = "Location (39.7684, -89.6502)"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def test_successful_lookup_formats_address(geocoder_factory, sleeps):
    geocoder = geocoder_factory()

    assert geocoder.reverse(LAT, LON) == SPRINGFIELD_ADDRESS
    assert sleeps == [0.5]

    url, kwargs = geocoder.session.calls[0]
    assert url == "https://nominatim.openstreetmap.org/reverse"
    assert kwargs["params"]["lat"] == LAT
    assert kwargs["params"]["lon"] == LON
    assert kwargs["params"]["zoom"] == 18
    assert kwargs["headers"]["User-Agent"] == "CivicFixApp/1.0"
    assert kwargs["timeout"] == 8.0


def test_second_lookup_is_served_from_cache(geocoder_factory):
    geocoder = geocoder_factory()

    first = geocoder.reverse(LAT, LON)
    second = geocoder.reverse(LAT + 0.00001, LON - 0.00001)

    assert first == second == SPRINGFIELD_ADDRESS
    assert len(geocoder.session.calls) == 1


def test_all_attempts_failing_returns_coordinates_fallback(geocoder_factory, sleeps):
    geocoder = geocoder_factory([requests.ConnectionError("network down")], retries=2)

    assert geocoder.reverse(LAT, LON) == FALLBACK
    assert len(geocoder.session.calls) == 3
    assert sleeps == [0.5, 1, 0.5, 2, 0.5]


def test_fallback_is_cached(geocoder_factory):
    geocoder = geocoder_factory([FakeResponse(503)], retries=1)

    geocoder.reverse(LAT, LON)
    assert geocoder.reverse(LAT, LON) == FALLBACK
    assert len(geocoder.session.calls) == 2


def test_rate_limited_then_success(geocoder_factory, sleeps):
    geocoder = geocoder_factory([FakeResponse(429), FakeResponse(200, ADDRESS_PAYLOAD)])

    assert geocoder.reverse(LAT, LON) == SPRINGFIELD_ADDRESS
    assert sleeps == [0.5, 1, 0.5]


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(200, {"error": "Unable to geocode"}),
        FakeResponse(200, raises_json=True),
        FakeResponse(200, ["not", "a", "dict"]),
        FakeResponse(500),
    ],
)
def test_bad_responses_end_in_fallback(geocoder_factory, response):
    geocoder = geocoder_factory([response], retries=0)

    assert geocoder.reverse(LAT, LON) == FALLBACK


def test_timeout_is_retried(geocoder_factory):
    geocoder = geocoder_factory([requests.Timeout("slow"), FakeResponse(200, ADDRESS_PAYLOAD)])

    assert geocoder.reverse(LAT, LON) == SPRINGFIELD_ADDRESS
    assert len(geocoder.session.calls) == 2


def test_non_numeric_coordinates_never_reach_the_network(geocoder_factory):
    geocoder = geocoder_factory()

    with pytest.raises(ValueError):
        geocoder.reverse("abc", 1)
    assert geocoder.session.calls == []


# =============================================================================
# FORMATTING
# =============================================================================

def test_format_address_full():
    assert format_address(ADDRESS_PAYLOAD) == SPRINGFIELD_ADDRESS


def test_format_address_prefers_road_and_suburb():
    payload = {
        "address": {
            "road": "Elm Street",
            "suburb": "Downtown",
            "neighbourhood": "Old Town",
            "town": "Chatham",
            "country": "United States",
        }
    }

    assert format_address(payload) == "Elm Street, Downtown, Chatham, United States"


def test_format_address_pedestrian_and_neighbourhood():
    payload = {"address": {"pedestrian": "Market Walk", "neighbourhood": "Old Town", "village": "Rochester"}}

    assert format_address(payload) == "Market Walk, Old Town, Rochester"


def test_format_address_falls_back_to_display_name():
    payload = {"display_name": "Somewhere, Illinois", "address": {}}

    assert format_address(payload) == "Somewhere, Illinois"


def test_format_address_without_anything():
    assert format_address({}) == ADDRESS_NOT_AVAILABLE


def test_coordinate_fallback_and_cache_key():
    assert format_coordinates_as_address(LAT, LON) == FALLBACK
    assert get_cache_key(39.76841, -89.65019) == "39.7684,-89.6502"


# =============================================================================
# CACHE
# =============================================================================

def test_cache_entries_expire():
    clock = FakeClock()
    cache = GeoCache(ttl=60, clock=clock)
    cache.set("a", "Main Street")

    clock.advance(59)
    assert cache.get("a") == "Main Street"

    clock.advance(1)
    assert cache.get("a") is None
    assert len(cache) == 0


def test_cache_evicts_oldest_when_full():
    cache = GeoCache(max_size=10, sweep_every=1000)
    for i in range(11):
        cache.set(f"k{i}", f"address {i}")

    assert len(cache) == 9
    assert cache.get("k0") is None
    assert cache.get("k1") is None
    assert cache.get("k10") == "address 10"


def test_cache_sweep_removes_expired_entries():
    clock = FakeClock()
    cache = GeoCache(ttl=10, clock=clock)
    for key in ("a", "b", "c"):
        cache.set(key, key)

    clock.advance(11)
    cache.set("d", "d")

    assert cache.sweep() == 3
    assert len(cache) == 1


def test_cache_stats():
    cache = GeoCache(ttl=24 * 60 * 60, max_size=1000)
    cache.set("a", "Main Street")

    assert cache.stats() == {"size": 1, "max_size": 1000, "ttl_hours": 24}


def test_cache_stays_bounded_under_concurrent_access():
    cache = GeoCache(max_size=20, sweep_every=7)
    errors = []
    start = threading.Barrier(8)

    def worker(n):
        try:
            start.wait()
            for i in range(500):
                key = get_cache_key(n + i / 10000, i / 10000)
                cache.set(key, f"address {n}-{i}")
                cache.get(key)
                assert len(cache) <= cache.max_size
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(cache) <= cache.max_size
    assert cache.stats()["size"] == len(cache)
