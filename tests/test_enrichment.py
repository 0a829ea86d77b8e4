import threading

import pytest
import requests

from listing_import.core import enrichment
from listing_import.core.control import StopSignal
from listing_import.vendors.geocoder import GeocoderError


def test_rate_limiter_spaces_requests():
    slept = []
    limiter = enrichment.RateLimiter(1.0, clock=lambda: 10.0, sleep=slept.append)

    assert limiter.wait() == 0.0
    assert limiter.wait() == 1.0
    assert limiter.wait() == 2.0
    assert slept == [1.0, 2.0]


def test_response_cache_round_trip(tmp_path):
    cache = enrichment.ResponseCache(str(tmp_path / "cache"))
    key = cache.key_for("geocode", "1 Main St, Denver")

    assert key == cache.key_for("GEOCODE", " 1 main st, denver ")
    assert cache.get(key) is enrichment._MISSING

    cache.put(key, [39.7, -104.9])
    cache.put(cache.key_for("geocode", "nowhere"), None)

    assert cache.get(key) == [39.7, -104.9]
    assert cache.get(cache.key_for("geocode", "nowhere")) is None


def test_call_with_retry_retries_transient_errors():
    attempts = []
    slept = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise GeocoderError("HTTP 503", status_code=503, retryable=True)
        return "ok"

    assert enrichment.call_with_retry(flaky, max_retries=3, base_delay=1.0, sleep=slept.append) == "ok"
    assert len(attempts) == 3
    assert len(slept) == 2
    assert 1.0 <= slept[0] <= 1.5
    assert 2.0 <= slept[1] <= 2.5


def test_call_with_retry_does_not_retry_client_errors():
    attempts = []

    def rejected():
        attempts.append(1)
        raise GeocoderError("HTTP 404", status_code=404)

    with pytest.raises(GeocoderError):
        enrichment.call_with_retry(rejected, max_retries=3, sleep=lambda _: None)
    assert len(attempts) == 1


def test_call_with_retry_gives_up_after_max_retries():
    attempts = []

    def down():
        attempts.append(1)
        raise requests.ConnectionError("connection reset")

    with pytest.raises(requests.ConnectionError):
        enrichment.call_with_retry(down, max_retries=2, sleep=lambda _: None)
    assert len(attempts) == 3


def test_pool_applies_results_and_caches(tmp_path):
    lock = threading.Lock()
    fetched = []
    applied = {}

    def fetch(unit):
        with lock:
            fetched.append(unit)
        return unit * 2

    def apply(unit, value):
        applied[unit] = value
        return True

    def make_pool():
        return enrichment.EnrichmentPool(concurrency=3, cache=enrichment.ResponseCache(str(tmp_path)), max_retries=0)

    report = make_pool().run(range(1, 6), fetch, apply, key_for=lambda u: f"unit-{u}")

    assert applied == {1: 2, 2: 4, 3: 6, 4: 8, 5: 10}
    assert (report.attempted, report.fetched, report.cached, report.applied) == (5, 5, 0, 5)

    again = make_pool().run(range(1, 6), fetch, apply, key_for=lambda u: f"unit-{u}")
    assert (again.fetched, again.cached) == (0, 5)
    assert sorted(fetched) == [1, 2, 3, 4, 5]


def test_pool_records_failed_units_without_blocking():
    def fetch(unit):
        if unit == 3:
            raise GeocoderError("HTTP 400", status_code=400)
        return unit

    report = enrichment.EnrichmentPool(concurrency=2, max_retries=1, sleep=lambda _: None).run(
        [1, 2, 3, 4], fetch, lambda unit, value: True, key_for=str, describe=lambda u: f"unit {u}"
    )

    assert report.failed == 1
    assert report.applied == 3
    assert report.errors == ["unit 3: HTTP 400"]


def test_pool_stops_before_starting_new_units():
    stop = StopSignal()
    stop.request_stop("test")

    report = enrichment.EnrichmentPool(stop=stop).run([1, 2, 3], lambda u: u, lambda u, v: True, key_for=str)

    assert report.stopped is True
    assert report.attempted == 0
