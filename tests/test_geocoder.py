import pytest
import requests

from listing_import.vendors import geocoder


class DummyResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}

    def json(self):
        return self._payload


class DummySession:
    def __init__(self):
        self.calls = []
        self.response = DummyResponse()
        self.error = None

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture(autouse=True)
def patch_session(monkeypatch):
    session = DummySession()
    monkeypatch.setattr(geocoder, "_SESSION", session)
    return session


def test_geocode_flat_payload(patch_session):
    patch_session.response = DummyResponse(payload={"lat": "39.7392", "lng": "-104.9903"})

    assert geocoder.geocode("1 Main St, Denver, CO", "https://geo.test/geocode", "key") == (39.7392, -104.9903)
    url, params, timeout = patch_session.calls[0]
    assert url == "https://geo.test/geocode"
    assert params == {"address": "1 Main St, Denver, CO", "key": "key"}
    assert timeout == 10


def test_geocode_google_style_payload(patch_session):
    patch_session.response = DummyResponse(
        payload={"status": "OK", "results": [{"geometry": {"location": {"lat": 30.26, "lng": -97.74}}}]}
    )
    assert geocoder.geocode("Austin, TX", "https://geo.test") == (30.26, -97.74)
    assert "key" not in patch_session.calls[0][1]


def test_geocode_nominatim_style_payload(patch_session):
    patch_session.response = DummyResponse(payload=[{"lat": "40.0", "lon": "-105.2"}])
    assert geocoder.geocode("Boulder, CO", "https://geo.test") == (40.0, -105.2)


def test_geocode_no_match(patch_session):
    patch_session.response = DummyResponse(payload={"status": "ZERO_RESULTS", "results": []})
    assert geocoder.geocode("Nowhere", "https://geo.test") is None

    patch_session.response = DummyResponse(payload=[])
    assert geocoder.geocode("Nowhere", "https://geo.test") is None


@pytest.mark.parametrize("status_code, retryable", [(500, True), (503, True), (429, True), (400, False), (404, False)])
def test_geocode_http_errors(patch_session, status_code, retryable):
    patch_session.response = DummyResponse(status_code=status_code)

    with pytest.raises(geocoder.GeocoderError) as excinfo:
        geocoder.geocode("Denver", "https://geo.test")

    assert excinfo.value.retryable is retryable
    assert excinfo.value.status_code == status_code


def test_geocode_connection_error_is_retryable(patch_session):
    patch_session.error = requests.ConnectionError("connection reset by peer")

    with pytest.raises(geocoder.GeocoderError) as excinfo:
        geocoder.geocode("Denver", "https://geo.test")

    assert excinfo.value.retryable is True


def test_geocode_status_errors(patch_session):
    patch_session.response = DummyResponse(payload={"status": "OVER_QUERY_LIMIT"})
    with pytest.raises(geocoder.GeocoderError) as excinfo:
        geocoder.geocode("Denver", "https://geo.test")
    assert excinfo.value.retryable is True

    patch_session.response = DummyResponse(payload={"status": "REQUEST_DENIED", "error_message": "bad key"})
    with pytest.raises(geocoder.GeocoderError) as excinfo:
        geocoder.geocode("Denver", "https://geo.test")
    assert excinfo.value.retryable is False
    assert str(excinfo.value) == "bad key"


def test_geocode_requires_url():
    with pytest.raises(geocoder.GeocoderError):
        geocoder.geocode("Denver", "")
