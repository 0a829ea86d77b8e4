"""Client for an HTTP geocoding endpoint.

The endpoint receives ``address`` (and ``key`` when configured) as query
parameters. Three response shapes are understood: a flat ``{"lat", "lng"}``
object, Google-style ``{"status", "results": [{"geometry": {"location"}}]}``
and Nominatim-style ``[{"lat", "lon"}]`` lists.
"""

import logging
from typing import Any, Optional, Tuple

import requests

logger = logging.getLogger(__name__)
_SESSION = requests.Session()

_EMPTY_STATUSES = {"ZERO_RESULTS"}
_RETRYABLE_STATUSES = {"OVER_QUERY_LIMIT", "UNKNOWN_ERROR"}


class GeocoderError(RuntimeError):
    """Raised when the geocoder cannot answer; ``retryable`` marks transient failures."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


def geocode(address: str, base_url: str, api_key: str = "", timeout: float = 10) -> Optional[Tuple[float, float]]:
    """Return ``(latitude, longitude)`` for ``address``, or None when nothing matched."""
    if not base_url:
        raise GeocoderError("GEOCODER_URL is not configured")
    params = {"address": address}
    if api_key:
        params["key"] = api_key

    try:
        response = _SESSION.get(base_url, params=params, timeout=timeout)
    except (requests.ConnectionError, requests.Timeout) as exc:
        raise GeocoderError(f"geocoder unreachable: {exc}", retryable=True) from exc

    status_code = response.status_code
    if status_code == 429 or status_code >= 500:
        raise GeocoderError(f"geocoder returned HTTP {status_code}", status_code=status_code, retryable=True)
    if status_code >= 400:
        raise GeocoderError(f"geocoder rejected request with HTTP {status_code}", status_code=status_code)

    try:
        payload = response.json()
    except ValueError as exc:
        raise GeocoderError(f"geocoder returned invalid JSON: {exc}") from exc
    return parse_location(payload)


def parse_location(payload: Any) -> Optional[Tuple[float, float]]:
    if isinstance(payload, list):
        if not payload or not isinstance(payload[0], dict):
            return None
        return _pair(payload[0].get("lat"), payload[0].get("lon", payload[0].get("lng")))

    if not isinstance(payload, dict):
        raise GeocoderError(f"unexpected geocoder payload: {str(payload)[:200]}")

    if "lat" in payload:
        return _pair(payload.get("lat"), payload.get("lng", payload.get("lon")))

    status = payload.get("status")
    if status in _EMPTY_STATUSES:
        return None
    if status in _RETRYABLE_STATUSES:
        raise GeocoderError(payload.get("error_message") or status, retryable=True)
    if status and status != "OK":
        logger.error("geocode failed: status=%s, error_message=%s", status, payload.get("error_message"))
        raise GeocoderError(payload.get("error_message") or status)

    results = payload.get("results") or []
    if not results:
        return None
    location = (results[0].get("geometry") or {}).get("location") or {}
    return _pair(location.get("lat"), location.get("lng"))


def _pair(latitude: Any, longitude: Any) -> Optional[Tuple[float, float]]:
    try:
        lat, lng = float(latitude), float(longitude)
    except (TypeError, ValueError):
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return lat, lng
