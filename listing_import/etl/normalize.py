"""Turn raw source rows into canonical listing records.

Everything in this module is pure: no I/O, no clock, no randomness. The same
SourceRecord and NormalizerConfig always produce the same CanonicalRecord,
which is what makes re-running an import a no-op.
"""

import hashlib
import json
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from listing_import.core.errors import RecordValidationError
from listing_import.etl.states import StateLookup
from listing_import.models import CanonicalRecord, SourceRecord

logger = logging.getLogger(__name__)

MAX_SLUG_BASE = 80
SLUG_SUFFIX_LENGTH = 8

BASE_SCORE = 20

# Multi-word phrases only where a single word would over-match.
FEATURE_TRIGGERS: Dict[str, Tuple[str, ...]] = {
    "open_24_hours": ("open 24 hours", "24 hours", "24 hour", "24/7", "24-hour"),
    "has_wifi": ("free wifi", "wi-fi", "wifi"),
    "wash_and_fold": ("wash & fold", "wash and fold", "wash-and-fold", "drop-off service", "drop off service"),
    "dry_cleaning": ("dry cleaning", "dry cleaner"),
    "pickup_delivery": ("pickup and delivery", "pick-up and delivery", "delivery service", "pickup service"),
    "card_payment": ("credit card", "debit card", "card payment", "accepts cards", "card-operated"),
    "coin_operated": ("coin-operated", "coin operated", "coin laundry"),
    "attendant": ("attendant on duty", "on-site attendant", "attended laundry"),
    "free_parking": ("free parking", "parking lot"),
}


@dataclass(frozen=True)
class NormalizerDefaults:
    address: str = "Address not provided"
    city: str = "Unknown City"
    zip: str = "00000"
    phone: str = "Phone not provided"
    hours: str = "Call for hours"
    latitude: str = "0"
    longitude: str = "0"
    rating: float = 0.0


@dataclass(frozen=True)
class NormalizerConfig:
    states: StateLookup = field(default_factory=StateLookup)
    defaults: NormalizerDefaults = field(default_factory=NormalizerDefaults)
    feature_triggers: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: dict(FEATURE_TRIGGERS))
    premium_threshold: int = 75
    featured_threshold: int = 90


def slugify(text: str) -> str:
    ascii_text = unicodedata.normalize("NFKD", text or "").encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9]+", "-", ascii_text.lower()).strip("-")


def listing_slug(record: CanonicalRecord, defaults: NormalizerDefaults) -> str:
    """Readable name-city-state slug plus a content hash suffix.

    Chains often have several locations in one city, so name+city+state alone
    collides. The suffix hashes the address too; when the address is missing
    the source position stands in for it.
    """
    base = slugify(f"{record.name} {record.city} {record.state_abbr}")[:MAX_SLUG_BASE].rstrip("-") or "listing"
    identity = [record.name, record.address, record.city, record.state_abbr, record.zip]
    if record.address == defaults.address:
        identity.append(str(record.position))
    digest = hashlib.sha1("|".join(part.lower() for part in identity).encode("utf-8")).hexdigest()
    return f"{base}-{digest[:SLUG_SUFFIX_LENGTH]}"


def parse_services(value: Any) -> List[str]:
    text = _strip_or_none(value)
    if not text:
        return []

    items: List[str] = []
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(item).strip() for item in parsed]
    if not items:
        items = [part.strip() for part in re.split(r"[,;|]", text)]

    seen = set()
    services = []
    for item in items:
        if item and item.lower() not in seen:
            seen.add(item.lower())
            services.append(item)
    return services


def detect_features(services: List[str], hours: str, triggers: Mapping[str, Tuple[str, ...]]) -> Dict[str, bool]:
    haystack = " ".join(services + [hours]).lower()
    return {flag: any(phrase in haystack for phrase in phrases) for flag, phrases in triggers.items()}


def premium_score(record: CanonicalRecord, defaults: NormalizerDefaults) -> int:
    """Score listing quality on a 0-100 scale.

    Non-decreasing in rating, review count, service count and the number of
    detected features.
    """
    score = BASE_SCORE

    if record.address != defaults.address:
        score += 5
    if record.phone != defaults.phone:
        score += 5
    if record.website:
        score += 10
    if record.hours != defaults.hours:
        score += 5
    if record.latitude != defaults.latitude or record.longitude != defaults.longitude:
        score += 10

    score += min(round(max(record.rating, 0.0) * 3), 15)
    score += min(max(record.review_count, 0) // 10, 15)
    score += min(len(record.services) * 2, 10)
    score += min(sum(1 for enabled in record.features.values() if enabled) * 2, 10)

    return max(0, min(100, int(score)))


def normalize_record(raw: SourceRecord, config: NormalizerConfig) -> CanonicalRecord:
    """Map one SourceRecord to a CanonicalRecord or raise RecordValidationError."""
    defaults = config.defaults

    name = _collapse(raw.name)
    if not name:
        raise RecordValidationError(f"row {raw.position}: missing required field 'name'")

    state_abbr, state_name = config.states.resolve(raw.state)
    if not state_abbr:
        raise RecordValidationError(f"row {raw.position}: missing required field 'state' for {name!r}")

    latitude, longitude = _coordinates(raw.latitude, raw.longitude, defaults)
    hours = _collapse(raw.hours) or defaults.hours
    services = parse_services(raw.services)

    record = CanonicalRecord(
        position=raw.position,
        name=name,
        slug="",
        address=_collapse(raw.address) or defaults.address,
        city=_collapse(raw.city) or defaults.city,
        state_abbr=state_abbr,
        state_name=state_name,
        zip=_zip_code(raw.zip) or defaults.zip,
        phone=_collapse(raw.phone) or defaults.phone,
        hours=hours,
        latitude=latitude,
        longitude=longitude,
        rating=_rating(raw.rating, defaults.rating),
        review_count=_safe_int(raw.review_count) or 0,
        website=_website(raw.website),
        services=services,
        features=detect_features(services, hours, config.feature_triggers),
        raw=dict(raw.raw),
    )
    record.slug = listing_slug(record, defaults)
    record.premium_score = premium_score(record, defaults)
    record.is_premium = record.premium_score >= config.premium_threshold
    record.is_featured = record.premium_score >= config.featured_threshold
    return record


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _collapse(value: Any) -> Optional[str]:
    text = _strip_or_none(value)
    return " ".join(text.split()) if text else None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)

    if isinstance(value, str):
        digits = "".join(ch for ch in value.split(".")[0] if ch.isdigit())
        if digits:
            return int(digits)
    return None


def _rating(value: Any, default: float) -> float:
    rating = _safe_float(value)
    if rating is None:
        return default
    return min(max(rating, 0.0), 5.0)


def _coordinates(latitude: Any, longitude: Any, defaults: NormalizerDefaults) -> Tuple[str, str]:
    lat = _safe_float(latitude)
    lng = _safe_float(longitude)
    if lat is None or lng is None or not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
        return defaults.latitude, defaults.longitude
    return str(lat), str(lng)


def _zip_code(value: Any) -> Optional[str]:
    text = _strip_or_none(value)
    if not text:
        return None
    if text.isdigit() and len(text) < 5:
        return text.zfill(5)
    return text


def _website(value: Any) -> Optional[str]:
    text = _strip_or_none(value)
    if not text:
        return None
    if not re.match(r"^https?://", text, re.IGNORECASE):
        text = f"https://{text}"
    return text
