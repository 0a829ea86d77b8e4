"""Default enrichment hook producing SEO fields for a listing row."""

from typing import Any, Callable, Dict, List

from listing_import.models import CanonicalRecord

Enricher = Callable[[CanonicalRecord], Dict[str, Any]]

_FEATURE_TAGS = {
    "open_24_hours": "24 hour laundromat",
    "wash_and_fold": "wash and fold",
    "dry_cleaning": "dry cleaning",
    "coin_operated": "coin laundry",
    "pickup_delivery": "laundry pickup and delivery",
    "has_wifi": "laundromat with wifi",
}


def seo_tags(record: CanonicalRecord) -> List[str]:
    tags = [
        "laundromat",
        "laundry",
        "laundromat near me",
        f"laundromat in {record.city}",
        f"laundromat in {record.state_name}",
        f"laundromat in {record.city}, {record.state_name}",
    ]
    tags.extend(tag for flag, tag in _FEATURE_TAGS.items() if record.features.get(flag))
    return list(dict.fromkeys(tags))


def basic_seo_fields(record: CanonicalRecord) -> Dict[str, Any]:
    location = f"{record.city}, {record.state_name}"
    return {
        "seo_title": f"{record.name} - Laundromat in {location}",
        "seo_description": (
            f"{record.name} is a laundromat in {location}. "
            "Find directions, hours, services and more information about this location."
        ),
        "seo_tags": seo_tags(record),
        "description": f"{record.name} is a laundromat located in {location}.",
    }
