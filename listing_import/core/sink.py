"""Idempotent listing inserts keyed on the slug."""

import logging
from typing import Any, Dict, Optional

from listing_import.core.context import RunContext
from listing_import.models import CanonicalRecord, UpsertResult

logger = logging.getLogger(__name__)

ENRICHMENT_COLUMNS = ("description", "seo_title", "seo_description", "seo_tags")


def to_listing_row(
    record: CanonicalRecord,
    state_id: int,
    city_id: int,
    enrichment: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    row = {
        "slug": record.slug,
        "name": record.name,
        "address": record.address,
        "city": record.city,
        "state": record.state_name,
        "zip": record.zip,
        "phone": record.phone,
        "website": record.website,
        "latitude": record.latitude,
        "longitude": record.longitude,
        "rating": record.rating,
        "review_count": record.review_count,
        "hours": record.hours,
        "services": list(record.services),
        "features": dict(record.features),
        "premium_score": record.premium_score,
        "is_premium": record.is_premium,
        "is_featured": record.is_featured,
        "city_id": city_id,
        "state_id": state_id,
        "source_position": record.position,
        "raw": dict(record.raw),
    }
    for column in ENRICHMENT_COLUMNS:
        row[column] = (enrichment or {}).get(column)
    return row


class UpsertSink:
    """Insert listings once; a slug conflict is reported, never overwritten."""

    def __init__(self, context: RunContext) -> None:
        self.context = context

    def upsert(
        self,
        record: CanonicalRecord,
        state_id: int,
        city_id: int,
        enrichment: Optional[Dict[str, Any]] = None,
    ) -> UpsertResult:
        store = self.context.store
        listing_id = store.insert_listing(to_listing_row(record, state_id, city_id, enrichment))
        if listing_id is None:
            return UpsertResult(inserted=False)

        store.increment_counts(city_id, state_id)
        self.context.touched_cities.add(city_id)
        self.context.touched_states.add(state_id)
        return UpsertResult(inserted=True, id=listing_id)

    def refresh_counts(self) -> None:
        """Recount the dimension rows touched since the last refresh."""
        if not self.context.touched_cities and not self.context.touched_states:
            return
        self.context.store.refresh_counts(self.context.touched_cities, self.context.touched_states)
        logger.debug(
            "Refreshed counts for %d cities and %d states",
            len(self.context.touched_cities),
            len(self.context.touched_states),
        )
        self.context.reset_batch_state()
