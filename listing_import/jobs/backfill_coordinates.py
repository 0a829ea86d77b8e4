"""CLI job that geocodes listings imported without coordinates."""

import argparse
import logging
from typing import Any, Dict, Optional

import psycopg2

from listing_import.core.config import ConfigError, Settings, get_settings
from listing_import.core.control import StopSignal
from listing_import.core.enrichment import EnrichmentPool, EnrichmentReport, RateLimiter, ResponseCache
from listing_import.core.postgres_store import PostgresListingStore
from listing_import.core.store import ListingStore
from listing_import.etl.normalize import NormalizerDefaults
from listing_import.vendors import geocoder

logger = logging.getLogger(__name__)


def geocode_query(row: Dict[str, Any], defaults: NormalizerDefaults = NormalizerDefaults()) -> str:
    """Build the geocoder query, or "" when the listing has no street address.

    City or state centre points are never written as a listing's location.
    """
    address = (row.get("address") or "").strip()
    if not address or address == defaults.address:
        return ""
    parts = [address]
    if row.get("city") and row["city"] != defaults.city:
        parts.append(row["city"])
    state_zip = " ".join(p for p in (row.get("state"), row.get("zip")) if p and p != defaults.zip)
    if state_zip:
        parts.append(state_zip)
    return ", ".join(parts)


def backfill_coordinates(
    store: ListingStore,
    settings: Settings,
    *,
    limit: int = 1000,
    stop: Optional[StopSignal] = None,
    pool: Optional[EnrichmentPool] = None,
) -> EnrichmentReport:
    """Geocode up to ``limit`` listings whose coordinates are still the placeholder."""
    if not settings.geocoder_url:
        raise ConfigError("GEOCODER_URL is required to back-fill coordinates")

    defaults = NormalizerDefaults()
    placeholder = defaults.latitude
    candidates = store.listings_missing_coordinates(placeholder, limit, defaults.address)
    rows = [row for row in candidates if geocode_query(row, defaults)]
    logger.info("Found %d listings without coordinates", len(rows))

    if pool is None:
        pool = EnrichmentPool(
            concurrency=settings.enrich_concurrency,
            limiter=RateLimiter(settings.enrich_min_interval_seconds),
            cache=ResponseCache(settings.enrich_cache_dir),
            max_retries=settings.enrich_max_retries,
            stop=stop,
        )

    def fetch(row):
        return geocoder.geocode(geocode_query(row), settings.geocoder_url, settings.geocoder_api_key)

    def apply(row, location) -> bool:
        if not location:
            logger.debug("No geocoding match for listing %s", row["id"])
            return False
        latitude, longitude = location
        return store.update_coordinates(row["id"], str(latitude), str(longitude), placeholder)

    return pool.run(
        rows,
        fetch,
        apply,
        key_for=lambda row: ResponseCache.key_for("geocode", geocode_query(row)),
        describe=lambda row: f"listing {row['id']} ({geocode_query(row)})",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fill placeholder coordinates through the geocoder")
    parser.add_argument("--limit", type=int, default=1000, help="Maximum listings to geocode in this pass")
    return parser


def main(argv=None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    store = None
    try:
        settings = get_settings()
        stop = StopSignal(settings.stop_file)
        stop.install_handlers()
        store = PostgresListingStore()
        report = backfill_coordinates(store, settings, limit=args.limit, stop=stop)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc
    except psycopg2.Error as exc:
        logger.error("Coordinate back-fill failed: %s", exc)
        raise SystemExit(1) from exc
    finally:
        if store is not None:
            store.close()

    logger.info("Back-fill report: %s", report.to_dict())


if __name__ == "__main__":
    main()
