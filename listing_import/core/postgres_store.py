"""PostgreSQL implementation of the listing store."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

import psycopg2
from psycopg2 import errors, extras

from listing_import.core import db
from listing_import.core.errors import DuplicateKeyError
from listing_import.core.store import ListingStore

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS states (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    abbr TEXT NOT NULL UNIQUE,
    slug TEXT NOT NULL,
    listing_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS cities (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    state_id INTEGER NOT NULL REFERENCES states (id),
    slug TEXT NOT NULL,
    listing_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (state_id, name)
);

CREATE TABLE IF NOT EXISTS listings (
    id SERIAL PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    address TEXT NOT NULL,
    city TEXT NOT NULL,
    state TEXT NOT NULL,
    zip TEXT NOT NULL,
    phone TEXT NOT NULL,
    website TEXT,
    latitude TEXT NOT NULL,
    longitude TEXT NOT NULL,
    rating REAL NOT NULL DEFAULT 0,
    review_count INTEGER NOT NULL DEFAULT 0,
    hours TEXT NOT NULL,
    services JSONB NOT NULL DEFAULT '[]',
    features JSONB NOT NULL DEFAULT '{}',
    description TEXT,
    seo_title TEXT,
    seo_description TEXT,
    seo_tags JSONB NOT NULL DEFAULT '[]',
    premium_score INTEGER NOT NULL DEFAULT 0,
    is_premium BOOLEAN NOT NULL DEFAULT FALSE,
    is_featured BOOLEAN NOT NULL DEFAULT FALSE,
    city_id INTEGER NOT NULL REFERENCES cities (id),
    state_id INTEGER NOT NULL REFERENCES states (id),
    source_position INTEGER,
    raw JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS listings_city_id_idx ON listings (city_id);
CREATE INDEX IF NOT EXISTS listings_state_id_idx ON listings (state_id);

CREATE TABLE IF NOT EXISTS import_progress (
    run_name TEXT PRIMARY KEY,
    payload JSONB NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_INSERT_STATE = """
INSERT INTO states (name, abbr, slug, listing_count)
VALUES (%(name)s, %(abbr)s, %(slug)s, 0)
ON CONFLICT (abbr) DO NOTHING
RETURNING id;
"""

_INSERT_CITY = """
INSERT INTO cities (name, state_id, slug, listing_count)
VALUES (%(name)s, %(state_id)s, %(slug)s, 0)
ON CONFLICT (state_id, name) DO NOTHING
RETURNING id;
"""

_INSERT_LISTING = """
INSERT INTO listings (
    slug,
    name,
    address,
    city,
    state,
    zip,
    phone,
    website,
    latitude,
    longitude,
    rating,
    review_count,
    hours,
    services,
    features,
    description,
    seo_title,
    seo_description,
    seo_tags,
    premium_score,
    is_premium,
    is_featured,
    city_id,
    state_id,
    source_position,
    raw
) VALUES (
    %(slug)s,
    %(name)s,
    %(address)s,
    %(city)s,
    %(state)s,
    %(zip)s,
    %(phone)s,
    %(website)s,
    %(latitude)s,
    %(longitude)s,
    %(rating)s,
    %(review_count)s,
    %(hours)s,
    %(services)s,
    %(features)s,
    %(description)s,
    %(seo_title)s,
    %(seo_description)s,
    %(seo_tags)s,
    %(premium_score)s,
    %(is_premium)s,
    %(is_featured)s,
    %(city_id)s,
    %(state_id)s,
    %(source_position)s,
    %(raw)s
)
ON CONFLICT (slug) DO NOTHING
RETURNING id;
"""

_REFRESH_CITY_COUNTS = """
UPDATE cities
SET listing_count = (SELECT COUNT(*) FROM listings WHERE listings.city_id = cities.id)
WHERE id = ANY(%s);
"""

_REFRESH_STATE_COUNTS = """
UPDATE states
SET listing_count = (SELECT COUNT(*) FROM listings WHERE listings.state_id = states.id)
WHERE id = ANY(%s);
"""

_SELECT_MISSING_COORDINATES = """
SELECT id, address, city, state, zip
FROM listings
WHERE latitude = %(placeholder)s AND longitude = %(placeholder)s
  AND address <> '' AND address <> %(missing_address)s
ORDER BY id
LIMIT %(limit)s;
"""

_UPDATE_COORDINATES = """
UPDATE listings
SET latitude = %(latitude)s, longitude = %(longitude)s, updated_at = NOW()
WHERE id = %(id)s AND latitude = %(placeholder)s AND longitude = %(placeholder)s;
"""

_JSON_COLUMNS = ("services", "features", "seo_tags", "raw")


def _prepare_params(row: Dict[str, Any]) -> Dict[str, Any]:
    params = dict(row)
    for column in _JSON_COLUMNS:
        default = {} if column in ("features", "raw") else []
        params[column] = extras.Json(row.get(column) or default)
    for optional in ("website", "description", "seo_title", "seo_description", "source_position"):
        params.setdefault(optional, None)
    return params


class PostgresListingStore(ListingStore):
    """Listing store backed by the pooled PostgreSQL connection."""

    def __init__(self) -> None:
        self._conn = None
        self._savepoint_depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with db.transaction() as conn:
            self._conn = conn
            try:
                yield
            finally:
                self._conn = None
                self._savepoint_depth = 0

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        self._savepoint_depth += 1
        name = f"listing_sp_{self._savepoint_depth}"
        try:
            with db.savepoint(self._require_conn(), name):
                yield
        finally:
            self._savepoint_depth -= 1

    def is_transient(self, exc: BaseException) -> bool:
        # Deadlocks and serialization failures subclass OperationalError.
        return isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError))

    def ensure_schema(self) -> None:
        with db.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA)
            conn.commit()
        logger.info("Schema verified")

    def find_state(self, abbr: str) -> Optional[int]:
        return self._scalar("SELECT id FROM states WHERE abbr = %s", (abbr,))

    def insert_state(self, abbr: str, name: str, slug: str) -> Optional[int]:
        return self._insert_ignoring_conflict(_INSERT_STATE, {"abbr": abbr, "name": name, "slug": slug})

    def find_city(self, name: str, state_id: int) -> Optional[int]:
        return self._scalar("SELECT id FROM cities WHERE name = %s AND state_id = %s", (name, state_id))

    def insert_city(self, name: str, state_id: int, slug: str) -> Optional[int]:
        return self._insert_ignoring_conflict(_INSERT_CITY, {"name": name, "state_id": state_id, "slug": slug})

    def insert_listing(self, row: Dict[str, Any]) -> Optional[int]:
        params = _prepare_params(row)
        with self._require_conn().cursor() as cur:
            cur.execute(_INSERT_LISTING, params)
            result = cur.fetchone()
        if result is None:
            logger.debug("Listing %s already exists", params["slug"])
            return None
        return result[0]

    def increment_counts(self, city_id: int, state_id: int) -> None:
        with self._require_conn().cursor() as cur:
            cur.execute("UPDATE cities SET listing_count = listing_count + 1 WHERE id = %s", (city_id,))
            cur.execute("UPDATE states SET listing_count = listing_count + 1 WHERE id = %s", (state_id,))

    def refresh_counts(self, city_ids: Iterable[int], state_ids: Iterable[int]) -> None:
        city_ids, state_ids = sorted(set(city_ids)), sorted(set(state_ids))
        with self._require_conn().cursor() as cur:
            if city_ids:
                cur.execute(_REFRESH_CITY_COUNTS, (city_ids,))
            if state_ids:
                cur.execute(_REFRESH_STATE_COUNTS, (state_ids,))

    def summary(self) -> Dict[str, Any]:
        with db.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM listings")
                listings = cur.fetchone()[0]
                cur.execute("SELECT COUNT(*) FROM states")
                states = cur.fetchone()[0]
                cur.execute("SELECT COUNT(*) FROM cities")
                cities = cur.fetchone()[0]
                cur.execute("SELECT abbr, listing_count FROM states ORDER BY listing_count DESC, abbr LIMIT 10")
                top_states = [{"state": abbr, "listings": count} for abbr, count in cur.fetchall()]
            conn.rollback()
        return {"listings": listings, "states": states, "cities": cities, "topStates": top_states}

    def listings_missing_coordinates(self, placeholder: str, limit: int, missing_address: str) -> List[Dict[str, Any]]:
        params = {"placeholder": placeholder, "missing_address": missing_address, "limit": limit}
        with db.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_SELECT_MISSING_COORDINATES, params)
                rows = cur.fetchall()
            conn.rollback()
        return [
            {"id": row[0], "address": row[1], "city": row[2], "state": row[3], "zip": row[4]}
            for row in rows
        ]

    def update_coordinates(self, listing_id: int, latitude: str, longitude: str, placeholder: str) -> bool:
        params = {"id": listing_id, "latitude": latitude, "longitude": longitude, "placeholder": placeholder}
        with db.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_UPDATE_COORDINATES, params)
                updated = cur.rowcount > 0
            conn.commit()
        return updated

    def close(self) -> None:
        db.close_pool()

    def _require_conn(self):
        if self._conn is None:
            raise RuntimeError("PostgresListingStore used outside of a transaction")
        return self._conn

    def _scalar(self, sql: str, params) -> Optional[int]:
        with self._require_conn().cursor() as cur:
            cur.execute(sql, params)
            result = cur.fetchone()
        return result[0] if result else None

    def _insert_ignoring_conflict(self, sql: str, params: Dict[str, Any]) -> Optional[int]:
        try:
            with db.savepoint(self._require_conn(), "dimension_insert"):
                with self._require_conn().cursor() as cur:
                    cur.execute(sql, params)
                    result = cur.fetchone()
        except errors.UniqueViolation as exc:
            raise DuplicateKeyError(str(exc)) from exc
        return result[0] if result else None
