"""In-memory listing store with transaction and savepoint semantics.

Used for ``--dry-run`` imports: the full pipeline runs, constraint handling
included, without touching a database. Rollbacks replay an undo log back to
the mark taken when the transaction or savepoint opened.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from listing_import.core.errors import TransientStoreError
from listing_import.core.store import ListingStore

logger = logging.getLogger(__name__)


class MemoryListingStore(ListingStore):
    def __init__(self) -> None:
        self.states: Dict[int, Dict[str, Any]] = {}
        self.cities: Dict[int, Dict[str, Any]] = {}
        self.listings: Dict[int, Dict[str, Any]] = {}
        self._next_id = {"states": 1, "cities": 1, "listings": 1}
        self._state_by_abbr: Dict[str, int] = {}
        self._city_by_key: Dict[Tuple[int, str], int] = {}
        self._listing_by_slug: Dict[str, int] = {}
        self._city_listings: Dict[int, Set[int]] = {}
        self._state_listings: Dict[int, Set[int]] = {}
        self._undo: List[Callable[[], None]] = []
        self._depth = 0
        self.commits = 0
        self.rollbacks = 0

    def _log(self, undo: Callable[[], None]) -> None:
        if self._depth:
            self._undo.append(undo)

    def _rewind(self, mark: int) -> None:
        while len(self._undo) > mark:
            self._undo.pop()()

    @contextmanager
    def _scope(self) -> Iterator[None]:
        mark = len(self._undo)
        self._depth += 1
        try:
            yield
        except BaseException:
            self._rewind(mark)
            raise
        finally:
            self._depth -= 1
            if not self._depth:
                self._undo.clear()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            with self._scope():
                yield
        except BaseException:
            self.rollbacks += 1
            raise
        self.commits += 1

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        with self._scope():
            yield

    def is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, TransientStoreError)

    def _allocate(self, table: str) -> int:
        new_id = self._next_id[table]
        self._next_id[table] += 1
        self._log(lambda: self._next_id.__setitem__(table, new_id))
        return new_id

    def find_state(self, abbr: str) -> Optional[int]:
        return self._state_by_abbr.get(abbr)

    def insert_state(self, abbr: str, name: str, slug: str) -> Optional[int]:
        if abbr in self._state_by_abbr:
            return None
        state_id = self._allocate("states")
        self.states[state_id] = {"id": state_id, "abbr": abbr, "name": name, "slug": slug, "listing_count": 0}
        self._state_by_abbr[abbr] = state_id
        self._state_listings[state_id] = set()

        def undo() -> None:
            del self.states[state_id]
            del self._state_by_abbr[abbr]
            del self._state_listings[state_id]

        self._log(undo)
        return state_id

    def find_city(self, name: str, state_id: int) -> Optional[int]:
        return self._city_by_key.get((state_id, name))

    def insert_city(self, name: str, state_id: int, slug: str) -> Optional[int]:
        if state_id not in self.states:
            raise LookupError(f"state {state_id} does not exist")
        key = (state_id, name)
        if key in self._city_by_key:
            return None
        city_id = self._allocate("cities")
        self.cities[city_id] = {
            "id": city_id,
            "name": name,
            "state_id": state_id,
            "slug": slug,
            "listing_count": 0,
        }
        self._city_by_key[key] = city_id
        self._city_listings[city_id] = set()

        def undo() -> None:
            del self.cities[city_id]
            del self._city_by_key[key]
            del self._city_listings[city_id]

        self._log(undo)
        return city_id

    def insert_listing(self, row: Dict[str, Any]) -> Optional[int]:
        city_id, state_id, slug = row.get("city_id"), row.get("state_id"), row["slug"]
        if city_id not in self.cities or state_id not in self.states:
            raise LookupError(f"listing {slug} references a missing city or state")
        if slug in self._listing_by_slug:
            return None
        listing_id = self._allocate("listings")
        self.listings[listing_id] = dict(row, id=listing_id)
        self._listing_by_slug[slug] = listing_id
        self._city_listings[city_id].add(listing_id)
        self._state_listings[state_id].add(listing_id)

        def undo() -> None:
            del self.listings[listing_id]
            del self._listing_by_slug[slug]
            self._city_listings[city_id].discard(listing_id)
            self._state_listings[state_id].discard(listing_id)

        self._log(undo)
        return listing_id

    def _set_count(self, row: Dict[str, Any], value: int) -> None:
        previous = row["listing_count"]
        row["listing_count"] = value
        self._log(lambda: row.__setitem__("listing_count", previous))

    def increment_counts(self, city_id: int, state_id: int) -> None:
        city, state = self.cities[city_id], self.states[state_id]
        self._set_count(city, city["listing_count"] + 1)
        self._set_count(state, state["listing_count"] + 1)

    def refresh_counts(self, city_ids: Iterable[int], state_ids: Iterable[int]) -> None:
        for city_id in set(city_ids) & set(self.cities):
            self._set_count(self.cities[city_id], len(self._city_listings[city_id]))
        for state_id in set(state_ids) & set(self.states):
            self._set_count(self.states[state_id], len(self._state_listings[state_id]))

    def summary(self) -> Dict[str, Any]:
        ranked = sorted(self.states.values(), key=lambda row: (-row["listing_count"], row["abbr"]))
        return {
            "listings": len(self.listings),
            "states": len(self.states),
            "cities": len(self.cities),
            "topStates": [{"state": row["abbr"], "listings": row["listing_count"]} for row in ranked[:10]],
        }

    def listings_missing_coordinates(self, placeholder: str, limit: int, missing_address: str) -> List[Dict[str, Any]]:
        rows = []
        for _, row in sorted(self.listings.items()):
            if len(rows) >= limit:
                break
            if row["latitude"] != placeholder or row["longitude"] != placeholder:
                continue
            if not row["address"] or row["address"] == missing_address:
                continue
            rows.append({key: row[key] for key in ("id", "address", "city", "state", "zip")})
        return rows

    def update_coordinates(self, listing_id: int, latitude: str, longitude: str, placeholder: str) -> bool:
        row = self.listings.get(listing_id)
        if row is None or row["latitude"] != placeholder or row["longitude"] != placeholder:
            return False
        self._log(lambda: row.update(latitude=placeholder, longitude=placeholder))
        row["latitude"], row["longitude"] = latitude, longitude
        return True
