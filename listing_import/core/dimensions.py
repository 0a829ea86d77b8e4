"""Resolve state and city dimension rows, creating them on first reference."""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from listing_import.core.context import RunContext
from listing_import.core.errors import DuplicateKeyError
from listing_import.etl.normalize import slugify
from listing_import.etl.states import StateLookup

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, ...]


class DimensionResolver:
    """Insert-or-get for dimension rows with a per-run identifier cache.

    Ids cached since the last ``commit()`` may belong to rows that a rollback
    will erase, so they are tracked and can be dropped with
    ``discard_since()``.
    """

    def __init__(self, context: RunContext, states: Optional[StateLookup] = None) -> None:
        self.context = context
        self.states = states or StateLookup()
        self._staged: List[CacheKey] = []
        self._state_abbrs: Dict[int, str] = {}

    @property
    def cache(self) -> Dict[CacheKey, int]:
        return self.context.dimension_cache

    def resolve_state(self, abbr_or_name: str) -> int:
        abbr, name = self.states.resolve(abbr_or_name)
        if not abbr:
            raise ValueError("state is required to resolve a state row")
        store = self.context.store
        state_id = self._insert_or_get(
            ("state", abbr),
            lambda: store.find_state(abbr),
            lambda: store.insert_state(abbr, name, slugify(name) or slugify(abbr)),
        )
        self._state_abbrs[state_id] = abbr
        return state_id

    def resolve_city(self, name: str, state_id: int) -> int:
        if not name:
            raise ValueError("city name is required to resolve a city row")
        store = self.context.store
        state_abbr = self._state_abbrs.get(state_id, str(state_id))
        return self._insert_or_get(
            ("city", str(state_id), name),
            lambda: store.find_city(name, state_id),
            lambda: store.insert_city(name, state_id, slugify(f"{name} {state_abbr}")),
        )

    def mark(self) -> int:
        return len(self._staged)

    def discard_since(self, mark: int) -> None:
        for key in self._staged[mark:]:
            self.cache.pop(key, None)
        del self._staged[mark:]

    def discard_all(self) -> None:
        self.discard_since(0)

    def commit(self) -> None:
        self._staged.clear()

    def _insert_or_get(
        self,
        key: CacheKey,
        find: Callable[[], Optional[int]],
        insert: Callable[[], Optional[int]],
    ) -> int:
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        found = find()
        if found is None:
            try:
                found = insert()
            except DuplicateKeyError as exc:
                logger.info("Lost insert race for %s (%s); fetching existing row", key, exc)
                found = None
            if found is None:
                found = find()
            if found is None:
                raise LookupError(f"Unable to resolve dimension row for {key}")
            logger.debug("Resolved %s to id %s", key, found)

        self.cache[key] = found
        self._staged.append(key)
        return found
