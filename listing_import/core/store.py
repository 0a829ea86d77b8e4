"""Storage interface the import pipeline writes through."""

from abc import ABC, abstractmethod
from typing import Any, ContextManager, Dict, Iterable, List, Optional


class ListingStore(ABC):
    """A store with a uniqueness constraint, transactions and key lookups.

    ``transaction()`` scopes one batch; ``savepoint()`` scopes one record
    inside it. Both re-raise whatever escapes them after rolling back.
    """

    @abstractmethod
    def transaction(self) -> ContextManager[None]:
        ...

    @abstractmethod
    def savepoint(self) -> ContextManager[None]:
        ...

    @abstractmethod
    def is_transient(self, exc: BaseException) -> bool:
        """True when ``exc`` invalidates the whole batch rather than one record."""

    @abstractmethod
    def find_state(self, abbr: str) -> Optional[int]:
        ...

    @abstractmethod
    def insert_state(self, abbr: str, name: str, slug: str) -> Optional[int]:
        """Insert a state row; return its id, or None when it already exists."""

    @abstractmethod
    def find_city(self, name: str, state_id: int) -> Optional[int]:
        ...

    @abstractmethod
    def insert_city(self, name: str, state_id: int, slug: str) -> Optional[int]:
        """Insert a city row; return its id, or None when it already exists."""

    @abstractmethod
    def insert_listing(self, row: Dict[str, Any]) -> Optional[int]:
        """Insert a listing; return its id, or None when the slug is taken."""

    @abstractmethod
    def increment_counts(self, city_id: int, state_id: int) -> None:
        ...

    @abstractmethod
    def refresh_counts(self, city_ids: Iterable[int], state_ids: Iterable[int]) -> None:
        """Recompute denormalized listing counts for the given dimension rows."""

    @abstractmethod
    def summary(self) -> Dict[str, Any]:
        """Live aggregate counts for monitoring."""

    @abstractmethod
    def listings_missing_coordinates(self, placeholder: str, limit: int, missing_address: str) -> List[Dict[str, Any]]:
        """Listings with placeholder coordinates and a real street address to geocode."""

    @abstractmethod
    def update_coordinates(self, listing_id: int, latitude: str, longitude: str, placeholder: str) -> bool:
        """Fill coordinates only where they still hold the placeholder value."""

    def ensure_schema(self) -> None:
        pass

    def close(self) -> None:
        pass
