"""Per-run state threaded through the import pipeline."""

from dataclasses import dataclass, field
from typing import Dict, Set, Tuple

from listing_import.core.config import Settings
from listing_import.core.store import ListingStore
from listing_import.models import Checkpoint


@dataclass
class RunContext:
    """Owns the store, the dimension cache and the run counters for one import."""

    store: ListingStore
    settings: Settings
    checkpoint: Checkpoint = field(default_factory=Checkpoint)
    dimension_cache: Dict[Tuple[str, ...], int] = field(default_factory=dict)
    touched_cities: Set[int] = field(default_factory=set)
    touched_states: Set[int] = field(default_factory=set)

    def reset_batch_state(self) -> None:
        self.touched_cities.clear()
        self.touched_states.clear()
