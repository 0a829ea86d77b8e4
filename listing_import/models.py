"""Core data models shared by the listing import pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class SourceRecord:
    """One row of the bulk dataset, addressed by its zero-based position."""

    position: int
    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    rating: Optional[str] = None
    review_count: Optional[str] = None
    services: Optional[str] = None
    hours: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(slots=True)
class CanonicalRecord:
    """A SourceRecord after normalization, ready for dimension resolution and insert."""

    position: int
    name: str
    slug: str
    address: str
    city: str
    state_abbr: str
    state_name: str
    zip: str
    phone: str
    hours: str
    latitude: str
    longitude: str
    rating: float
    review_count: int
    website: Optional[str] = None
    services: List[str] = field(default_factory=list)
    features: Dict[str, bool] = field(default_factory=dict)
    premium_score: int = 0
    is_premium: bool = False
    is_featured: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def natural_key(self) -> str:
        return f"{self.name} | {self.address} | {self.city}, {self.state_abbr}"


@dataclass(frozen=True, slots=True)
class UpsertResult:
    inserted: bool
    id: Optional[int] = None


@dataclass(slots=True)
class ErrorEntry:
    timestamp: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"timestamp": self.timestamp, "message": self.message}


@dataclass(slots=True)
class Checkpoint:
    """Durable progress of one import run.

    ``partition_offsets`` maps a work partition (a state abbreviation, or ``*``
    when the source is not partitioned) to the number of its records already
    committed. ``position`` is always the sum of those offsets.
    """

    partition_offsets: Dict[str, int] = field(default_factory=dict)
    total_imported: int = 0
    total_skipped: int = 0
    total_errors: int = 0
    records_per_minute: float = 0.0
    batches_run: int = 0
    source: Optional[str] = None
    start_time: str = field(default_factory=utc_now_iso)
    last_update: Optional[str] = None
    completed_at: Optional[str] = None
    errors: List[ErrorEntry] = field(default_factory=list)

    @property
    def position(self) -> int:
        return sum(self.partition_offsets.values())

    def record_error(self, message: str, limit: int) -> None:
        self.errors.append(ErrorEntry(timestamp=utc_now_iso(), message=message))
        if len(self.errors) > limit:
            del self.errors[: len(self.errors) - limit]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "partitionOffsets": dict(self.partition_offsets),
            "totalImported": self.total_imported,
            "totalSkipped": self.total_skipped,
            "totalErrors": self.total_errors,
            "recordsPerMinute": round(self.records_per_minute, 3),
            "batchesRun": self.batches_run,
            "source": self.source,
            "startTime": self.start_time,
            "lastUpdate": self.last_update,
            "completedAt": self.completed_at,
            "errors": [entry.to_dict() for entry in self.errors],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Checkpoint":
        """Build a checkpoint from its JSON form; unknown keys are ignored."""
        offsets = payload.get("partitionOffsets")
        if not isinstance(offsets, dict):
            # Older progress files only carried a flat position.
            position = int(payload.get("position") or 0)
            offsets = {"*": position} if position else {}

        errors = []
        for item in payload.get("errors") or []:
            if isinstance(item, dict) and item.get("message"):
                errors.append(ErrorEntry(timestamp=str(item.get("timestamp", "")), message=str(item["message"])))

        return cls(
            partition_offsets={str(key): int(value) for key, value in offsets.items()},
            total_imported=int(payload.get("totalImported") or 0),
            total_skipped=int(payload.get("totalSkipped") or 0),
            total_errors=int(payload.get("totalErrors") or 0),
            records_per_minute=float(payload.get("recordsPerMinute") or 0.0),
            batches_run=int(payload.get("batchesRun") or 0),
            source=payload.get("source"),
            start_time=payload.get("startTime") or utc_now_iso(),
            last_update=payload.get("lastUpdate"),
            completed_at=payload.get("completedAt"),
            errors=errors,
        )
