"""Durable checkpoint storage for resumable import runs."""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from psycopg2 import extras

from listing_import.core import db
from listing_import.core.errors import CheckpointCorrupt
from listing_import.models import Checkpoint

logger = logging.getLogger(__name__)


def _archive_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


class ProgressStore(ABC):
    """Load and save one run's checkpoint."""

    @abstractmethod
    def load(self) -> Optional[Checkpoint]:
        """Return the saved checkpoint, or None when no run has been recorded."""

    @abstractmethod
    def save(self, checkpoint: Checkpoint) -> None:
        """Persist ``checkpoint`` atomically; a crash leaves the old or the new value."""

    @abstractmethod
    def archive(self) -> None:
        """Move the current checkpoint aside so the next run starts from zero."""

    @abstractmethod
    def describe(self) -> str:
        ...


def _decode(text: str, origin: str) -> Checkpoint:
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise CheckpointCorrupt(f"Checkpoint {origin} is not valid JSON: {exc}") from exc
    return _from_payload(payload, origin)


def _from_payload(payload, origin: str) -> Checkpoint:
    if not isinstance(payload, dict):
        raise CheckpointCorrupt(f"Checkpoint {origin} must hold a JSON object")
    try:
        return Checkpoint.from_dict(payload)
    except (TypeError, ValueError, AttributeError) as exc:
        raise CheckpointCorrupt(f"Checkpoint {origin} has malformed fields: {exc}") from exc


class FileProgressStore(ProgressStore):
    """JSON checkpoint file replaced atomically via a temp file and rename."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def describe(self) -> str:
        return str(self.path)

    def load(self) -> Optional[Checkpoint]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return _decode(text, str(self.path))

    def save(self, checkpoint: Checkpoint) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(checkpoint.to_dict(), fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def archive(self) -> None:
        if not self.path.exists():
            return
        target = self.path.with_name(f"{self.path.stem}-{_archive_stamp()}{self.path.suffix}")
        os.replace(self.path, target)
        logger.info("Archived checkpoint to %s", target)


class MemoryProgressStore(ProgressStore):
    """Checkpoint kept as serialized JSON in memory, for dry runs."""

    def __init__(self, initial: Optional[Checkpoint] = None) -> None:
        self.payload: Optional[str] = json.dumps(initial.to_dict()) if initial else None
        self.saves = 0
        self.archived: List[str] = []

    def describe(self) -> str:
        return "memory"

    def load(self) -> Optional[Checkpoint]:
        if self.payload is None:
            return None
        return _decode(self.payload, self.describe())

    def save(self, checkpoint: Checkpoint) -> None:
        self.payload = json.dumps(checkpoint.to_dict())
        self.saves += 1

    def archive(self) -> None:
        if self.payload is not None:
            self.archived.append(self.payload)
            self.payload = None


_LOAD_PROGRESS = "SELECT payload FROM import_progress WHERE run_name = %s AND status = 'active'"

_SAVE_PROGRESS = """
INSERT INTO import_progress (run_name, payload, status, updated_at)
VALUES (%(run_name)s, %(payload)s, 'active', NOW())
ON CONFLICT (run_name) DO UPDATE
SET payload = EXCLUDED.payload, status = 'active', updated_at = NOW();
"""

_ARCHIVE_PROGRESS = """
UPDATE import_progress
SET run_name = %(archived_name)s,
    status = 'archived',
    updated_at = NOW()
WHERE run_name = %(run_name)s AND status = 'active';
"""


class DatabaseProgressStore(ProgressStore):
    """Checkpoint row in the ``import_progress`` table, one row per run name."""

    def __init__(self, run_name: str) -> None:
        self.run_name = run_name

    def describe(self) -> str:
        return f"import_progress[{self.run_name}]"

    def load(self) -> Optional[Checkpoint]:
        with db.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_LOAD_PROGRESS, (self.run_name,))
                row = cur.fetchone()
            conn.rollback()
        if row is None:
            return None
        payload = row[0]
        if isinstance(payload, str):
            return _decode(payload, self.describe())
        return _from_payload(payload, self.describe())

    def save(self, checkpoint: Checkpoint) -> None:
        with db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    _SAVE_PROGRESS,
                    {"run_name": self.run_name, "payload": extras.Json(checkpoint.to_dict())},
                )

    def archive(self) -> None:
        with db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    _ARCHIVE_PROGRESS,
                    {"run_name": self.run_name, "archived_name": f"{self.run_name}@{_archive_stamp()}"},
                )
        logger.info("Archived checkpoint %s", self.describe())


def build_progress_store(backend: str, path: str, run_name: str) -> ProgressStore:
    if backend == "database":
        return DatabaseProgressStore(run_name)
    return FileProgressStore(path)
