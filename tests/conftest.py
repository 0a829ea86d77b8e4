import csv
import sys
from pathlib import Path

import pytest

# Ensure `listing_import` is importable when running pytest from the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from listing_import.core.config import Settings  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="",
        batch_size=2,
        batch_pause_seconds=0,
        partition_by="none",
        checkpoint_path=str(tmp_path / "data" / "import-progress.json"),
        stop_file=str(tmp_path / "stop-import"),
        pid_file=str(tmp_path / "import-service.pid"),
        max_consecutive_failures=3,
        backoff_base_seconds=0,
        backoff_max_seconds=0,
        enrich_cache_dir=str(tmp_path / "geocode-cache"),
        enrich_min_interval_seconds=0,
    )


@pytest.fixture
def write_csv(tmp_path):
    def _write(rows, name="listings.csv", headers=None):
        path = tmp_path / name
        headers = headers or list(rows[0].keys())
        with open(path, "w", encoding="utf-8", newline="") as fh:
            writer = csv.DictWriter(fh, fieldnames=headers)
            writer.writeheader()
            writer.writerows(rows)
        return str(path)

    return _write


@pytest.fixture
def colorado_rows():
    return [
        {"name": "A", "city": "Denver", "state": "CO"},
        {"name": "B", "city": "Denver", "state": "CO"},
        {"name": "C", "city": "Boulder", "state": "CO"},
    ]
