"""Read-only status of an import run: checkpoint, process and live counts."""

import argparse
import json
import logging
from typing import Any, Dict, Optional

from listing_import.core.config import ConfigError, get_settings
from listing_import.core.control import pid_alive, read_pid
from listing_import.core.errors import CheckpointCorrupt
from listing_import.core.postgres_store import PostgresListingStore
from listing_import.core.progress import ProgressStore, build_progress_store
from listing_import.core.store import ListingStore

logger = logging.getLogger(__name__)


def collect_status(
    progress: ProgressStore,
    store: Optional[ListingStore] = None,
    pid_file: Optional[str] = None,
) -> Dict[str, Any]:
    """Gather the checkpoint, the importer process state and store aggregates.

    Nothing here writes: failures to read one part are reported in the
    result instead of raised, so monitoring keeps working while the
    database or the checkpoint is unhealthy.
    """
    status: Dict[str, Any] = {"checkpointLocation": progress.describe()}

    try:
        checkpoint = progress.load()
    except CheckpointCorrupt as exc:
        checkpoint = None
        status["checkpointError"] = str(exc)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Unable to load checkpoint from %s: %s", progress.describe(), exc)
        checkpoint = None
        status["checkpointError"] = str(exc)
    status["checkpoint"] = checkpoint.to_dict() if checkpoint else None

    pid = read_pid(pid_file) if pid_file else None
    running = pid is not None and pid_alive(pid)
    status["pid"] = pid if running else None
    status["running"] = running

    if running:
        state = "running"
    elif checkpoint is None:
        state = "not_started"
    elif checkpoint.completed_at:
        state = "completed"
    else:
        state = "stopped"
    status["state"] = state

    if store is not None:
        try:
            status["database"] = store.summary()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Unable to read store summary: %s", exc)
            status["database"] = {"error": str(exc)}
    return status


def format_status(status: Dict[str, Any]) -> str:
    lines = [f"Import state: {status['state']}" + (f" (PID {status['pid']})" if status.get("pid") else "")]
    checkpoint = status.get("checkpoint")
    if status.get("checkpointError"):
        lines.append(f"Checkpoint error: {status['checkpointError']}")
    if checkpoint:
        lines.append(f"Position: {checkpoint['position']}")
        lines.append(
            "Imported: {totalImported}  Skipped: {totalSkipped}  Errors: {totalErrors}".format(**checkpoint)
        )
        lines.append(f"Rate: {checkpoint['recordsPerMinute']:.0f} records/min")
        lines.append(f"Started: {checkpoint['startTime']}  Last update: {checkpoint['lastUpdate'] or '-'}")
        if checkpoint.get("completedAt"):
            lines.append(f"Completed: {checkpoint['completedAt']}")
        for entry in checkpoint["errors"][-5:]:
            lines.append(f"  ! {entry['timestamp']} {entry['message']}")
    else:
        lines.append("No checkpoint saved yet")

    database = status.get("database")
    if database and "error" in database:
        lines.append(f"Database unavailable: {database['error']}")
    elif database:
        lines.append(
            f"Database: {database['listings']} listings, {database['cities']} cities, {database['states']} states"
        )
        for row in database.get("topStates", []):
            lines.append(f"  {row['state']}: {row['listings']}")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Show the progress of the listing import")
    parser.add_argument("--json", dest="as_json", action="store_true", help="Print machine-readable JSON")
    parser.add_argument("--no-db", dest="no_db", action="store_true", help="Skip live database counts")
    return parser


def main(argv=None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc

    progress = build_progress_store(settings.checkpoint_backend, settings.checkpoint_path, settings.run_name)
    store = None if args.no_db or not settings.database_url else PostgresListingStore()
    try:
        status = collect_status(progress, store, settings.pid_file)
    finally:
        if store is not None:
            store.close()

    print(json.dumps(status, indent=2) if args.as_json else format_status(status))


if __name__ == "__main__":
    main()
