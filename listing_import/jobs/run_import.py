"""CLI job that imports a listing dataset in resumable batches."""

import argparse
import dataclasses
import logging
from typing import Any, Dict, Optional

import psycopg2

from listing_import.core.config import ConfigError, Settings, get_settings
from listing_import.core.context import RunContext
from listing_import.core.control import StopSignal, pid_lock
from listing_import.core.errors import AlreadyRunning, BatchRetryExhausted, CheckpointCorrupt, SourceUnavailable
from listing_import.core.memory_store import MemoryListingStore
from listing_import.core.postgres_store import PostgresListingStore
from listing_import.core.progress import MemoryProgressStore, ProgressStore, build_progress_store
from listing_import.core.runner import BatchRunner
from listing_import.core.store import ListingStore
from listing_import.etl.source import load_column_map, open_source

logger = logging.getLogger(__name__)

FATAL_ERRORS = (SourceUnavailable, CheckpointCorrupt, AlreadyRunning, BatchRetryExhausted, psycopg2.Error)


def run_import(
    settings: Settings,
    *,
    source_path: Optional[str] = None,
    dry_run: bool = False,
    reset_checkpoint: bool = False,
    store: Optional[ListingStore] = None,
    progress: Optional[ProgressStore] = None,
    stop: Optional[StopSignal] = None,
) -> Dict[str, Any]:
    path = source_path or settings.source_path
    if not path:
        raise ConfigError("A source file is required (--source or IMPORT_SOURCE_PATH)")

    column_map = load_column_map(settings.column_map_path)

    if store is None:
        store = MemoryListingStore() if dry_run else PostgresListingStore()
    if progress is None:
        if dry_run:
            progress = MemoryProgressStore()
        else:
            progress = build_progress_store(settings.checkpoint_backend, settings.checkpoint_path, settings.run_name)
    if stop is None:
        stop = StopSignal(settings.stop_file)
        stop.install_handlers()

    try:
        with pid_lock(settings.pid_file), open_source(
            path, column_map=column_map, sheet_name=settings.sheet_name
        ) as source:
            store.ensure_schema()
            if reset_checkpoint:
                logger.info("Resetting checkpoint %s", progress.describe())
                progress.archive()
            stop.clear_stop_file()

            context = RunContext(store=store, settings=settings)
            runner = BatchRunner(context, source, progress, stop=stop)
            result = runner.run()
    finally:
        store.close()

    if dry_run:
        result["summary"] = store.summary()
    return result


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides = {}
    if args.source:
        overrides["source_path"] = args.source
    if args.column_map:
        overrides["column_map_path"] = args.column_map
    if args.sheet:
        overrides["sheet_name"] = args.sheet
    if args.batch_size is not None:
        if args.batch_size < 1:
            raise ConfigError(f"--batch-size must be >= 1, got {args.batch_size}")
        overrides["batch_size"] = args.batch_size
    if args.pause is not None:
        if args.pause < 0:
            raise ConfigError(f"--pause must not be negative, got {args.pause}")
        overrides["batch_pause_seconds"] = args.pause
    if args.partition_by:
        overrides["partition_by"] = args.partition_by
    return dataclasses.replace(settings, **overrides) if overrides else settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import business listings in resumable batches")
    parser.add_argument("--source", help="CSV or XLSX file to import (defaults to IMPORT_SOURCE_PATH)")
    parser.add_argument("--column-map", dest="column_map", help="JSON file mapping fields to source headers")
    parser.add_argument("--sheet", help="Worksheet to read from an XLSX source")
    parser.add_argument("--batch-size", dest="batch_size", type=int, help="Records per batch transaction")
    parser.add_argument("--pause", type=float, help="Seconds to wait between batches")
    parser.add_argument(
        "--partition-by",
        dest="partition_by",
        choices=["none", "state"],
        help="Walk the source as one partition or state by state",
    )
    parser.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        help="Run against an in-memory store without saving a checkpoint",
    )
    parser.add_argument(
        "--reset-checkpoint",
        dest="reset_checkpoint",
        action="store_true",
        help="Archive the saved checkpoint and start from the beginning",
    )
    return parser


def main(argv=None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    try:
        settings = _apply_overrides(get_settings(), args)
        result = run_import(settings, dry_run=args.dry_run, reset_checkpoint=args.reset_checkpoint)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc
    except FATAL_ERRORS as exc:
        logger.error("Import failed: %s", exc)
        raise SystemExit(1) from exc

    logger.info(
        "Import %s: position %d/%d, %d inserted and %d skipped this run, %d errors",
        result["status"],
        result["position"],
        result["total"],
        result["inserted"],
        result["skipped"],
        result["errors"],
    )
    if "summary" in result:
        logger.info("Dry-run store summary: %s", result["summary"])


if __name__ == "__main__":
    main()
