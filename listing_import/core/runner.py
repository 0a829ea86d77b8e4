"""Resumable batch import loop.

The runner walks the source in fixed-size batches, one database transaction
per batch and one savepoint per record, and saves a checkpoint after every
committed batch. A batch that fails as a whole is rolled back and retried
from the same offset after an escalating pause.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from listing_import.core.context import RunContext
from listing_import.core.control import Pacer, StopSignal
from listing_import.core.dimensions import DimensionResolver
from listing_import.core.errors import BatchRetryExhausted, RecordValidationError
from listing_import.core.progress import ProgressStore
from listing_import.core.sink import UpsertSink
from listing_import.etl.normalize import NormalizerConfig, normalize_record
from listing_import.etl.seo import Enricher, basic_seo_fields
from listing_import.etl.source import SourceHandle
from listing_import.models import Checkpoint, SourceRecord, utc_now_iso

logger = logging.getLogger(__name__)

WHOLE_SOURCE = "*"
UNKNOWN_STATE = "?"
RATE_SMOOTHING = 0.3


class RunnerState(Enum):
    IDLE = "idle"
    SELECTING_WORK = "selecting_work"
    PROCESSING_BATCH = "processing_batch"
    CHECKPOINTING = "checkpointing"
    ERROR_BACKOFF = "error_backoff"
    DONE = "done"


@dataclass
class BatchOutcome:
    processed: int = 0
    inserted: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


def smoothed_rate(previous: float, batch_rate: float) -> float:
    if previous <= 0:
        return batch_rate
    return (1 - RATE_SMOOTHING) * previous + RATE_SMOOTHING * batch_rate


def format_eta(remaining: int, records_per_minute: float) -> str:
    if remaining <= 0:
        return "0m"
    if records_per_minute <= 0:
        return "unknown"
    minutes = int(round(remaining / records_per_minute))
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m" if hours else f"{minutes}m"


class BatchRunner:
    def __init__(
        self,
        context: RunContext,
        source: SourceHandle,
        progress: ProgressStore,
        *,
        normalizer: Optional[NormalizerConfig] = None,
        enricher: Optional[Enricher] = basic_seo_fields,
        stop: Optional[StopSignal] = None,
        pacer: Optional[Pacer] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = context.settings
        self.context = context
        self.source = source
        self.progress = progress
        self.normalizer = normalizer or NormalizerConfig()
        self.enricher = enricher
        self.resolver = DimensionResolver(context, self.normalizer.states)
        self.sink = UpsertSink(context)
        self.stop = stop or StopSignal(settings.stop_file)
        self.pacer = pacer or Pacer(self.stop, settings.batch_pause_seconds)
        self.clock = clock
        self.state = RunnerState.IDLE

    @property
    def settings(self):
        return self.context.settings

    def run(self) -> Dict[str, Any]:
        self.state = RunnerState.IDLE
        checkpoint = self._load_checkpoint()
        self.context.checkpoint = checkpoint
        partitions = self._plan_partitions()
        total = sum(len(positions) for positions in partitions.values())
        logger.info(
            "Starting import of %s: %d records in %d partition(s), resuming at position %d",
            self.source.path,
            total,
            len(partitions),
            checkpoint.position,
        )

        run_totals = BatchOutcome()
        batches = 0
        failures = 0
        status = "completed"

        while True:
            self.state = RunnerState.SELECTING_WORK
            if self.stop.is_set():
                status = "stopped"
                break
            work = self._next_batch(partitions, checkpoint)
            if work is None:
                break
            partition, offset, positions = work

            self.state = RunnerState.PROCESSING_BATCH
            started = self.clock()
            try:
                outcome = self._process_batch(positions)
            except Exception as exc:  # noqa: BLE001
                self.state = RunnerState.ERROR_BACKOFF
                failures += 1
                if failures >= self.settings.max_consecutive_failures:
                    logger.error(
                        "Batch %s@%d failed %d consecutive times; giving up: %s",
                        partition,
                        offset,
                        failures,
                        exc,
                    )
                    raise BatchRetryExhausted(
                        f"batch {partition}@{offset} failed {failures} consecutive times: {exc}"
                    ) from exc
                delay = self._backoff_delay(failures)
                logger.warning(
                    "Batch %s@%d rolled back (%s); retry %d/%d in %.1fs",
                    partition,
                    offset,
                    exc,
                    failures,
                    self.settings.max_consecutive_failures - 1,
                    delay,
                )
                if self.pacer.pause(delay):
                    status = "stopped"
                    break
                continue

            failures = 0
            self.state = RunnerState.CHECKPOINTING
            elapsed = max(self.clock() - started, 1e-6)
            self._apply_outcome(checkpoint, partition, offset + len(positions), outcome, elapsed)
            self.progress.save(checkpoint)
            batches += 1
            run_totals.processed += outcome.processed
            run_totals.inserted += outcome.inserted
            run_totals.skipped += outcome.skipped
            run_totals.errors.extend(outcome.errors)
            self._log_progress(checkpoint, outcome, total)

            if self._next_batch(partitions, checkpoint) is not None and self.pacer.pause():
                status = "stopped"
                break

        self.state = RunnerState.DONE
        if status == "completed":
            self._complete(checkpoint, batches)
        else:
            logger.info("Import stopped at position %d (%s)", checkpoint.position, self.stop.reason)

        return {
            "status": status,
            "position": checkpoint.position,
            "total": total,
            "batches": batches,
            "inserted": run_totals.inserted,
            "skipped": run_totals.skipped,
            "errors": len(run_totals.errors),
            "checkpoint": checkpoint.to_dict(),
        }

    def _load_checkpoint(self) -> Checkpoint:
        source_label = str(Path(self.source.path).resolve())
        checkpoint = self.progress.load()
        if checkpoint is None:
            logger.info("No checkpoint at %s; starting from the beginning", self.progress.describe())
            return Checkpoint(source=source_label)
        if checkpoint.source and Path(checkpoint.source).resolve() != Path(source_label):
            logger.warning(
                "Checkpoint %s belongs to %s, not %s; starting fresh",
                self.progress.describe(),
                checkpoint.source,
                source_label,
            )
            return Checkpoint(source=source_label)
        keys = set(checkpoint.partition_offsets)
        by_state = self.settings.partition_by == "state"
        if keys and ((WHOLE_SOURCE in keys) == by_state):
            logger.warning(
                "Checkpoint %s was written with a different partition mode; starting fresh",
                self.progress.describe(),
            )
            return Checkpoint(source=source_label)
        checkpoint.source = source_label
        return checkpoint

    def _plan_partitions(self) -> Dict[str, Sequence[int]]:
        if self.settings.partition_by != "state":
            return {WHOLE_SOURCE: range(self.source.count())}
        groups: Dict[str, List[int]] = {}
        for position, value in self.source.iter_field("state"):
            abbr, _ = self.normalizer.states.resolve(value)
            groups.setdefault(abbr or UNKNOWN_STATE, []).append(position)
        return dict(sorted(groups.items()))

    def _next_batch(
        self, partitions: Dict[str, Sequence[int]], checkpoint: Checkpoint
    ) -> Optional[Tuple[str, int, Sequence[int]]]:
        for partition, positions in partitions.items():
            offset = checkpoint.partition_offsets.get(partition, 0)
            if offset < len(positions):
                return partition, offset, positions[offset : offset + self.settings.batch_size]
        return None

    def _backoff_delay(self, failures: int) -> float:
        delay = self.settings.backoff_base_seconds * (2 ** (failures - 1))
        return min(delay, self.settings.backoff_max_seconds)

    def _process_batch(self, positions: Sequence[int]) -> BatchOutcome:
        records = self.source.fetch(positions)
        outcome = BatchOutcome()
        try:
            with self.context.store.transaction():
                for raw in records:
                    self._process_record(raw, outcome)
                self.sink.refresh_counts()
        except Exception:
            self.resolver.discard_all()
            self.context.reset_batch_state()
            raise
        self.resolver.commit()
        return outcome

    def _process_record(self, raw: SourceRecord, outcome: BatchOutcome) -> None:
        outcome.processed += 1
        try:
            record = normalize_record(raw, self.normalizer)
        except RecordValidationError as exc:
            outcome.errors.append(str(exc))
            logger.warning("Skipping invalid record: %s", exc)
            return

        mark = self.resolver.mark()
        store = self.context.store
        try:
            with store.savepoint():
                state_id = self.resolver.resolve_state(record.state_abbr)
                city_id = self.resolver.resolve_city(record.city, state_id)
                enrichment = self.enricher(record) if self.enricher else None
                result = self.sink.upsert(record, state_id, city_id, enrichment)
        except Exception as exc:  # noqa: BLE001
            self.resolver.discard_since(mark)
            if store.is_transient(exc):
                raise
            message = f"row {record.position} ({record.natural_key}): {exc}"
            outcome.errors.append(message)
            logger.warning("Failed to import %s", message)
            return

        if result.inserted:
            outcome.inserted += 1
        else:
            outcome.skipped += 1
            logger.debug("Listing %s already imported", record.slug)

    def _apply_outcome(
        self, checkpoint: Checkpoint, partition: str, new_offset: int, outcome: BatchOutcome, elapsed: float
    ) -> None:
        checkpoint.partition_offsets[partition] = new_offset
        checkpoint.total_imported += outcome.inserted
        checkpoint.total_skipped += outcome.skipped
        checkpoint.total_errors += len(outcome.errors)
        for message in outcome.errors:
            checkpoint.record_error(message, self.settings.max_error_log)
        checkpoint.records_per_minute = smoothed_rate(
            checkpoint.records_per_minute, outcome.processed / elapsed * 60
        )
        checkpoint.batches_run += 1
        checkpoint.last_update = utc_now_iso()

    def _log_progress(self, checkpoint: Checkpoint, outcome: BatchOutcome, total: int) -> None:
        remaining = total - checkpoint.position
        percent = (checkpoint.position / total * 100) if total else 100.0
        logger.info(
            "Batch %d: +%d imported, %d skipped, %d errors | position %d/%d (%.1f%%) | "
            "total imported %d | %.0f records/min | ETA %s",
            checkpoint.batches_run,
            outcome.inserted,
            outcome.skipped,
            len(outcome.errors),
            checkpoint.position,
            total,
            percent,
            checkpoint.total_imported,
            checkpoint.records_per_minute,
            format_eta(remaining, checkpoint.records_per_minute),
        )

    def _complete(self, checkpoint: Checkpoint, batches: int) -> None:
        if checkpoint.completed_at is None or batches:
            checkpoint.completed_at = utc_now_iso()
            checkpoint.last_update = checkpoint.completed_at
            self.progress.save(checkpoint)
        logger.info(
            "Import complete: position %d, %d imported, %d skipped, %d errors",
            checkpoint.position,
            checkpoint.total_imported,
            checkpoint.total_skipped,
            checkpoint.total_errors,
        )
        if self.settings.archive_on_complete:
            self.progress.archive()
