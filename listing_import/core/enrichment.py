"""Bounded worker pool for enrichment passes that call external APIs.

Units of work run outside the import transaction: each one is rate limited,
retried with exponential backoff and cached by a deterministic key, so a
repeated pass only pays for units that never succeeded. Results are handed
back to the calling thread, which owns all writes to the store.
"""

import hashlib
import json
import logging
import os
import random
import tempfile
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests

from listing_import.core.control import StopSignal

logger = logging.getLogger(__name__)

_MISSING = object()


class RateLimiter:
    """Enforce a minimum interval between request starts across threads."""

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic, sleep=time.sleep) -> None:
        self.min_interval = max(min_interval, 0.0)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_at = 0.0

    def wait(self) -> float:
        with self._lock:
            now = self._clock()
            delay = max(self._next_at - now, 0.0)
            self._next_at = max(now, self._next_at) + self.min_interval
        if delay > 0:
            self._sleep(delay)
        return delay


class ResponseCache:
    """JSON files named by the SHA-1 of the request key."""

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)

    @staticmethod
    def key_for(*parts: Any) -> str:
        text = "|".join(str(part).strip().lower() for part in parts)
        return hashlib.sha1(text.encode("utf-8")).hexdigest()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Any:
        try:
            with open(self._path(key), "r", encoding="utf-8") as fh:
                return json.load(fh)["value"]
        except FileNotFoundError:
            return _MISSING
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", key, exc)
            return _MISSING

    def put(self, key: str, value: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"value": value}, fh)
            os.replace(tmp_path, self._path(key))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


def is_retryable(exc: BaseException) -> bool:
    if getattr(exc, "retryable", False):
        return True
    return isinstance(exc, (requests.ConnectionError, requests.Timeout))


def call_with_retry(
    func: Callable[[], Any],
    *,
    max_retries: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep=time.sleep,
) -> Any:
    """Call ``func`` until it succeeds, retrying only errors ``retryable`` accepts."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except Exception as exc:
            if not retryable(exc) or attempt > max_retries:
                raise
            delay = min(base_delay * (2 ** (attempt - 1)), max_delay) + random.uniform(0, base_delay / 2)
            logger.warning("Request failed (attempt %s/%s): %s; retrying in %.1fs", attempt, max_retries + 1, exc, delay)
            sleep(delay)


@dataclass
class EnrichmentReport:
    attempted: int = 0
    fetched: int = 0
    cached: int = 0
    applied: int = 0
    failed: int = 0
    stopped: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "fetched": self.fetched,
            "cached": self.cached,
            "applied": self.applied,
            "failed": self.failed,
            "stopped": self.stopped,
            "errors": list(self.errors),
        }


class EnrichmentPool:
    """Fan units out to a thread pool and apply their results on the caller's thread."""

    def __init__(
        self,
        *,
        concurrency: int = 4,
        limiter: Optional[RateLimiter] = None,
        cache: Optional[ResponseCache] = None,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        stop: Optional[StopSignal] = None,
        sleep=time.sleep,
    ) -> None:
        self.concurrency = max(concurrency, 1)
        self.limiter = limiter or RateLimiter(0.0)
        self.cache = cache
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.stop = stop or StopSignal()
        self._sleep = sleep

    def run(
        self,
        units: Iterable[Any],
        fetch: Callable[[Any], Any],
        apply: Callable[[Any, Any], bool],
        key_for: Callable[[Any], str],
        describe: Callable[[Any], str] = str,
    ) -> EnrichmentReport:
        report = EnrichmentReport()
        pending: Dict[Future, Any] = {}
        iterator = iter(units)
        exhausted = False

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            while True:
                while not exhausted and len(pending) < self.concurrency * 2:
                    if self.stop.is_set():
                        report.stopped = True
                        exhausted = True
                        break
                    unit = next(iterator, _MISSING)
                    if unit is _MISSING:
                        exhausted = True
                        break
                    report.attempted += 1
                    pending[executor.submit(self._work, unit, fetch, key_for)] = unit
                if not pending:
                    break

                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    unit = pending.pop(future)
                    self._collect(unit, future, apply, describe, report)

        logger.info(
            "Enrichment pass finished: attempted=%d fetched=%d cached=%d applied=%d failed=%d%s",
            report.attempted,
            report.fetched,
            report.cached,
            report.applied,
            report.failed,
            " (stopped)" if report.stopped else "",
        )
        return report

    def _work(self, unit: Any, fetch: Callable[[Any], Any], key_for: Callable[[Any], str]) -> Tuple[Any, bool]:
        key = key_for(unit)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not _MISSING:
                return cached, True

        def _call():
            self.limiter.wait()
            return fetch(unit)

        value = call_with_retry(
            _call,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            sleep=self._sleep,
        )
        if self.cache is not None:
            self.cache.put(key, value)
        return value, False

    def _collect(self, unit, future: Future, apply, describe, report: EnrichmentReport) -> None:
        try:
            value, from_cache = future.result()
        except Exception as exc:  # noqa: BLE001
            report.failed += 1
            message = f"{describe(unit)}: {exc}"
            report.errors.append(message)
            logger.warning("Enrichment skipped %s", message)
            return

        if from_cache:
            report.cached += 1
        else:
            report.fetched += 1
        if apply(unit, value):
            report.applied += 1
