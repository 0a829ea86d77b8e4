"""Cooperative stop requests, inter-batch pacing and the single-process guard."""

import logging
import os
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from listing_import.core.errors import AlreadyRunning

logger = logging.getLogger(__name__)


class StopSignal:
    """Stop request raised by a signal, a stop file or a direct call.

    The runner polls ``is_set()`` between batches only, so a stop never
    interrupts a batch that is already in flight.
    """

    def __init__(self, stop_file: Optional[str] = None) -> None:
        self.stop_file = Path(stop_file) if stop_file else None
        self.reason: Optional[str] = None
        self._event = threading.Event()

    def request_stop(self, reason: str = "requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.info("Stop requested (%s); finishing after the current batch", reason)
        self._event.set()

    def is_set(self) -> bool:
        if not self._event.is_set() and self.stop_file is not None and self.stop_file.exists():
            self.request_stop(f"stop file {self.stop_file}")
        return self._event.is_set()

    def clear_stop_file(self) -> None:
        if self.stop_file is not None and self.stop_file.exists():
            self.stop_file.unlink()
            logger.info("Removed stale stop file %s", self.stop_file)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True when a stop arrived meanwhile."""
        return self._event.wait(timeout=max(seconds, 0.0))

    def install_handlers(self) -> None:
        def _handle(signum, _frame):
            self.request_stop(signal.Signals(signum).name)

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)


class Pacer:
    """Pause between batches, waking early when a stop is requested."""

    def __init__(self, stop: StopSignal, pause_seconds: float) -> None:
        self.stop = stop
        self.pause_seconds = pause_seconds

    def pause(self, seconds: Optional[float] = None) -> bool:
        delay = self.pause_seconds if seconds is None else seconds
        if delay <= 0:
            return self.stop.is_set()
        if self.stop.wait(delay):
            return True
        return self.stop.is_set()


def read_pid(path: str) -> Optional[int]:
    try:
        text = Path(path).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        return int(text)
    except ValueError:
        logger.warning("Ignoring unreadable PID file %s", path)
        return None


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@contextmanager
def pid_lock(path: str) -> Iterator[int]:
    """Hold ``path`` as this process's PID file; refuse to start twice."""
    pid_path = Path(path)
    existing = read_pid(path)
    if existing is not None and existing != os.getpid():
        if pid_alive(existing):
            raise AlreadyRunning(f"Import already running with PID {existing} ({pid_path})")
        logger.warning("Removing stale PID file %s for PID %s", pid_path, existing)

    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(str(os.getpid()), encoding="utf-8")
    try:
        yield os.getpid()
    finally:
        if read_pid(path) == os.getpid():
            pid_path.unlink()
