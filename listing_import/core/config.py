"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}
_PARTITION_MODES = {"none", "state"}
_CHECKPOINT_BACKENDS = {"file", "database"}


class ConfigError(RuntimeError):
    """Raised when configuration values are missing or malformed."""


@dataclass(frozen=True)
class Settings:
    database_url: str
    source_path: str = ""
    column_map_path: Optional[str] = None
    sheet_name: Optional[str] = None
    batch_size: int = 100
    batch_pause_seconds: float = 5.0
    partition_by: str = "state"
    checkpoint_backend: str = "file"
    checkpoint_path: str = "data/import-progress.json"
    run_name: str = "listing-import"
    stop_file: str = "stop-import"
    pid_file: str = "import-service.pid"
    max_consecutive_failures: int = 5
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 600.0
    max_error_log: int = 1000
    archive_on_complete: bool = False
    geocoder_url: str = ""
    geocoder_api_key: str = ""
    enrich_concurrency: int = 4
    enrich_min_interval_seconds: float = 0.2
    enrich_max_retries: int = 3
    enrich_cache_dir: str = "data/geocode-cache"
    status_port: int = 9100


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value


def _choice_env(name: str, default: str, choices: set) -> str:
    value = (os.getenv(name) or default).strip().lower()
    if value not in choices:
        raise ConfigError(f"{name} must be one of {sorted(choices)}, got {value!r}")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    source_path = os.getenv("IMPORT_SOURCE_PATH", "")
    checkpoint_backend = _choice_env("IMPORT_CHECKPOINT_BACKEND", "file", _CHECKPOINT_BACKENDS)
    geocoder_url = os.getenv("GEOCODER_URL", "")

    if not database_url:
        logger.warning("DATABASE_URL is not set; only dry runs against the in-memory store will work.")
    if not source_path:
        logger.warning("IMPORT_SOURCE_PATH is not set; pass the source file on the command line.")
    if not geocoder_url:
        logger.warning("GEOCODER_URL is not configured; coordinate back-fill will be unavailable.")

    return Settings(
        database_url=database_url,
        source_path=source_path,
        column_map_path=os.getenv("IMPORT_COLUMN_MAP") or None,
        sheet_name=os.getenv("IMPORT_SHEET_NAME") or None,
        batch_size=_int_env("IMPORT_BATCH_SIZE", 100, minimum=1),
        batch_pause_seconds=_float_env("IMPORT_BATCH_PAUSE_SECONDS", 5.0),
        partition_by=_choice_env("IMPORT_PARTITION_BY", "state", _PARTITION_MODES),
        checkpoint_backend=checkpoint_backend,
        checkpoint_path=os.getenv("IMPORT_CHECKPOINT_PATH", "data/import-progress.json"),
        run_name=os.getenv("IMPORT_RUN_NAME", "listing-import"),
        stop_file=os.getenv("IMPORT_STOP_FILE", "stop-import"),
        pid_file=os.getenv("IMPORT_PID_FILE", "import-service.pid"),
        max_consecutive_failures=_int_env("IMPORT_MAX_CONSECUTIVE_FAILURES", 5, minimum=1),
        backoff_base_seconds=_float_env("IMPORT_BACKOFF_BASE_SECONDS", 30.0),
        backoff_max_seconds=_float_env("IMPORT_BACKOFF_MAX_SECONDS", 600.0),
        max_error_log=_int_env("IMPORT_MAX_ERROR_LOG", 1000, minimum=1),
        archive_on_complete=os.getenv("IMPORT_ARCHIVE_ON_COMPLETE", "false").lower() in _TRUTHY,
        geocoder_url=geocoder_url,
        geocoder_api_key=os.getenv("GEOCODER_API_KEY", ""),
        enrich_concurrency=_int_env("ENRICH_CONCURRENCY", 4, minimum=1),
        enrich_min_interval_seconds=_float_env("ENRICH_MIN_INTERVAL_SECONDS", 0.2),
        enrich_max_retries=_int_env("ENRICH_MAX_RETRIES", 3),
        enrich_cache_dir=os.getenv("ENRICH_CACHE_DIR", "data/geocode-cache"),
        status_port=_int_env("STATUS_PORT", 9100, minimum=1),
    )
