"""HTTP endpoint exposing import progress for external monitoring."""

from __future__ import annotations

import logging
from typing import Any

from flask import Flask, jsonify

from listing_import.core.config import get_settings
from listing_import.core.postgres_store import PostgresListingStore
from listing_import.core.progress import build_progress_store
from listing_import.jobs.import_status import collect_status

logger = logging.getLogger(__name__)

app = Flask(__name__)


def _progress_store():
    settings = get_settings()
    return build_progress_store(settings.checkpoint_backend, settings.checkpoint_path, settings.run_name)


def _listing_store():
    return PostgresListingStore() if get_settings().database_url else None


@app.get("/healthz")
def healthcheck() -> Any:
    """Liveness only; no database round trip."""
    return jsonify({"status": "ok"}), 200


@app.get("/status")
def import_status() -> Any:
    """Current checkpoint, importer process state and live store counts."""
    settings = get_settings()
    status = collect_status(_progress_store(), _listing_store(), settings.pid_file)
    return jsonify({"data": status}), 200


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    port = get_settings().status_port
    logger.info("Status server binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
