import os

from listing_import.core.memory_store import MemoryListingStore
from listing_import.core.progress import FileProgressStore, MemoryProgressStore
from listing_import.jobs import import_status
from listing_import.models import Checkpoint


class UnreachableStore(MemoryListingStore):
    def summary(self):
        raise ConnectionError("could not connect to server")


def test_status_before_first_run(tmp_path):
    status = import_status.collect_status(MemoryProgressStore(), pid_file=str(tmp_path / "missing.pid"))

    assert status["state"] == "not_started"
    assert status["checkpoint"] is None
    assert status["running"] is False
    assert "No checkpoint saved yet" in import_status.format_status(status)


def test_status_reports_checkpoint_and_live_counts():
    store = MemoryListingStore()
    state_id = store.insert_state("CO", "Colorado", "colorado")
    store.insert_city("Denver", state_id, "denver-co")
    checkpoint = Checkpoint(partition_offsets={"*": 3}, total_imported=3, completed_at="2026-01-01T00:00:00+00:00")

    status = import_status.collect_status(MemoryProgressStore(checkpoint), store)

    assert status["state"] == "completed"
    assert status["checkpoint"]["position"] == 3
    assert status["database"]["states"] == 1
    assert status["database"]["cities"] == 1
    text = import_status.format_status(status)
    assert "Import state: completed" in text
    assert "Imported: 3" in text


def test_status_detects_running_importer(tmp_path):
    pid_file = tmp_path / "import-service.pid"
    pid_file.write_text(str(os.getpid()), encoding="utf-8")

    status = import_status.collect_status(MemoryProgressStore(Checkpoint(partition_offsets={"*": 1})), pid_file=str(pid_file))

    assert status["state"] == "running"
    assert status["pid"] == os.getpid()


def test_status_survives_corrupt_checkpoint_and_store_errors(tmp_path):
    path = tmp_path / "progress.json"
    path.write_text("{oops", encoding="utf-8")

    status = import_status.collect_status(FileProgressStore(str(path)), UnreachableStore())

    assert status["state"] == "not_started"
    assert "not valid JSON" in status["checkpointError"]
    assert status["database"] == {"error": "could not connect to server"}
    assert path.read_text(encoding="utf-8") == "{oops"


def test_status_for_interrupted_run():
    status = import_status.collect_status(MemoryProgressStore(Checkpoint(partition_offsets={"*": 200})))
    assert status["state"] == "stopped"
