import pytest

from listing_import.core.memory_store import MemoryListingStore
from listing_import.core.progress import MemoryProgressStore
from listing_import.jobs import status_server
from listing_import.models import Checkpoint


@pytest.fixture(autouse=True)
def patch_stores(monkeypatch, settings):
    progress = MemoryProgressStore(Checkpoint(partition_offsets={"CO": 2, "TX": 1}, total_imported=3))
    store = MemoryListingStore()
    store.insert_state("CO", "Colorado", "colorado")
    monkeypatch.setattr(status_server, "get_settings", lambda: settings)
    monkeypatch.setattr(status_server, "_progress_store", lambda: progress)
    monkeypatch.setattr(status_server, "_listing_store", lambda: store)


def test_health_endpoint():
    client = status_server.app.test_client()
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_status_endpoint_returns_checkpoint_and_counts():
    client = status_server.app.test_client()
    response = client.get("/status")

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["state"] == "stopped"
    assert data["checkpoint"]["position"] == 3
    assert data["checkpoint"]["partitionOffsets"] == {"CO": 2, "TX": 1}
    assert data["database"]["states"] == 1


def test_status_endpoint_is_read_only():
    client = status_server.app.test_client()
    client.get("/status")
    client.get("/status")

    progress = status_server._progress_store()
    assert progress.saves == 0
