import dataclasses

import pytest

from listing_import.core import config
from listing_import.core.control import StopSignal
from listing_import.core.errors import AlreadyRunning, SourceUnavailable
from listing_import.core.memory_store import MemoryListingStore
from listing_import.core.progress import FileProgressStore
from listing_import.jobs import run_import


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("DATABASE_URL", "IMPORT_SOURCE_PATH", "IMPORT_BATCH_SIZE", "IMPORT_PARTITION_BY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("IMPORT_BATCH_PAUSE_SECONDS", "0")
    monkeypatch.setattr(StopSignal, "install_handlers", lambda self: None)
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


def test_dry_run_imports_into_memory(settings, write_csv, colorado_rows):
    path = write_csv(colorado_rows)

    result = run_import.run_import(settings, source_path=path, dry_run=True, stop=StopSignal())

    assert result["status"] == "completed"
    assert result["inserted"] == 3
    assert result["summary"]["listings"] == 3
    assert result["summary"]["topStates"] == [{"state": "CO", "listings": 3}]


def test_reset_checkpoint_restarts_from_zero(settings, write_csv, colorado_rows):
    path = write_csv(colorado_rows)
    progress = FileProgressStore(settings.checkpoint_path)
    run_import.run_import(settings, source_path=path, store=MemoryListingStore(), progress=progress, stop=StopSignal())

    store = MemoryListingStore()
    result = run_import.run_import(
        settings, source_path=path, store=store, progress=progress, reset_checkpoint=True, stop=StopSignal()
    )

    assert result["inserted"] == 3
    assert len(store.listings) == 3


def test_run_import_refuses_second_instance(settings, write_csv, colorado_rows, monkeypatch):
    path = write_csv(colorado_rows)
    with open(settings.pid_file, "w", encoding="utf-8") as fh:
        fh.write("424242")
    monkeypatch.setattr("listing_import.core.control.pid_alive", lambda pid: True)

    with pytest.raises(AlreadyRunning):
        run_import.run_import(settings, source_path=path, dry_run=True, stop=StopSignal())


def test_source_is_not_opened_while_another_import_runs(settings, write_csv, colorado_rows, monkeypatch):
    path = write_csv(colorado_rows)
    with open(settings.pid_file, "w", encoding="utf-8") as fh:
        fh.write("424242")
    monkeypatch.setattr("listing_import.core.control.pid_alive", lambda pid: True)
    opened = []
    monkeypatch.setattr(run_import, "open_source", lambda *args, **kwargs: opened.append(args))

    with pytest.raises(AlreadyRunning):
        run_import.run_import(settings, source_path=path, dry_run=True, stop=StopSignal())

    assert opened == []


def test_run_import_requires_source(settings):
    with pytest.raises(config.ConfigError):
        run_import.run_import(dataclasses.replace(settings, source_path=""), dry_run=True, stop=StopSignal())

    with pytest.raises(SourceUnavailable):
        run_import.run_import(settings, source_path="missing.csv", dry_run=True, stop=StopSignal())


def test_main_dry_run_succeeds(isolated_env, write_csv, colorado_rows, caplog):
    path = write_csv(colorado_rows)

    with caplog.at_level("INFO"):
        run_import.main(["--source", path, "--dry-run", "--partition-by", "none"])

    assert "Import completed" in " ".join(caplog.messages)


def test_main_exit_codes(isolated_env, write_csv, colorado_rows):
    path = write_csv(colorado_rows)

    with pytest.raises(SystemExit) as excinfo:
        run_import.main(["--source", path, "--dry-run", "--batch-size", "0"])
    assert excinfo.value.code == 2

    with pytest.raises(SystemExit) as excinfo:
        run_import.main(["--source", "missing.csv", "--dry-run"])
    assert excinfo.value.code == 1


def test_parser_defaults_leave_settings_untouched(settings):
    args = run_import.build_parser().parse_args([])
    assert run_import._apply_overrides(settings, args) is settings

    args = run_import.build_parser().parse_args(["--batch-size", "500", "--partition-by", "state"])
    updated = run_import._apply_overrides(settings, args)
    assert (updated.batch_size, updated.partition_by) == (500, "state")
