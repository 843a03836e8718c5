from __future__ import annotations

import pytest

from tms.errors import StorageError, ValidationError
from tms.services.storage import LocalDynamoStorage, OrchestrationRepository


@pytest.mark.unit
def test_transaction_rolls_back_on_error(tmp_path) -> None:
    storage = LocalDynamoStorage(tmp_path / "db.json")
    storage.upsert("runners", "r1", {"id": "r1", "current_jobs": 0})

    with pytest.raises(RuntimeError):
        with storage.transaction():
            storage.upsert("runners", "r1", {"id": "r1", "current_jobs": 5})
            storage.upsert("runners", "r2", {"id": "r2", "current_jobs": 1})
            raise RuntimeError("boom")

    assert storage.get("runners", "r1")["current_jobs"] == 0
    assert storage.get("runners", "r2") is None


@pytest.mark.unit
def test_persist_retries_then_raises_storage_error(tmp_path, monkeypatch) -> None:
    storage = LocalDynamoStorage(tmp_path / "db.json", retry_backoff=0)
    attempts = []

    def _failing_write(payload: str) -> None:
        attempts.append(payload)
        raise OSError("disk full")

    monkeypatch.setattr(storage, "_write_file", _failing_write)

    with pytest.raises(StorageError) as excinfo:
        storage.upsert("rules", "rule-1", {"id": "rule-1"})

    assert excinfo.value.code == "STORAGE_UNAVAILABLE"
    assert len(attempts) == 3
    assert storage.get("rules", "rule-1") is None


@pytest.mark.unit
def test_persist_recovers_after_transient_failure(tmp_path, monkeypatch) -> None:
    storage = LocalDynamoStorage(tmp_path / "db.json", retry_backoff=0)
    original = storage._write_file
    failures = {"left": 1}

    def _flaky_write(payload: str) -> None:
        if failures["left"]:
            failures["left"] -= 1
            raise OSError("temporarily locked")
        original(payload)

    monkeypatch.setattr(storage, "_write_file", _flaky_write)
    storage.upsert("rules", "rule-1", {"id": "rule-1"})

    reloaded = LocalDynamoStorage(tmp_path / "db.json")
    assert reloaded.get("rules", "rule-1") == {"id": "rule-1"}


@pytest.mark.unit
def test_reads_are_copies(tmp_path) -> None:
    storage = LocalDynamoStorage(tmp_path / "db.json")
    storage.upsert("runners", "r1", {"id": "r1", "capabilities": {"browsers": ["chromium"]}})

    fetched = storage.get("runners", "r1")
    fetched["capabilities"]["browsers"].append("firefox")

    assert storage.get("runners", "r1")["capabilities"]["browsers"] == ["chromium"]


@pytest.mark.unit
def test_state_survives_reload_and_fills_config_defaults(tmp_path) -> None:
    path = tmp_path / "db.json"
    repo = OrchestrationRepository(LocalDynamoStorage(path))
    repo.update_config({"health_failure_threshold": 5})

    reloaded = OrchestrationRepository(LocalDynamoStorage(path))
    config = reloaded.get_config()
    assert config["health_failure_threshold"] == 5
    assert config["default_timeout_seconds"] == 3600
    assert config["pinned_assignment_advisory"] is False


@pytest.mark.unit
def test_update_config_rejects_unknown_and_non_positive_values(tmp_path) -> None:
    repo = OrchestrationRepository(LocalDynamoStorage(tmp_path / "db.json"))

    with pytest.raises(ValidationError):
        repo.update_config({"unknown_key": 1})
    with pytest.raises(ValidationError):
        repo.update_config({"scheduler_interval_seconds": 0})

    config = repo.update_config({"pinned_assignment_advisory": True, "scheduler_interval_seconds": 2})
    assert config["pinned_assignment_advisory"] is True
    assert config["scheduler_interval_seconds"] == 2
