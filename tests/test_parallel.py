from __future__ import annotations

import pytest

from tms.errors import InvalidStateError, NotFoundError, StorageError, ValidationError
from tms.services.events import EventType
from tms.services.parallel import aggregate_shard_results


def _start(context, parent_id: str = "exec-parallel", total: int = 3, **config):
    payload = {"total_shards": total, "test_suite": "regression", "environment": "staging"}
    payload.update(config)
    return context.parallel.orchestrate_parallel_execution(parent_id, payload)


@pytest.mark.unit
def test_shards_are_created_with_contiguous_indices(context, recorder, register_runner) -> None:
    register_runner(max_concurrent_jobs=3)

    created = _start(context)

    assert created == {
        "total_shards": 3,
        "shard_ids": ["exec-parallel-shard-0", "exec-parallel-shard-1", "exec-parallel-shard-2"],
    }
    shards = context.repo.list_shards("exec-parallel")
    assert [shard["shard_index"] for shard in shards] == [0, 1, 2]
    assert all(shard["status"] == "assigned" for shard in shards)
    assert all(shard["runner_id"] for shard in shards)
    child = context.executions.get_status("exec-parallel-shard-1")
    assert child["parent_execution_id"] == "exec-parallel"
    assert child["metadata"]["total_shards"] == 3
    assert recorder.subjects(EventType.parallel_execution_started) == ["exec-parallel"]


@pytest.mark.unit
def test_partial_completion_reports_running_shards(context, register_runner) -> None:
    register_runner(max_concurrent_jobs=3)
    _start(context)

    for index in (0, 1):
        context.parallel.handle_shard_webhook(
            "exec-parallel", {"shard_index": index, "status": "completed", "results": {"total": 5, "passed": 5}}
        )

    status = context.parallel.get_status("exec-parallel")
    assert status["completed_shards"] == 2
    assert status["running_shards"] == 1
    assert status["status"] == "running"
    assert status["aggregate"] is None


@pytest.mark.unit
def test_parent_finalises_once_when_every_shard_is_terminal(context, recorder, register_runner) -> None:
    register_runner(max_concurrent_jobs=3)
    _start(context)

    context.parallel.handle_shard_webhook(
        "exec-parallel",
        {"shard_id": "exec-parallel-shard-0", "status": "completed", "results": {"total": 4, "passed": 4, "duration": 30}},
    )
    context.parallel.handle_shard_webhook(
        "exec-parallel",
        {"execution_id": "exec-parallel-shard-1", "status": "completed", "results": {"total": 4, "passed": 3, "failed": 1, "duration": 50}},
    )
    context.parallel.handle_shard_webhook(
        "exec-parallel", {"shard_index": 2, "status": "failed", "error_message": "runner lost"}
    )
    # Late redelivery must not emit a second completion.
    context.parallel.handle_shard_webhook("exec-parallel", {"shard_index": 2, "status": "failed"})

    status = context.parallel.get_status("exec-parallel")
    assert status["status"] == "completed"
    aggregate = status["aggregate"]
    assert aggregate["total"] == 8
    assert aggregate["passed"] == 7
    assert aggregate["failed"] == 1
    assert aggregate["duration"] == 50.0
    assert aggregate["completed_shards"] == 2
    assert aggregate["failed_shards"] == 1
    assert aggregate["has_failures"] is True
    assert recorder.subjects(EventType.parallel_execution_completed) == ["exec-parallel"]


@pytest.mark.unit
def test_shards_pinned_to_unavailable_runner_stay_queued(context, register_runner) -> None:
    pinned = register_runner(max_concurrent_jobs=3)
    register_runner(max_concurrent_jobs=3)
    runner = context.repo.get_runner(pinned)
    runner["health_status"] = "unhealthy"
    context.repo.save_runner(runner)

    _start(context, runner_preferences={"runner_id": pinned})

    status = context.parallel.get_status("exec-parallel")
    assert status["queued_shards"] == 3
    assert status["running_shards"] == 0


@pytest.mark.unit
def test_cancel_parent_cancels_outstanding_shards(context, recorder, register_runner) -> None:
    runner_id = register_runner(max_concurrent_jobs=2)
    _start(context)
    context.parallel.handle_shard_webhook("exec-parallel", {"shard_index": 0, "status": "completed"})

    status = context.parallel.cancel("exec-parallel")

    assert status["status"] == "cancelled"
    assert [shard["status"] for shard in status["shards"]] == ["completed", "cancelled", "cancelled"]
    assert context.repo.get_runner(runner_id)["current_jobs"] == 0
    assert recorder.of_type(EventType.parallel_execution_completed) == []
    with pytest.raises(InvalidStateError):
        context.parallel.cancel("exec-parallel")


@pytest.mark.unit
def test_shard_webhook_lookup_errors(context, register_runner) -> None:
    register_runner(max_concurrent_jobs=3)
    _start(context)

    with pytest.raises(NotFoundError):
        context.parallel.handle_shard_webhook("exec-other", {"shard_index": 0, "status": "running"})
    with pytest.raises(NotFoundError):
        context.parallel.handle_shard_webhook("exec-parallel", {"shard_index": 7, "status": "running"})
    with pytest.raises(ValidationError):
        context.parallel.handle_shard_webhook("exec-parallel", {"status": "running"})


@pytest.mark.unit
def test_artifacts_url_is_kept_on_shard(context, register_runner) -> None:
    register_runner(max_concurrent_jobs=3)
    _start(context, total=1)

    ack = context.parallel.handle_shard_webhook(
        "exec-parallel",
        {"shard_index": 0, "status": "completed", "artifacts_url": "https://ci.example.com/a/0"},
    )

    assert ack["shard_id"] == "exec-parallel-shard-0"
    assert ack["parent_execution_id"] == "exec-parallel"
    shard = context.repo.get_shard("exec-parallel-shard-0")
    assert shard["artifacts_url"] == "https://ci.example.com/a/0"
    assert shard["status"] == "completed"


@pytest.mark.unit
def test_duplicate_parent_id_and_bad_shard_count_are_rejected(context) -> None:
    _start(context, total=2)
    with pytest.raises(ValidationError):
        _start(context, total=2)
    with pytest.raises(ValidationError):
        _start(context, parent_id="exec-huge", total=65)


@pytest.mark.unit
def test_aggregate_collects_failed_test_details() -> None:
    shards = [
        {"id": "p-shard-0", "shard_index": 0, "status": "completed", "results": {"failed": 1, "failed_tests": ["login"]}},
        {"id": "p-shard-1", "shard_index": 1, "status": "cancelled", "results": None},
    ]

    aggregate = aggregate_shard_results(shards)

    assert aggregate["failed_test_details"] == [{"shard_index": 0, "test": "login"}]
    assert aggregate["cancelled_shards"] == 1
    assert aggregate["has_failures"] is True


@pytest.mark.unit
def test_failed_shard_sync_still_finalises_parent(context, recorder, register_runner, monkeypatch) -> None:
    register_runner(max_concurrent_jobs=2)
    _start(context, total=2)
    context.parallel.handle_shard_webhook("exec-parallel", {"shard_index": 0, "status": "completed"})

    save_shard = context.repo.save_shard
    failures = {"left": 1}

    def _flaky_save_shard(record):
        if failures["left"]:
            failures["left"] -= 1
            raise StorageError("disk full")
        return save_shard(record)

    monkeypatch.setattr(context.repo, "save_shard", _flaky_save_shard)
    context.parallel.handle_shard_webhook("exec-parallel", {"shard_index": 1, "status": "completed"})

    assert context.executions.get_status("exec-parallel-shard-1")["status"] == "completed"
    assert context.repo.get_shard("exec-parallel-shard-1")["status"] == "assigned"
    status = context.parallel.get_status("exec-parallel")
    assert status["status"] == "completed"
    assert status["completed_shards"] == 2
    assert status["aggregate"]["completed_shards"] == 2

    # A redelivered webhook repairs the stale shard row without finalising twice.
    context.parallel.handle_shard_webhook("exec-parallel", {"shard_index": 1, "status": "completed"})

    assert context.repo.get_shard("exec-parallel-shard-1")["status"] == "completed"
    assert recorder.subjects(EventType.parallel_execution_completed) == ["exec-parallel"]


@pytest.mark.unit
def test_reconcile_finishes_parent_left_running(context, register_runner) -> None:
    register_runner(max_concurrent_jobs=2)
    _start(context, total=2)
    context.parallel.handle_shard_webhook("exec-parallel", {"shard_index": 0, "status": "completed"})

    # Simulate a crash after the child transition committed but before any shard bookkeeping ran.
    child = context.repo.get_execution("exec-parallel-shard-1")
    child["status"] = "failed"
    child["error_message"] = "runner lost"
    context.repo.save_execution(child)

    assert context.parallel.reconcile() == ["exec-parallel"]
    assert context.parallel.reconcile() == []

    shard = context.repo.get_shard("exec-parallel-shard-1")
    assert shard["status"] == "failed"
    assert shard["error_message"] == "runner lost"
    assert context.parallel.get_status("exec-parallel")["aggregate"]["failed_shards"] == 1


@pytest.mark.unit
def test_cancel_parent_tolerates_shard_finishing_concurrently(context, register_runner, monkeypatch) -> None:
    register_runner(max_concurrent_jobs=3)
    _start(context)
    cancel = context.executions.cancel

    def _racing_cancel(execution_id, reason=None):
        if execution_id == "exec-parallel-shard-1":
            context.executions.mark_completed(execution_id, {"total": 1, "passed": 1})
        return cancel(execution_id, reason=reason)

    monkeypatch.setattr(context.executions, "cancel", _racing_cancel)
    status = context.parallel.cancel("exec-parallel")

    assert status["status"] == "cancelled"
    assert [shard["status"] for shard in status["shards"]] == ["cancelled", "completed", "cancelled"]
