from __future__ import annotations

import urllib.error

import pytest

from tms.config import Settings
from tms.services.orchestrator import OrchestrationContext


@pytest.fixture
def secured_context(repo, tmp_path, probe, sender) -> OrchestrationContext:
    settings = Settings(
        state_path=tmp_path / "db.json",
        webhook_token="hook-token",
        runner_api_token="runner-token",
        webhook_base_url="https://tms.example.com",
        auto_start=False,
    )
    return OrchestrationContext(repo, settings, probe=probe, sender=sender, auto_start=False)


@pytest.mark.unit
def test_assigned_execution_is_triggered_on_runner(secured_context, sender) -> None:
    context = secured_context
    context.registry.register(
        {"name": "linux-1", "type": "docker", "endpoint_url": "http://runner-1.internal/run", "max_concurrent_jobs": 2}
    )
    execution_id = context.executions.enqueue({"test_suite": "smoke", "environment": "staging"})
    context.executions.try_assign(execution_id)

    assert context.dispatcher.dispatch_pending() == 1

    url, payload, headers = sender.calls[0]
    assert url == "http://runner-1.internal/run"
    assert headers["Authorization"] == "Bearer runner-token"
    assert payload["execution_id"] == execution_id
    assert payload["webhook_url"] == "https://tms.example.com/api/webhooks/execution-results"
    assert payload["webhook_token"] == "hook-token"
    assert payload["timeout_at"] is not None


@pytest.mark.unit
def test_shard_payload_points_at_parallel_webhook(secured_context, sender) -> None:
    context = secured_context
    context.registry.register(
        {"name": "linux-1", "type": "docker", "endpoint_url": "http://runner-1.internal/run", "max_concurrent_jobs": 2}
    )
    context.parallel.orchestrate_parallel_execution(
        "exec-p", {"total_shards": 2, "test_suite": "api", "environment": "qa"}
    )

    assert context.dispatcher.dispatch_pending() == 2
    webhook_urls = {payload["webhook_url"] for _, payload, _ in sender.calls}
    assert webhook_urls == {"https://tms.example.com/api/webhooks/parallel-execution/exec-p"}
    assert sorted(payload["shard_index"] for _, payload, _ in sender.calls) == [0, 1]


@pytest.mark.unit
def test_pull_runners_are_not_triggered(context, sender, register_runner, submit) -> None:
    register_runner()
    context.executions.try_assign(submit())

    assert context.dispatcher.dispatch_pending() == 0
    assert sender.calls == []


@pytest.mark.unit
def test_failed_trigger_returns_execution_to_queue(context, sender, register_runner, submit) -> None:
    runner_id = register_runner(endpoint_url="http://runner-1.internal/run")
    sender.error = urllib.error.URLError("connection refused")
    execution_id = submit()
    context.executions.try_assign(execution_id)

    assert context.dispatcher.dispatch_pending() == 0

    record = context.executions.get_status(execution_id)
    assert record["status"] == "queued"
    assert record["assigned_runner_id"] is None
    assert record["timeout_at"] is None
    assert context.repo.get_runner(runner_id)["current_jobs"] == 0


@pytest.mark.unit
def test_tick_sweeps_assigns_and_dispatches(context, sender, register_runner, submit) -> None:
    register_runner(endpoint_url="http://runner-1.internal/run")
    execution_id = submit()

    outcome = context.tick()

    assert outcome == {"assigned": 1, "timed_out": [], "dispatched": 1, "finalised": []}
    assert sender.calls[0][1]["execution_id"] == execution_id
    assert "Authorization" not in sender.calls[0][2]
