from __future__ import annotations

from typing import Generator, Tuple

import pytest
from fastapi.testclient import TestClient

from tms.config import Settings
from tms.main import create_app
from tms.services.orchestrator import OrchestrationContext
from tms.services.storage import LocalDynamoStorage, OrchestrationRepository

TOKEN = "hook-secret"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def client(tmp_path, probe, sender) -> Generator[Tuple[TestClient, OrchestrationContext], None, None]:
    """Provide an isolated TestClient with a fresh state file and webhook auth enabled."""
    settings = Settings(state_path=tmp_path / "db.json", webhook_token=TOKEN, auto_start=False)
    repo = OrchestrationRepository(LocalDynamoStorage(settings.state_path, retry_backoff=0))
    context = OrchestrationContext(repo, settings, probe=probe, sender=sender, auto_start=False)
    with TestClient(create_app(context)) as test_client:
        yield test_client, context


def _register(api: TestClient, **overrides) -> str:
    body = {"name": "linux-1", "type": "docker", "maxConcurrentJobs": 2}
    body.update(overrides)
    resp = api.post("/api/runners/register", json=body)
    assert resp.status_code == 201
    return resp.json()["runnerId"]


@pytest.mark.api
def test_submit_assign_run_complete_over_http(client) -> None:
    api, _context = client
    runner_id = _register(api)

    resp = api.post("/api/executions", json={"testSuite": "smoke", "environment": "staging", "priority": 80})
    assert resp.status_code == 202
    accepted = resp.json()
    assert accepted["status"] == "queued"
    assert accepted["type"] == "regular"
    execution_id = accepted["executionId"]

    status = api.get(f"/api/executions/{execution_id}/status").json()
    assert status["type"] == "regular"
    assert status["execution"]["status"] == "assigned"
    assert status["execution"]["assigned_runner_id"] == runner_id

    resp = api.post(
        "/api/webhooks/execution-results",
        json={"executionId": execution_id, "status": "running"},
        headers=AUTH,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "running"

    resp = api.post(
        "/api/webhooks/execution-results",
        json={"executionId": execution_id, "status": "completed", "results": {"total": 3, "passed": 3, "duration": 12}},
        headers=AUTH,
    )
    assert resp.json() == {
        "received": True,
        "execution_id": execution_id,
        "status": "completed",
        "changed": True,
        "shard_id": None,
        "parent_execution_id": None,
    }

    runner = api.get(f"/api/runners/{runner_id}").json()
    assert runner["current_jobs"] == 0
    metrics = api.get(f"/api/executions/{execution_id}/metrics").json()
    assert {metric["metric_type"] for metric in metrics} == {"queue_time", "execution_time"}


@pytest.mark.api
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer nope"}, {"Authorization": TOKEN}])
def test_webhook_rejects_bad_token(client, headers) -> None:
    api, _context = client
    resp = api.post(
        "/api/webhooks/execution-results",
        json={"executionId": "exec-1", "status": "running"},
        headers=headers,
    )
    assert resp.status_code == 401
    assert resp.json()["code"] == "WEBHOOK_AUTH_FAILED"


@pytest.mark.api
def test_webhook_for_unknown_execution_is_404(client) -> None:
    api, _context = client
    resp = api.post(
        "/api/webhooks/execution-results",
        json={"executionId": "exec-unknown", "status": "completed"},
        headers=AUTH,
    )
    assert resp.status_code == 404
    assert resp.json()["code"] == "NOT_FOUND"


@pytest.mark.api
def test_submission_validation_errors(client) -> None:
    api, _context = client

    resp = api.post("/api/executions", json={"environment": "staging"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert "testSuite" in body["message"]

    resp = api.post("/api/executions", json={"testSuite": "  ", "environment": "staging"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"
    assert api.get("/api/executions").json() == []


@pytest.mark.api
def test_unknown_ids_return_404(client) -> None:
    api, _context = client
    for path in ("/api/executions/exec-nope", "/api/executions/exec-nope/status", "/api/runners/nope"):
        resp = api.get(path)
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"
    assert api.post("/api/executions/exec-nope/cancel").status_code == 404


@pytest.mark.api
def test_cancel_and_retry_over_http(client) -> None:
    api, _context = client
    execution_id = api.post("/api/executions", json={"testSuite": "api", "environment": "qa"}).json()["executionId"]

    resp = api.post(f"/api/executions/{execution_id}/cancel")
    assert resp.status_code == 200
    assert resp.json()["execution"]["status"] == "cancelled"

    resp = api.post(f"/api/executions/{execution_id}/cancel")
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_STATE"

    resp = api.post(f"/api/executions/{execution_id}/retry")
    assert resp.status_code == 201
    retried = resp.json()
    assert retried["retry_of"] == execution_id
    assert retried["status"] == "queued"

    queued = api.get("/api/executions", params={"status": "queued"}).json()
    assert [item["id"] for item in queued] == [retried["id"]]


@pytest.mark.api
def test_runner_update_allow_list(client) -> None:
    api, _context = client
    runner_id = _register(api)

    resp = api.put(f"/api/runners/{runner_id}", json={"currentJobs": 4})
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"

    resp = api.put(f"/api/runners/{runner_id}", json={"status": "maintenance", "priority": 70})
    assert resp.status_code == 200
    assert resp.json()["status"] == "maintenance"
    assert resp.json()["priority"] == 70

    assert api.delete(f"/api/runners/{runner_id}").status_code == 204
    assert api.get("/api/runners").json() == []


@pytest.mark.api
def test_rules_listed_by_priority(client) -> None:
    api, _context = client
    for name, priority in (("low", 10), ("high", 90), ("mid", 50)):
        resp = api.post(
            "/api/load-balancing-rules",
            json={"name": name, "ruleType": "round_robin", "testSuitePattern": "smoke*", "priority": priority},
        )
        assert resp.status_code == 201

    rules = api.get("/api/load-balancing-rules").json()
    assert [rule["name"] for rule in rules] == ["high", "mid", "low"]

    resp = api.post("/api/load-balancing-rules", json={"name": "bad", "ruleType": "random"})
    assert resp.status_code == 400

    resp = api.post("/api/load-balancing-rules", json={"name": "hyphenated", "ruleType": "round-robin", "priority": 1})
    assert resp.status_code == 201
    assert resp.json()["rule_type"] == "round_robin"

    assert api.delete(f"/api/load-balancing-rules/{rules[0]['id']}").status_code == 204
    assert api.delete(f"/api/load-balancing-rules/{rules[0]['id']}").status_code == 404


@pytest.mark.api
def test_parallel_submission_over_http(client) -> None:
    api, _context = client
    _register(api, maxConcurrentJobs=3)

    resp = api.post(
        "/api/executions",
        json={"testSuite": "regression", "environment": "staging", "parallelShards": 3, "executionId": "exec-par"},
    )
    assert resp.status_code == 202
    assert resp.json() == {"executionId": "exec-par", "status": "queued", "type": "parallel", "totalShards": 3}

    status = api.get("/api/executions/exec-par/status").json()
    assert status["type"] == "parallel"
    assert status["running_shards"] == 3

    resp = api.post(
        "/api/webhooks/parallel-execution/exec-par",
        json={"shardIndex": 1, "status": "completed", "results": {"total": 2, "passed": 2}},
        headers=AUTH,
    )
    assert resp.status_code == 200
    assert resp.json()["shard_id"] == "exec-par-shard-1"

    status = api.get("/api/executions/exec-par/status").json()
    assert status["completed_shards"] == 1
    assert status["running_shards"] == 2

    children = api.get("/api/executions", params={"parent_execution_id": "exec-par"}).json()
    assert len(children) == 3


@pytest.mark.api
def test_resources_and_system_health(client) -> None:
    api, _context = client
    runner_id = _register(api)
    api.post("/api/executions", json={"testSuite": "smoke", "environment": "staging"})

    utilization = api.get("/api/resources/utilization").json()
    assert utilization["totals"]["held"] == 1

    report = api.post(f"/api/resources/optimize/{runner_id}").json()
    assert report["status"] == "within_capacity"

    health = api.get("/api/system/health").json()
    assert health["status"] == "healthy"
    assert set(health["components"]) == {"queue", "runners", "resources"}


@pytest.mark.api
def test_health_check_endpoint_updates_runner(client, probe) -> None:
    api, _context = client
    runner_id = _register(api, healthCheckUrl="http://runner-1.internal/health")

    resp = api.post(f"/api/runners/{runner_id}/health-check")
    assert resp.status_code == 200
    assert resp.json()["health_status"] == "healthy"
    assert probe.calls == ["http://runner-1.internal/health"]

    perf = api.get(f"/api/runners/{runner_id}/metrics", params={"hours": 1}).json()
    assert perf[0]["metric_type"] == "health_response_time"


@pytest.mark.api
def test_config_round_trip(client) -> None:
    api, _context = client
    assert api.get("/api/config").json()["health_failure_threshold"] == 3

    resp = api.put("/api/config", json={"healthFailureThreshold": 5, "pinnedAssignmentAdvisory": True})
    assert resp.status_code == 200
    assert resp.json()["health_failure_threshold"] == 5
    assert resp.json()["pinned_assignment_advisory"] is True

    resp = api.put("/api/config", json={"schedulerIntervalSeconds": 0})
    assert resp.status_code == 400


@pytest.mark.api
def test_storage_outage_returns_storage_unavailable(client, monkeypatch) -> None:
    api, context = client

    def _fail(payload: str) -> None:
        raise OSError("read-only file system")

    monkeypatch.setattr(context.repo.storage, "_write_file", _fail)
    resp = api.post("/api/runners/register", json={"name": "linux-1", "type": "docker"})

    assert resp.status_code == 500
    assert resp.json()["code"] == "STORAGE_UNAVAILABLE"
    monkeypatch.undo()
    assert api.get("/api/runners").json() == []


@pytest.mark.api
def test_app_builds_its_own_context_from_settings(tmp_path) -> None:
    settings = Settings(state_path=tmp_path / "state.json", auto_start=False)
    app = create_app(settings=settings)

    with TestClient(app) as api:
        resp = api.post("/api/runners/register", json={"name": "linux-1", "type": "docker"})
        assert resp.status_code == 201
        assert api.get("/api/system/health").json()["status"] == "healthy"

    assert (tmp_path / "state.json").exists()
