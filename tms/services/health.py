from __future__ import annotations

import http.client
import logging
import time
import urllib.error
import urllib.request
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from tms.schemas import HELD_STATUSES, ExecutionStatus, HealthStatus, OverallHealth, RunnerStatus
from tms.services.events import DomainEvent, EventBus, EventType
from tms.services.resources import ResourceTracker
from tms.services.storage import OrchestrationRepository, parse_timestamp, utcnow

LOGGER = logging.getLogger("tms.health")

Probe = Callable[[str, float], float]

DEGRADED_RUNNER_RATIO = 0.8
UNHEALTHY_RUNNER_RATIO = 0.5
DEGRADED_EXCEEDED_RATIO = 0.1

_SEVERITY = {OverallHealth.healthy: 0, OverallHealth.degraded: 1, OverallHealth.unhealthy: 2}


def http_probe(url: str, timeout: float) -> float:
    """GET ``url`` and return the response time in milliseconds.

    Raises ``urllib.error.URLError`` (including HTTP error statuses),
    ``http.client.HTTPException`` for malformed responses, or ``OSError``
    when the runner does not answer in time.
    """
    started = time.monotonic()
    with urllib.request.urlopen(url, timeout=timeout) as response:
        response.read(1024)
    return (time.monotonic() - started) * 1000.0


class HealthMonitor:
    """Probes runner health endpoints and demotes or promotes runners.

    A runner is demoted to ``unhealthy`` only after ``health_failure_threshold``
    consecutive failed probes and promoted back on the first success.
    """

    def __init__(
        self,
        repo: OrchestrationRepository,
        resources: ResourceTracker,
        events: EventBus,
        probe: Optional[Probe] = None,
    ) -> None:
        self._repo = repo
        self._resources = resources
        self._events = events
        self._probe = probe or http_probe

    def run_checks(self) -> Dict[str, str]:
        """Probe every active runner that exposes a health check URL."""
        outcome: Dict[str, str] = {}
        for runner in self._repo.list_runners():
            if runner.get("status") != RunnerStatus.active.value or not runner.get("health_check_url"):
                continue
            outcome[runner["id"]] = self.check_runner(runner["id"])
        return outcome

    def check_runner(self, runner_id: str) -> str:
        runner = self._repo.require_runner(runner_id)
        url = runner.get("health_check_url")
        if not url:
            LOGGER.debug("Runner %s has no health check URL; skipping probe", runner_id)
            return runner.get("health_status", HealthStatus.unknown.value)
        timeout = float(self._repo.get_config()["health_check_timeout_seconds"])
        try:
            elapsed_ms = self._probe(url, timeout)
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
            return self._record_result(runner_id, None, str(exc))
        return self._record_result(runner_id, elapsed_ms, None)

    def _record_result(self, runner_id: str, elapsed_ms: Optional[float], error: Optional[str]) -> str:
        threshold = self._repo.get_config()["health_failure_threshold"]
        with self._repo.transaction():
            runner = self._repo.get_runner(runner_id)
            if runner is None:
                return HealthStatus.unknown.value
            previous = runner.get("health_status", HealthStatus.unknown.value)
            runner["last_health_check"] = utcnow()
            if error is None:
                runner["consecutive_failures"] = 0
                runner["health_status"] = HealthStatus.healthy.value
                runner["last_health_error"] = None
                self._repo.record_metric(
                    metric_type="health_response_time",
                    metric_value=round(elapsed_ms or 0.0, 2),
                    metric_unit="ms",
                    runner_id=runner_id,
                )
            else:
                failures = int(runner.get("consecutive_failures", 0)) + 1
                runner["consecutive_failures"] = failures
                runner["last_health_error"] = error
                if failures >= threshold:
                    runner["health_status"] = HealthStatus.unhealthy.value
                LOGGER.debug("Health probe %s/%s failed for runner %s: %s", failures, threshold, runner_id, error)
            saved = self._repo.save_runner(runner)
        current = saved["health_status"]
        if current != previous:
            if current == HealthStatus.unhealthy.value:
                LOGGER.warning(
                    "Runner %s demoted to unhealthy after %s consecutive failed probes: %s",
                    runner_id,
                    saved["consecutive_failures"],
                    error,
                )
            else:
                LOGGER.info("Runner %s health changed %s -> %s", runner_id, previous, current)
            self._events.publish(
                DomainEvent(
                    type=EventType.runner_health_changed,
                    subject_id=runner_id,
                    payload={"runner_id": runner_id, "previous": previous, "current": current},
                )
            )
        return current

    # -- aggregate health -------------------------------------------------------------
    def system_health(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(tz=timezone.utc)
        config = self._repo.get_config()
        components = {
            "queue": self._queue_health(now, config["queue_wait_degraded_minutes"]),
            "runners": self._runner_health(),
            "resources": self._resource_health(),
        }
        overall = max((component["status"] for component in components.values()), key=_SEVERITY.get)
        return {
            "status": overall.value,
            "timestamp": now.isoformat(),
            "components": {
                name: {"status": component["status"].value, "details": component["details"]}
                for name, component in components.items()
            },
        }

    def _queue_health(self, now: datetime, threshold_minutes: int) -> Dict[str, Any]:
        executions = self._repo.list_executions()
        queued = [item for item in executions if item.get("status") == ExecutionStatus.queued.value]
        waits = []
        for item in queued:
            created = parse_timestamp(item.get("created_at"))
            if created is not None:
                waits.append(max(0.0, (now - created).total_seconds() / 60.0))
        average = sum(waits) / len(waits) if waits else 0.0
        status = OverallHealth.degraded if average > threshold_minutes else OverallHealth.healthy
        return {
            "status": status,
            "details": {
                "queued": len(queued),
                "in_flight": sum(1 for item in executions if item.get("status") in HELD_STATUSES),
                "average_wait_minutes": round(average, 2),
                "threshold_minutes": threshold_minutes,
            },
        }

    def _runner_health(self) -> Dict[str, Any]:
        active = [runner for runner in self._repo.list_runners() if runner.get("status") == RunnerStatus.active.value]
        healthy = [runner for runner in active if runner.get("health_status") != HealthStatus.unhealthy.value]
        ratio = len(healthy) / len(active) if active else 0.0
        if not active or ratio < UNHEALTHY_RUNNER_RATIO:
            status = OverallHealth.unhealthy
        elif ratio < DEGRADED_RUNNER_RATIO:
            status = OverallHealth.degraded
        else:
            status = OverallHealth.healthy
        return {
            "status": status,
            "details": {
                "active": len(active),
                "healthy": len(healthy),
                "unhealthy": len(active) - len(healthy),
                "healthy_ratio": round(ratio, 3),
            },
        }

    def _resource_health(self) -> Dict[str, Any]:
        summary = self._resources.get_system_resource_summary()
        ratio = summary["exceeded_ratio"]
        status = OverallHealth.degraded if ratio > DEGRADED_EXCEEDED_RATIO else OverallHealth.healthy
        return {"status": status, "details": {**summary["totals"], "exceeded_ratio": ratio}}
