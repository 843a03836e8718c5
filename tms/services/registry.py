from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from tms.constants import DEFAULT_MAX_CONCURRENT_JOBS, DEFAULT_RUNNER_PRIORITY
from tms.errors import InvalidStateError, ValidationError
from tms.schemas import TERMINAL_STATUSES, HealthStatus, RunnerStatus
from tms.services.storage import OrchestrationRepository, utcnow

LOGGER = logging.getLogger("tms.registry")

UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "priority",
        "capabilities",
        "max_concurrent_jobs",
        "endpoint_url",
        "webhook_url",
        "health_check_url",
        "metadata",
    }
)

_STATUS_ORDER = {status.value: index for index, status in enumerate(RunnerStatus)}


def free_capacity(runner: Dict[str, Any]) -> int:
    return int(runner.get("max_concurrent_jobs", 0)) - int(runner.get("current_jobs", 0))


def is_eligible(runner: Dict[str, Any], requested_type: Optional[str] = None) -> bool:
    """Whether the runner may receive new work right now.

    ``unknown`` health counts as eligible so freshly registered runners are
    usable before their first probe.
    """
    if runner.get("status") != RunnerStatus.active.value:
        return False
    if runner.get("health_status") == HealthStatus.unhealthy.value:
        return False
    if free_capacity(runner) <= 0:
        return False
    if requested_type and runner.get("type") != requested_type:
        return False
    return True


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"'{name}' must be a positive integer.")
    return value


class RunnerRegistry:
    """Catalog of execution agents with their capacity, capabilities and health."""

    def __init__(self, repo: OrchestrationRepository) -> None:
        self._repo = repo

    def register(self, spec: Dict[str, Any]) -> str:
        name = (spec.get("name") or "").strip()
        runner_type = (spec.get("type") or "").strip()
        if not name or not runner_type:
            raise ValidationError("Runner 'name' and 'type' are required.")
        status = spec.get("status") or RunnerStatus.active.value
        if status not in _STATUS_ORDER:
            raise ValidationError(f"Unknown runner status '{status}'.")
        max_jobs = spec.get("max_concurrent_jobs")
        max_jobs = DEFAULT_MAX_CONCURRENT_JOBS if max_jobs is None else _positive_int("max_concurrent_jobs", max_jobs)
        priority = spec.get("priority")

        now = utcnow()
        runner_id = str(uuid.uuid4())
        record = {
            "id": runner_id,
            "name": name,
            "type": runner_type,
            "endpoint_url": spec.get("endpoint_url"),
            "webhook_url": spec.get("webhook_url"),
            "health_check_url": spec.get("health_check_url"),
            "capabilities": dict(spec.get("capabilities") or {}),
            "max_concurrent_jobs": max_jobs,
            "current_jobs": 0,
            "priority": DEFAULT_RUNNER_PRIORITY if priority is None else int(priority),
            "status": status,
            "health_status": HealthStatus.unknown.value,
            "last_health_check": None,
            "consecutive_failures": 0,
            "metadata": dict(spec.get("metadata") or {}),
            "created_at": now,
            "updated_at": now,
        }
        self._repo.save_runner(record)
        LOGGER.info("Registered runner %s (%s, type=%s, max_jobs=%s)", runner_id, name, runner_type, max_jobs)
        return runner_id

    def get(self, runner_id: str) -> Dict[str, Any]:
        return self._repo.require_runner(runner_id)

    def list_runners(self) -> List[Dict[str, Any]]:
        return sorted(
            self._repo.list_runners(),
            key=lambda it: (_STATUS_ORDER.get(it.get("status"), 99), -int(it.get("priority", 0)), it.get("name", "")),
        )

    def update_runner(self, runner_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                "Fields not updatable: " + ", ".join(sorted(unknown)),
                context={"allowed": sorted(UPDATABLE_FIELDS)},
            )
        with self._repo.transaction():
            record = self._repo.require_runner(runner_id)
            updates = {k: v for k, v in patch.items() if v is not None}
            if "status" in updates:
                status = getattr(updates["status"], "value", updates["status"])
                if status not in _STATUS_ORDER:
                    raise ValidationError(f"Unknown runner status '{status}'.")
                updates["status"] = status
            if "max_concurrent_jobs" in updates:
                max_jobs = _positive_int("max_concurrent_jobs", updates["max_concurrent_jobs"])
                status = updates.get("status", record.get("status"))
                if status == RunnerStatus.active.value and max_jobs < int(record.get("current_jobs", 0)):
                    raise ValidationError(
                        "max_concurrent_jobs cannot drop below the runner's current jobs while it is active."
                    )
            if "priority" in updates:
                updates["priority"] = int(updates["priority"])
            record.update(updates)
            saved = self._repo.save_runner(record)
        LOGGER.info("Updated runner %s: %s", runner_id, ", ".join(sorted(updates)) or "no changes")
        return saved

    def delete_runner(self, runner_id: str) -> None:
        with self._repo.transaction():
            self._repo.require_runner(runner_id)
            referencing = [
                execution["id"]
                for execution in self._repo.list_executions()
                if execution.get("status") not in TERMINAL_STATUSES
                and runner_id in (execution.get("assigned_runner_id"), execution.get("requested_runner_id"))
            ]
            if referencing:
                raise InvalidStateError(
                    "Runner is referenced by active executions; set its status to 'inactive' instead.",
                    context={"executions": referencing},
                )
            self._repo.delete_runner(runner_id)
        LOGGER.info("Deleted runner %s", runner_id)

    def performance(self, runner_id: str, hours: int = 24) -> List[Dict[str, Any]]:
        """Average/min/max per metric type over the trailing window."""
        self._repo.require_runner(runner_id)
        since = datetime.now(tz=timezone.utc) - timedelta(hours=hours)
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for metric in self._repo.list_metrics(runner_id=runner_id, since=since):
            grouped.setdefault(metric["metric_type"], []).append(metric)
        summary = []
        for metric_type, samples in sorted(grouped.items()):
            values = [float(sample["metric_value"]) for sample in samples]
            summary.append(
                {
                    "metric_type": metric_type,
                    "metric_unit": samples[-1].get("metric_unit"),
                    "average": round(sum(values) / len(values), 3),
                    "minimum": min(values),
                    "maximum": max(values),
                    "samples": len(values),
                }
            )
        return summary
