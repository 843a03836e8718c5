from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from tms.errors import InvalidStateError, NotFoundError, ValidationError
from tms.schemas import TERMINAL_STATUSES, ExecutionStatus, ParentStatus
from tms.services.events import DomainEvent, EventBus, EventType
from tms.services.executions import ExecutionQueueManager, execution_event, new_execution_record
from tms.services.storage import OrchestrationRepository, utcnow
from tms.services.webhooks import WebhookResultIngestor

LOGGER = logging.getLogger("tms.parallel")

DEFAULT_TOTAL_SHARDS = 4
MAX_TOTAL_SHARDS = 64

_EXECUTION_EVENTS = {
    EventType.execution_assigned,
    EventType.execution_started,
    EventType.execution_completed,
    EventType.execution_failed,
    EventType.execution_cancelled,
}


def shard_id_for(parent_id: str, index: int) -> str:
    return f"{parent_id}-shard-{index}"


def _shard_fields(execution: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "status": execution["status"],
        "runner_id": execution.get("assigned_runner_id") or execution.get("cancelled_from"),
        "started_at": execution.get("started_at"),
        "completed_at": execution.get("completed_at"),
        "results": execution.get("results"),
        "error_message": execution.get("error_message"),
    }


def aggregate_shard_results(shards: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Roll shard outcomes up into one report without judging overall success."""
    totals = {"total": 0, "passed": 0, "failed": 0, "skipped": 0}
    duration = 0.0
    failed_tests: List[Any] = []
    outcomes: List[Dict[str, Any]] = []
    for shard in shards:
        results = shard.get("results") or {}
        for key in totals:
            try:
                totals[key] += int(results.get(key) or 0)
            except (TypeError, ValueError):
                LOGGER.debug("Ignoring non-numeric %s in shard %s results", key, shard["id"])
        try:
            duration = max(duration, float(results.get("duration") or 0))
        except (TypeError, ValueError):
            LOGGER.debug("Ignoring non-numeric duration in shard %s results", shard["id"])
        for detail in results.get("failed_tests") or results.get("failed_test_details") or []:
            failed_tests.append({"shard_index": shard["shard_index"], "test": detail})
        outcomes.append(
            {
                "shard_index": shard["shard_index"],
                "status": shard.get("status"),
                "runner_id": shard.get("runner_id"),
                "error_message": shard.get("error_message"),
                "artifacts_url": shard.get("artifacts_url"),
            }
        )
    statuses = [shard.get("status") for shard in shards]
    return {
        **totals,
        "duration": duration,
        "completed_shards": statuses.count(ExecutionStatus.completed.value),
        "failed_shards": statuses.count(ExecutionStatus.failed.value),
        "cancelled_shards": statuses.count(ExecutionStatus.cancelled.value),
        "has_failures": bool(totals["failed"]) or ExecutionStatus.failed.value in statuses,
        "failed_test_details": failed_tests,
        "shards": outcomes,
    }


class ParallelExecutionCoordinator:
    """Splits one logical execution into N independently assigned shards.

    Every shard is backed by its own child execution, so assignment, webhooks,
    cancellation and timeouts reuse the regular execution lifecycle. Child
    executions are the source of truth for shard status; shard rows are a
    synced copy that also carries ``artifacts_url``. The coordinator listens to
    child execution events to refresh those rows and to finalise the parent
    exactly once.
    """

    def __init__(
        self,
        repo: OrchestrationRepository,
        executions: ExecutionQueueManager,
        ingestor: WebhookResultIngestor,
        events: EventBus,
    ) -> None:
        self._repo = repo
        self._executions = executions
        self._ingestor = ingestor
        self._events = events
        events.subscribe(None, self._on_event)

    def orchestrate_parallel_execution(
        self, parent_id: str, config: Dict[str, Any], *, assign: bool = True
    ) -> Dict[str, Any]:
        total = config.get("total_shards")
        total = DEFAULT_TOTAL_SHARDS if total is None else int(total)
        if total < 1 or total > MAX_TOTAL_SHARDS:
            raise ValidationError(f"total_shards must be between 1 and {MAX_TOTAL_SHARDS}.")
        preferences = config.get("runner_preferences") or {}
        metadata = dict(config.get("metadata") or {})
        default_timeout = self._repo.get_config()["default_timeout_seconds"]

        children: List[Dict[str, Any]] = []
        with self._repo.transaction():
            if self._repo.get_parallel_execution(parent_id) or self._repo.get_execution(parent_id):
                raise ValidationError(
                    f"Execution id '{parent_id}' already exists.", context={"execution_id": parent_id}
                )
            now = utcnow()
            parent = {
                "id": parent_id,
                "test_suite": config.get("test_suite"),
                "environment": config.get("environment"),
                "priority": config.get("priority"),
                "total_shards": total,
                "runner_preferences": dict(preferences),
                "metadata": metadata,
                "status": ParentStatus.running.value,
                "aggregate": None,
                "created_at": now,
                "completed_at": None,
            }
            self._repo.save_parallel_execution(parent)
            for index in range(total):
                child_id = shard_id_for(parent_id, index)
                if self._repo.get_execution(child_id):
                    raise ValidationError(f"Execution id '{child_id}' already exists.")
                child = new_execution_record(
                    {
                        "test_suite": config.get("test_suite"),
                        "environment": config.get("environment"),
                        "priority": config.get("priority"),
                        "estimated_duration": config.get("estimated_duration"),
                        "requested_runner_type": preferences.get("runner_type"),
                        "requested_runner_id": preferences.get("runner_id"),
                        "metadata": {**metadata, "shard_index": index, "total_shards": total},
                        "parent_execution_id": parent_id,
                        "shard_index": index,
                    },
                    execution_id=child_id,
                    default_timeout_seconds=default_timeout,
                )
                children.append(self._repo.save_execution(child))
                self._repo.save_shard(
                    {
                        "id": child_id,
                        "parent_execution_id": parent_id,
                        "shard_index": index,
                        "total_shards": total,
                        "execution_id": child_id,
                        "runner_id": None,
                        "status": ExecutionStatus.queued.value,
                        "started_at": None,
                        "completed_at": None,
                        "results": None,
                        "error_message": None,
                        "artifacts_url": None,
                    }
                )

        LOGGER.info("Created parallel execution %s with %s shard(s)", parent_id, total)
        self._events.publish(
            DomainEvent(
                type=EventType.parallel_execution_started,
                subject_id=parent_id,
                payload={"parent_execution_id": parent_id, "total_shards": total},
            )
        )
        for child in children:
            self._events.publish(execution_event(EventType.execution_queued, child))
        if assign:
            self.assign_shards(parent_id)
        return {"total_shards": total, "shard_ids": [child["id"] for child in children]}

    def assign_shards(self, parent_id: str) -> int:
        assigned = 0
        for shard in self._repo.list_shards(parent_id):
            if shard.get("status") != ExecutionStatus.queued.value:
                continue
            if self._executions.try_assign(shard["execution_id"]):
                assigned += 1
        LOGGER.debug("Assigned %s shard(s) of parallel execution %s", assigned, parent_id)
        return assigned

    def is_parent(self, execution_id: str) -> bool:
        return self._repo.get_parallel_execution(execution_id) is not None

    def _resolve_shard(self, parent_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        shard: Optional[Dict[str, Any]] = None
        if payload.get("shard_id"):
            shard = self._repo.get_shard(payload["shard_id"])
        elif payload.get("shard_index") is not None:
            shard = self._repo.get_shard(shard_id_for(parent_id, int(payload["shard_index"])))
        elif payload.get("execution_id"):
            shard = self._repo.get_shard(payload["execution_id"])
        else:
            raise ValidationError("Shard webhook requires 'shardId', 'shardIndex' or 'executionId'.")
        if shard is None or shard.get("parent_execution_id") != parent_id:
            reference = payload.get("shard_id") or payload.get("shard_index") or payload.get("execution_id")
            raise NotFoundError("Shard", f"{parent_id}/{reference}")
        return shard

    def handle_shard_webhook(self, parent_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.is_parent(parent_id):
            raise NotFoundError("Parallel execution", parent_id)
        shard = self._resolve_shard(parent_id, payload)
        if payload.get("artifacts_url"):
            with self._repo.transaction():
                current = self._repo.get_shard(shard["id"])
                current["artifacts_url"] = payload["artifacts_url"]
                self._repo.save_shard(current)
        outcome = self._ingestor.on_execution_result(
            {
                "execution_id": shard["execution_id"],
                "status": payload.get("status"),
                "results": payload.get("results"),
                "error_message": payload.get("error_message"),
            }
        )
        if not outcome.get("changed"):
            # Redelivery: repair a shard row or parent left behind by an earlier failed write.
            self._sync_shard(shard["execution_id"])
            self._check_completion(parent_id)
        return {**outcome, "shard_id": shard["id"], "parent_execution_id": parent_id}

    def get_status(self, parent_id: str) -> Dict[str, Any]:
        parent = self._repo.get_parallel_execution(parent_id)
        if parent is None:
            raise NotFoundError("Parallel execution", parent_id)
        shards = self._shard_views(parent_id)
        statuses = [shard.get("status") for shard in shards]
        return {
            "type": "parallel",
            "parent_execution_id": parent_id,
            "status": parent["status"],
            "test_suite": parent.get("test_suite"),
            "environment": parent.get("environment"),
            "total_shards": parent["total_shards"],
            "completed_shards": statuses.count(ExecutionStatus.completed.value),
            "failed_shards": statuses.count(ExecutionStatus.failed.value),
            "running_shards": statuses.count(ExecutionStatus.assigned.value)
            + statuses.count(ExecutionStatus.running.value),
            "queued_shards": statuses.count(ExecutionStatus.queued.value),
            "cancelled_shards": statuses.count(ExecutionStatus.cancelled.value),
            "aggregate": parent.get("aggregate"),
            "created_at": parent.get("created_at"),
            "completed_at": parent.get("completed_at"),
            "shards": shards,
        }

    def cancel(self, parent_id: str) -> Dict[str, Any]:
        with self._repo.transaction():
            parent = self._repo.get_parallel_execution(parent_id)
            if parent is None:
                raise NotFoundError("Parallel execution", parent_id)
            if parent["status"] != ParentStatus.running.value:
                raise InvalidStateError(
                    f"Parallel execution '{parent_id}' is already {parent['status']}.",
                    context={"status": parent["status"]},
                )
            parent["status"] = ParentStatus.cancelled.value
            parent["completed_at"] = utcnow()
            self._repo.save_parallel_execution(parent)
        cancelled = 0
        for shard in self._repo.list_shards(parent_id):
            execution = self._repo.get_execution(shard["execution_id"])
            if not execution or execution.get("status") in TERMINAL_STATUSES:
                continue
            try:
                self._executions.cancel(shard["execution_id"], reason="Parent execution cancelled")
            except InvalidStateError:
                LOGGER.debug("Shard %s finished before it could be cancelled", shard["id"])
                continue
            cancelled += 1
        LOGGER.info("Cancelled parallel execution %s (%s shard(s) stopped)", parent_id, cancelled)
        return self.get_status(parent_id)

    def reconcile(self) -> List[str]:
        """Resync shard rows of running parents and finalise any that are done.

        Child executions are authoritative, so a shard row left stale by a
        failed write is repaired here on the next scheduler pass.
        """
        finished: List[str] = []
        for parent in self._repo.list_parallel_executions(status=ParentStatus.running.value):
            for shard in self._repo.list_shards(parent["id"]):
                self._sync_shard(shard["execution_id"])
            if self._check_completion(parent["id"]):
                finished.append(parent["id"])
        return finished

    # -- event handling -------------------------------------------------------------
    def _on_event(self, event: DomainEvent) -> None:
        if event.type not in _EXECUTION_EVENTS:
            return
        parent_id = event.payload.get("parent_execution_id")
        if not parent_id:
            return
        try:
            self._sync_shard(event.subject_id)
        finally:
            if event.payload.get("status") in TERMINAL_STATUSES:
                self._check_completion(parent_id)

    def _shard_views(self, parent_id: str) -> List[Dict[str, Any]]:
        shards = self._repo.list_shards(parent_id)
        for shard in shards:
            execution = self._repo.get_execution(shard["execution_id"])
            if execution is not None:
                shard.update(_shard_fields(execution))
        return shards

    def _sync_shard(self, execution_id: str) -> None:
        with self._repo.transaction():
            shard = self._repo.get_shard(execution_id)
            execution = self._repo.get_execution(execution_id)
            if shard is None or execution is None:
                return
            fields = _shard_fields(execution)
            if all(shard.get(key) == value for key, value in fields.items()):
                return
            shard.update(fields)
            saved = self._repo.save_shard(shard)
        self._events.publish(
            DomainEvent(
                type=EventType.shard_updated,
                subject_id=saved["id"],
                payload={
                    "parent_execution_id": saved["parent_execution_id"],
                    "shard_index": saved["shard_index"],
                    "status": saved["status"],
                },
            )
        )

    def _check_completion(self, parent_id: str) -> bool:
        with self._repo.transaction():
            parent = self._repo.get_parallel_execution(parent_id)
            if parent is None or parent["status"] != ParentStatus.running.value:
                return False
            shards = self._shard_views(parent_id)
            if len(shards) < parent["total_shards"]:
                return False
            if any(shard.get("status") not in TERMINAL_STATUSES for shard in shards):
                return False
            parent["status"] = ParentStatus.completed.value
            parent["completed_at"] = utcnow()
            parent["aggregate"] = aggregate_shard_results(shards)
            saved = self._repo.save_parallel_execution(parent)
        aggregate = saved["aggregate"]
        LOGGER.info(
            "Parallel execution %s finished: %s/%s shard(s) completed, %s failed",
            parent_id,
            aggregate["completed_shards"],
            saved["total_shards"],
            aggregate["failed_shards"],
        )
        self._events.publish(
            DomainEvent(
                type=EventType.parallel_execution_completed,
                subject_id=parent_id,
                payload={"parent_execution_id": parent_id, "aggregate": aggregate},
            )
        )
        return True
