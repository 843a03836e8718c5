from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from tms.constants import (
    DEFAULT_EXECUTION_PRIORITY,
    ESTIMATE_TIMEOUT_FACTOR,
    MIN_ESTIMATED_TIMEOUT_SECONDS,
    SCHEDULER_BATCH_SIZE,
)
from tms.errors import InvalidStateError, ValidationError
from tms.schemas import HELD_STATUSES, TERMINAL_STATUSES, ExecutionStatus
from tms.services.assignment import AssignmentEngine
from tms.services.events import DomainEvent, EventBus, EventType
from tms.services.resources import ResourceTracker
from tms.services.storage import OrchestrationRepository, parse_timestamp, utcnow

LOGGER = logging.getLogger("tms.queue")

CANCELLABLE = frozenset({ExecutionStatus.queued.value}) | HELD_STATUSES

_TERMINAL_EVENTS = {
    ExecutionStatus.completed.value: EventType.execution_completed,
    ExecutionStatus.failed.value: EventType.execution_failed,
    ExecutionStatus.cancelled.value: EventType.execution_cancelled,
}


def generate_execution_id() -> str:
    millis = int(datetime.now(tz=timezone.utc).timestamp() * 1000)
    return f"exec-{millis}-{uuid.uuid4().hex[:8]}"


def timeout_for(estimated_duration: Optional[int], default_seconds: int) -> int:
    if estimated_duration:
        return max(math.ceil(estimated_duration * ESTIMATE_TIMEOUT_FACTOR), MIN_ESTIMATED_TIMEOUT_SECONDS)
    return default_seconds


def new_execution_record(
    request: Dict[str, Any],
    *,
    execution_id: str,
    default_timeout_seconds: int,
) -> Dict[str, Any]:
    """Build a queued execution document from a validated submission."""
    test_suite = (request.get("test_suite") or "").strip()
    environment = (request.get("environment") or "").strip()
    missing = [name for name, value in (("test_suite", test_suite), ("environment", environment)) if not value]
    if missing:
        raise ValidationError(
            "Missing required field(s): " + ", ".join(missing), context={"missing": missing}
        )
    estimated = request.get("estimated_duration")
    priority = request.get("priority")
    now = utcnow()
    return {
        "id": execution_id,
        "test_suite": test_suite,
        "environment": environment,
        "priority": DEFAULT_EXECUTION_PRIORITY if priority is None else int(priority),
        "status": ExecutionStatus.queued.value,
        "requested_runner_type": request.get("requested_runner_type") or None,
        "requested_runner_id": request.get("requested_runner_id") or None,
        "assigned_runner_id": None,
        "cancelled_from": None,
        "estimated_duration": estimated,
        "timeout_seconds": timeout_for(estimated, default_timeout_seconds),
        "timeout_at": None,
        "retry_count": int(request.get("retry_count") or 0),
        "retry_of": request.get("retry_of"),
        "parent_execution_id": request.get("parent_execution_id"),
        "shard_index": request.get("shard_index"),
        "results": None,
        "error_message": None,
        "metadata": dict(request.get("metadata") or {}),
        "created_at": now,
        "updated_at": now,
        "assigned_at": None,
        "started_at": None,
        "completed_at": None,
    }


def execution_event(event_type: EventType, record: Dict[str, Any], **extra: Any) -> DomainEvent:
    payload = {
        "execution_id": record["id"],
        "status": record.get("status"),
        "runner_id": record.get("assigned_runner_id") or record.get("cancelled_from"),
        "parent_execution_id": record.get("parent_execution_id"),
        "shard_index": record.get("shard_index"),
    }
    payload.update(extra)
    return DomainEvent(type=event_type, subject_id=record["id"], payload=payload)


class ExecutionQueueManager:
    """Owns the lifecycle of a single execution request.

    queued -> assigned -> running -> completed | failed | cancelled. Every
    transition publishes a domain event once its transaction has committed.
    """

    def __init__(
        self,
        repo: OrchestrationRepository,
        engine: AssignmentEngine,
        resources: ResourceTracker,
        events: EventBus,
    ) -> None:
        self._repo = repo
        self._engine = engine
        self._resources = resources
        self._events = events

    # -- submission -----------------------------------------------------------------
    def enqueue(self, request: Dict[str, Any]) -> str:
        config = self._repo.get_config()
        with self._repo.transaction():
            execution_id = request.get("execution_id") or generate_execution_id()
            if self._repo.get_execution(execution_id) or self._repo.get_parallel_execution(execution_id):
                raise ValidationError(
                    f"Execution id '{execution_id}' already exists.", context={"execution_id": execution_id}
                )
            record = new_execution_record(
                request,
                execution_id=execution_id,
                default_timeout_seconds=config["default_timeout_seconds"],
            )
            saved = self._repo.save_execution(record)
        LOGGER.info(
            "Queued execution %s (suite=%s, env=%s, priority=%s)",
            execution_id,
            saved["test_suite"],
            saved["environment"],
            saved["priority"],
        )
        self._events.publish(execution_event(EventType.execution_queued, saved))
        return execution_id

    def get_status(self, execution_id: str) -> Dict[str, Any]:
        return self._repo.require_execution(execution_id)

    def list_executions(
        self, *, status: Optional[str] = None, parent_execution_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return self._repo.list_executions(status=status, parent_execution_id=parent_execution_id)

    def cancel(self, execution_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        with self._repo.transaction():
            record = self._repo.require_execution(execution_id)
            status = record.get("status")
            if status not in CANCELLABLE:
                raise InvalidStateError(
                    f"Execution '{execution_id}' is already {status} and cannot be cancelled.",
                    context={"status": status},
                )
            if status in HELD_STATUSES:
                self._resources.release(execution_id)
                record["cancelled_from"] = record.get("assigned_runner_id")
            record["assigned_runner_id"] = None
            record["status"] = ExecutionStatus.cancelled.value
            record["completed_at"] = utcnow()
            record["error_message"] = reason or "Cancelled"
            saved = self._repo.save_execution(record)
        LOGGER.info("Cancelled execution %s (was %s)", execution_id, status)
        self._events.publish(execution_event(EventType.execution_cancelled, saved, previous_status=status))
        return saved

    def retry(self, execution_id: str) -> Dict[str, Any]:
        """Re-submit a terminal execution as a new request linked through ``retry_of``."""
        original = self._repo.require_execution(execution_id)
        if original.get("status") not in TERMINAL_STATUSES:
            raise InvalidStateError(
                f"Execution '{execution_id}' is {original.get('status')}; only finished executions can be retried.",
                context={"status": original.get("status")},
            )
        request = {
            key: original.get(key)
            for key in (
                "test_suite",
                "environment",
                "priority",
                "requested_runner_type",
                "requested_runner_id",
                "estimated_duration",
                "metadata",
            )
        }
        request["retry_of"] = original["id"]
        request["retry_count"] = int(original.get("retry_count") or 0) + 1
        new_id = self.enqueue(request)
        LOGGER.info("Execution %s retried as %s (attempt %s)", execution_id, new_id, request["retry_count"])
        return self._repo.require_execution(new_id)

    # -- assignment -----------------------------------------------------------------
    def try_assign(self, execution_id: str) -> Optional[str]:
        record = self._repo.require_execution(execution_id)
        runner_id = self._engine.assign(record)
        if runner_id is None:
            return None
        self._events.publish(
            execution_event(EventType.execution_assigned, self._repo.require_execution(execution_id))
        )
        return runner_id

    def process_queue(self, limit: int = SCHEDULER_BATCH_SIZE) -> int:
        """Scheduler tick: attempt assignment for the head of the queue."""
        queued = self._repo.list_executions(status=ExecutionStatus.queued.value)
        queued.sort(key=lambda it: (-int(it.get("priority", 0)), it["created_at"]))
        assigned = 0
        for record in queued[:limit]:
            if self.try_assign(record["id"]):
                assigned += 1
        if assigned:
            LOGGER.info("Scheduler assigned %s of %s queued execution(s)", assigned, len(queued))
        return assigned

    # -- transitions owned by the webhook ingestor and timeout sweep -------------------
    def _transition(
        self,
        execution_id: str,
        target: str,
        allowed_from: Iterable[str],
        mutate: Callable[[Dict[str, Any]], None],
    ) -> Tuple[Dict[str, Any], bool]:
        with self._repo.transaction():
            record = self._repo.require_execution(execution_id)
            status = record.get("status")
            if status in TERMINAL_STATUSES or status == target:
                return record, False
            if status not in allowed_from:
                raise InvalidStateError(
                    f"Execution '{execution_id}' cannot move from {status} to {target}.",
                    context={"status": status, "target": target},
                )
            mutate(record)
            record["status"] = target
            if target in TERMINAL_STATUSES:
                self._resources.release(execution_id)
            return self._repo.save_execution(record), True

    def mark_running(self, execution_id: str) -> Tuple[Dict[str, Any], bool]:
        def _start(record: Dict[str, Any]) -> None:
            record["started_at"] = record.get("started_at") or utcnow()

        record, changed = self._transition(
            execution_id, ExecutionStatus.running.value, {ExecutionStatus.assigned.value}, _start
        )
        if changed:
            LOGGER.info("Execution %s started on runner %s", execution_id, record.get("assigned_runner_id"))
            self._events.publish(execution_event(EventType.execution_started, record))
        return record, changed

    def mark_completed(
        self, execution_id: str, results: Optional[Dict[str, Any]] = None
    ) -> Tuple[Dict[str, Any], bool]:
        return self._finish(execution_id, ExecutionStatus.completed.value, results, None)

    def mark_failed(
        self,
        execution_id: str,
        error_message: Optional[str] = None,
        results: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        return self._finish(execution_id, ExecutionStatus.failed.value, results, error_message)

    def _finish(
        self,
        execution_id: str,
        target: str,
        results: Optional[Dict[str, Any]],
        error_message: Optional[str],
    ) -> Tuple[Dict[str, Any], bool]:
        def _complete(record: Dict[str, Any]) -> None:
            now = utcnow()
            record["started_at"] = record.get("started_at") or now
            record["completed_at"] = now
            if results is not None:
                record["results"] = results
            if error_message:
                record["error_message"] = error_message
            duration = (results or {}).get("duration")
            if duration is not None:
                self._repo.record_metric(
                    metric_type="execution_time",
                    metric_value=float(duration),
                    metric_unit="seconds",
                    execution_id=execution_id,
                    runner_id=record.get("assigned_runner_id"),
                )

        record, changed = self._transition(execution_id, target, HELD_STATUSES, _complete)
        if changed:
            log = LOGGER.info if target == ExecutionStatus.completed.value else LOGGER.warning
            log(
                "Execution %s %s on runner %s%s",
                execution_id,
                target,
                record.get("assigned_runner_id"),
                f": {error_message}" if error_message else "",
            )
            self._events.publish(execution_event(_TERMINAL_EVENTS[target], record))
        return record, changed

    def sweep_timeouts(self, now: Optional[datetime] = None) -> List[str]:
        """Force-fail assigned or running executions whose deadline has passed."""
        now = now or datetime.now(tz=timezone.utc)
        timed_out: List[str] = []
        for status in sorted(HELD_STATUSES):
            for record in self._repo.list_executions(status=status):
                deadline = parse_timestamp(record.get("timeout_at"))
                if deadline is None or deadline > now:
                    continue
                _, changed = self.mark_failed(
                    record["id"],
                    error_message=f"Execution timed out after {record.get('timeout_seconds')}s",
                )
                if changed:
                    timed_out.append(record["id"])
        if timed_out:
            LOGGER.warning("Timeout sweep failed %s execution(s): %s", len(timed_out), ", ".join(timed_out))
        return timed_out
