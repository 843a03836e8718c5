from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from tms.constants import DEFAULT_CONFIG
from tms.errors import NotFoundError, StorageError, ValidationError

LOGGER = logging.getLogger("tms.storage")

STATE_VERSION = 1

COLLECTIONS = (
    "executions",
    "runners",
    "shards",
    "parallel_executions",
    "rules",
    "allocations",
    "metrics",
)


def utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _default_state() -> Dict[str, Any]:
    state: Dict[str, Any] = {"version": STATE_VERSION, "config": dict(DEFAULT_CONFIG)}
    for name in COLLECTIONS:
        state[name] = {}
    return state


class LocalDynamoStorage:
    """Very small DynamoDB-like persistence layer backed by a JSON file.

    Each top-level collection stores items keyed by their primary identifier.
    Mutations run inside :meth:`transaction`, which holds a re-entrant lock,
    snapshots the state, persists once on exit and rolls the in-memory state
    back if the block raises or the file cannot be written. Reads hand out deep
    copies so callers never alias the live state.
    """

    def __init__(
        self,
        path: Path,
        *,
        persist_attempts: int = 3,
        retry_backoff: float = 0.05,
    ) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()
        self._depth = 0
        self._persist_attempts = max(1, persist_attempts)
        self._retry_backoff = retry_backoff
        self._state = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _default_state()
        with self._path.open("r", encoding="utf-8") as handle:
            state = json.load(handle)
        for name in COLLECTIONS:
            state.setdefault(name, {})
        config = state.setdefault("config", {})
        for key, value in DEFAULT_CONFIG.items():
            config.setdefault(key, value)
        for runner in state["runners"].values():
            runner.setdefault("consecutive_failures", 0)
            runner.setdefault("health_status", "unknown")
            runner.setdefault("current_jobs", 0)
        return state

    def _write_file(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        scratch = self._path.with_name(self._path.name + ".tmp")
        scratch.write_text(payload, encoding="utf-8")
        os.replace(scratch, self._path)

    def _persist(self) -> None:
        payload = json.dumps(self._state, indent=2, sort_keys=True)
        last_error: Optional[OSError] = None
        for attempt in range(1, self._persist_attempts + 1):
            try:
                self._write_file(payload)
                return
            except OSError as exc:
                last_error = exc
                LOGGER.warning(
                    "Persist attempt %s/%s to %s failed: %s",
                    attempt,
                    self._persist_attempts,
                    self._path,
                    exc,
                )
                if attempt < self._persist_attempts:
                    time.sleep(self._retry_backoff * attempt)
        raise StorageError(
            "State store is unavailable; the change was not applied.",
            context={"path": str(self._path), "error": str(last_error)},
        ) from last_error

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group mutations into one atomic, persisted unit of work.

        Nested calls join the outermost transaction.
        """
        with self._lock:
            if self._depth:
                yield
                return
            snapshot = copy.deepcopy(self._state)
            self._depth = 1
            try:
                yield
                self._persist()
            except BaseException:
                self._state = snapshot
                raise
            finally:
                self._depth = 0

    def _collection(self, name: str) -> Dict[str, Any]:
        return self._state.setdefault(name, {})

    def get_config(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._state.setdefault("config", dict(DEFAULT_CONFIG)))

    def update_config(self, **changes: Any) -> Dict[str, Any]:
        with self.transaction():
            config = self._state.setdefault("config", dict(DEFAULT_CONFIG))
            for key, value in changes.items():
                if value is not None:
                    config[key] = value
            return dict(config)

    def upsert(self, collection: str, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self.transaction():
            self._collection(collection)[item_id] = copy.deepcopy(payload)
        return copy.deepcopy(payload)

    def get(self, collection: str, item_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._collection(collection).get(item_id)
            return copy.deepcopy(item) if item is not None else None

    def delete(self, collection: str, item_id: str) -> None:
        with self.transaction():
            self._collection(collection).pop(item_id, None)

    def list(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(list(self._collection(collection).values()))

    def filter(self, collection: str, *, key: str, value: Any) -> List[Dict[str, Any]]:
        return [item for item in self.list(collection) if item.get(key) == value]


class OrchestrationRepository:
    """Repository offering domain-focused helpers on top of LocalDynamoStorage."""

    def __init__(self, storage: LocalDynamoStorage) -> None:
        self._storage = storage

    @property
    def storage(self) -> LocalDynamoStorage:
        return self._storage

    def transaction(self):
        return self._storage.transaction()

    # -- Config -------------------------------------------------------------------
    def get_config(self) -> Dict[str, Any]:
        config = self._storage.get_config()
        return {
            "scheduler_interval_seconds": int(config.get("scheduler_interval_seconds", 5)),
            "health_check_interval_seconds": int(config.get("health_check_interval_seconds", 120)),
            "health_check_timeout_seconds": int(config.get("health_check_timeout_seconds", 10)),
            "health_failure_threshold": int(config.get("health_failure_threshold", 3)),
            "timeout_sweep_interval_seconds": int(config.get("timeout_sweep_interval_seconds", 60)),
            "default_timeout_seconds": int(config.get("default_timeout_seconds", 3600)),
            "queue_wait_degraded_minutes": int(config.get("queue_wait_degraded_minutes", 30)),
            "pinned_assignment_advisory": bool(config.get("pinned_assignment_advisory", False)),
        }

    def update_config(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        for key, value in payload.items():
            if value is None:
                continue
            if key not in DEFAULT_CONFIG:
                raise ValidationError(f"Unknown configuration key '{key}'.")
            if key == "pinned_assignment_advisory":
                changes[key] = bool(value)
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValidationError(f"'{key}' must be a positive integer.")
            changes[key] = value
        if changes:
            self._storage.update_config(**changes)
        return self.get_config()

    # -- Executions ---------------------------------------------------------------
    def get_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("executions", execution_id)

    def require_execution(self, execution_id: str) -> Dict[str, Any]:
        record = self.get_execution(execution_id)
        if not record:
            raise NotFoundError("Execution", execution_id)
        return record

    def list_executions(
        self,
        *,
        status: Optional[str] = None,
        parent_execution_id: Optional[str] = None,
        runner_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        items = self._storage.list("executions")
        if status is not None:
            items = [item for item in items if item.get("status") == status]
        if parent_execution_id is not None:
            items = [item for item in items if item.get("parent_execution_id") == parent_execution_id]
        if runner_id is not None:
            items = [item for item in items if item.get("assigned_runner_id") == runner_id]
        return sorted(items, key=lambda it: it["created_at"])

    def save_execution(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record["updated_at"] = utcnow()
        return self._storage.upsert("executions", record["id"], record)

    # -- Runners ------------------------------------------------------------------
    def get_runner(self, runner_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("runners", runner_id)

    def require_runner(self, runner_id: str) -> Dict[str, Any]:
        record = self.get_runner(runner_id)
        if not record:
            raise NotFoundError("Runner", runner_id)
        return record

    def list_runners(self) -> List[Dict[str, Any]]:
        return self._storage.list("runners")

    def save_runner(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record["updated_at"] = utcnow()
        return self._storage.upsert("runners", record["id"], record)

    def delete_runner(self, runner_id: str) -> None:
        self._storage.delete("runners", runner_id)

    # -- Parallel executions ------------------------------------------------------
    def get_parallel_execution(self, parent_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("parallel_executions", parent_id)

    def save_parallel_execution(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._storage.upsert("parallel_executions", record["id"], record)

    def list_parallel_executions(self, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status is None:
            return self._storage.list("parallel_executions")
        return self._storage.filter("parallel_executions", key="status", value=status)

    def get_shard(self, shard_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("shards", shard_id)

    def list_shards(self, parent_id: str) -> List[Dict[str, Any]]:
        return sorted(
            self._storage.filter("shards", key="parent_execution_id", value=parent_id),
            key=lambda it: it["shard_index"],
        )

    def save_shard(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._storage.upsert("shards", record["id"], record)

    # -- Load balancing rules -----------------------------------------------------
    def get_rule(self, rule_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("rules", rule_id)

    def list_rules(self) -> List[Dict[str, Any]]:
        return self._storage.list("rules")

    def save_rule(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._storage.upsert("rules", record["id"], record)

    def delete_rule(self, rule_id: str) -> None:
        self._storage.delete("rules", rule_id)

    # -- Resource allocations -----------------------------------------------------
    def list_allocations(
        self,
        *,
        runner_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        statuses: Optional[set] = None,
    ) -> List[Dict[str, Any]]:
        items = self._storage.list("allocations")
        if runner_id is not None:
            items = [item for item in items if item.get("runner_id") == runner_id]
        if execution_id is not None:
            items = [item for item in items if item.get("execution_id") == execution_id]
        if statuses is not None:
            items = [item for item in items if item.get("status") in statuses]
        return sorted(items, key=lambda it: it["allocated_at"])

    def save_allocation(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._storage.upsert("allocations", record["id"], record)

    # -- Metrics ------------------------------------------------------------------
    def record_metric(
        self,
        *,
        metric_type: str,
        metric_value: float,
        metric_unit: Optional[str] = None,
        execution_id: Optional[str] = None,
        runner_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        metric_id = str(uuid.uuid4())
        record = {
            "id": metric_id,
            "execution_id": execution_id,
            "runner_id": runner_id,
            "metric_type": metric_type,
            "metric_value": float(metric_value),
            "metric_unit": metric_unit,
            "timestamp": utcnow(),
        }
        return self._storage.upsert("metrics", metric_id, record)

    def list_metrics(
        self,
        *,
        execution_id: Optional[str] = None,
        runner_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        items = self._storage.list("metrics")
        if execution_id is not None:
            items = [item for item in items if item.get("execution_id") == execution_id]
        if runner_id is not None:
            items = [item for item in items if item.get("runner_id") == runner_id]
        if since is not None:
            items = [
                item
                for item in items
                if (parse_timestamp(item.get("timestamp")) or since) >= since
            ]
        return sorted(items, key=lambda it: it["timestamp"])
