from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, Request

from tms.config import Settings
from tms.services.assignment import AssignmentEngine
from tms.services.dispatch import RunnerDispatcher, Sender
from tms.services.events import EventBus, EventType
from tms.services.executions import ExecutionQueueManager, generate_execution_id
from tms.services.health import HealthMonitor, Probe
from tms.services.parallel import ParallelExecutionCoordinator
from tms.services.registry import RunnerRegistry
from tms.services.resources import ResourceTracker
from tms.services.rules import LoadBalancingRuleStore
from tms.services.storage import LocalDynamoStorage, OrchestrationRepository
from tms.services.webhooks import WebhookResultIngestor

LOGGER = logging.getLogger("tms.orchestrator")


class OrchestrationContext:
    """Wires every orchestration service around one repository and event bus.

    Built once at process start (or per test) and handed to the HTTP layer
    through :func:`get_context`. Background loops (scheduler tick, health
    probes, timeout sweep, dispatch worker) only run after :meth:`start`.
    """

    def __init__(
        self,
        repo: OrchestrationRepository,
        settings: Optional[Settings] = None,
        *,
        probe: Optional[Probe] = None,
        sender: Optional[Sender] = None,
        auto_start: Optional[bool] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.repo = repo
        self.events = EventBus()
        self.registry = RunnerRegistry(repo)
        self.resources = ResourceTracker(repo)
        self.rules = LoadBalancingRuleStore(repo)
        self.engine = AssignmentEngine(repo, self.rules, self.resources)
        self.executions = ExecutionQueueManager(repo, self.engine, self.resources, self.events)
        self.webhooks = WebhookResultIngestor(self.executions, token=self.settings.webhook_token)
        self.parallel = ParallelExecutionCoordinator(repo, self.executions, self.webhooks, self.events)
        self.health = HealthMonitor(repo, self.resources, self.events, probe=probe)
        self.dispatcher = RunnerDispatcher(
            repo,
            self.engine,
            webhook_base_url=self.settings.webhook_base_url,
            webhook_token=self.settings.webhook_token,
            runner_api_token=self.settings.runner_api_token,
            sender=sender,
        )
        self.events.subscribe(EventType.execution_assigned, self.dispatcher.on_event)

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._loops: Dict[str, threading.Thread] = {}
        if self.settings.auto_start if auto_start is None else auto_start:
            self.start()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "OrchestrationContext":
        repo = OrchestrationRepository(LocalDynamoStorage(settings.state_path))
        return cls(repo, settings, **kwargs)

    # -- lifecycle --------------------------------------------------------------------
    def start(self) -> None:
        self._stop.clear()
        self.resources.release_orphaned_allocations()
        self.resources.reconcile_runner_jobs()
        self.dispatcher.start()
        self._ensure_loop("tms-scheduler", "scheduler_interval_seconds", self.executions.process_queue)
        self._ensure_loop("tms-parallel-reconcile", "scheduler_interval_seconds", self.parallel.reconcile)
        self._ensure_loop("tms-health-monitor", "health_check_interval_seconds", self.health.run_checks)
        self._ensure_loop("tms-timeout-sweep", "timeout_sweep_interval_seconds", self.executions.sweep_timeouts)
        LOGGER.info("Orchestration background workers started (state=%s)", self.repo.storage.path)

    def stop(self) -> None:
        self._stop.set()
        self.dispatcher.stop()
        LOGGER.info("Orchestration background workers stopping")

    def _ensure_loop(self, name: str, interval_key: str, tick: Callable[[], Any]) -> None:
        with self._lock:
            existing = self._loops.get(name)
            if existing and existing.is_alive():
                return
            thread = threading.Thread(target=self._loop, args=(name, interval_key, tick), daemon=True, name=name)
            self._loops[name] = thread
            thread.start()

    def _loop(self, name: str, interval_key: str, tick: Callable[[], Any]) -> None:
        while not self._stop.is_set():
            try:
                tick()
            except Exception:
                LOGGER.exception("Unhandled error in %s loop", name)
            try:
                interval = max(1.0, float(self.repo.get_config()[interval_key]))
            except (KeyError, TypeError, ValueError):
                interval = 5.0
            self._stop.wait(interval)

    def tick(self) -> Dict[str, Any]:
        """Run one scheduler, sweep, dispatch and shard reconcile pass in the calling thread (used by tests)."""
        timed_out = self.executions.sweep_timeouts()
        assigned = self.executions.process_queue()
        dispatched = self.dispatcher.dispatch_pending()
        finalised = self.parallel.reconcile()
        return {"assigned": assigned, "timed_out": timed_out, "dispatched": dispatched, "finalised": finalised}

    # -- submission helpers used by the HTTP layer --------------------------------------
    def submit(self, request: Dict[str, Any]) -> Dict[str, Any]:
        shards = request.get("parallel_shards")
        if shards and shards > 1:
            parent_id = request.get("execution_id") or generate_execution_id()
            self.parallel.orchestrate_parallel_execution(
                parent_id,
                {
                    "total_shards": shards,
                    "test_suite": request.get("test_suite"),
                    "environment": request.get("environment"),
                    "priority": request.get("priority"),
                    "estimated_duration": request.get("estimated_duration"),
                    "runner_preferences": {
                        "runner_type": request.get("requested_runner_type"),
                        "runner_id": request.get("requested_runner_id"),
                    },
                    "metadata": request.get("metadata"),
                },
                assign=False,
            )
            return {"execution_id": parent_id, "status": "queued", "type": "parallel", "total_shards": shards}
        execution_id = self.executions.enqueue(request)
        return {"execution_id": execution_id, "status": "queued", "type": "regular"}

    def assign_submitted(self, accepted: Dict[str, Any]) -> None:
        try:
            if accepted["type"] == "parallel":
                self.parallel.assign_shards(accepted["execution_id"])
            else:
                self.executions.try_assign(accepted["execution_id"])
        except Exception:
            LOGGER.exception("Immediate assignment of %s failed; scheduler will retry", accepted["execution_id"])

    def execution_status(self, execution_id: str) -> Dict[str, Any]:
        if self.parallel.is_parent(execution_id):
            return self.parallel.get_status(execution_id)
        return {"type": "regular", "execution": self.executions.get_status(execution_id)}

    def cancel(self, execution_id: str) -> Dict[str, Any]:
        if self.parallel.is_parent(execution_id):
            return self.parallel.cancel(execution_id)
        return {"type": "regular", "execution": self.executions.cancel(execution_id)}

    def execution_metrics(self, execution_id: str) -> List[Dict[str, Any]]:
        self.executions.get_status(execution_id)
        return self.repo.list_metrics(execution_id=execution_id)

    def update_config(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        config = self.repo.update_config(payload)
        changed = ", ".join(f"{key}={value}" for key, value in payload.items() if value is not None)
        if changed:
            LOGGER.info("Updated orchestration config: %s", changed)
        return config


def get_context(request: Request) -> OrchestrationContext:
    """FastAPI dependency returning the context built for this application."""
    return request.app.state.context


ContextDep = Depends(get_context)
