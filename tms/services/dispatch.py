from __future__ import annotations

import json
import logging
import queue
import threading
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from tms.schemas import ExecutionStatus
from tms.services.assignment import AssignmentEngine
from tms.services.events import DomainEvent, EventType
from tms.services.storage import OrchestrationRepository

LOGGER = logging.getLogger("tms.dispatch")

Sender = Callable[[str, Dict[str, Any], Dict[str, str], float], None]


def http_send(url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout: float) -> None:
    body = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(url, data=body, headers=headers, method="POST")
    with urllib.request.urlopen(request, timeout=timeout) as response:
        response.read(1024)


class RunnerDispatcher:
    """Hands assigned executions to their runner's trigger endpoint.

    Runners without an ``endpoint_url`` are expected to pull their work, so
    nothing is sent. A failed trigger returns the execution to the queue for
    the scheduler to place again.
    """

    def __init__(
        self,
        repo: OrchestrationRepository,
        engine: AssignmentEngine,
        *,
        webhook_base_url: str,
        webhook_token: Optional[str] = None,
        runner_api_token: Optional[str] = None,
        timeout: float = 10.0,
        sender: Optional[Sender] = None,
    ) -> None:
        self._repo = repo
        self._engine = engine
        self._webhook_base_url = webhook_base_url.rstrip("/")
        self._webhook_token = webhook_token
        self._runner_api_token = runner_api_token
        self._timeout = timeout
        self._send = sender or http_send
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

    def on_event(self, event: DomainEvent) -> None:
        if event.type is EventType.execution_assigned:
            self._queue.put(event.subject_id)

    def dispatch_pending(self) -> int:
        """Drain the dispatch queue in the current thread (used by tests)."""
        sent = 0
        while True:
            try:
                execution_id = self._queue.get_nowait()
            except queue.Empty:
                return sent
            if self.dispatch(execution_id):
                sent += 1

    def build_payload(self, execution: Dict[str, Any]) -> Dict[str, Any]:
        parent_id = execution.get("parent_execution_id")
        if parent_id:
            webhook_url = f"{self._webhook_base_url}/api/webhooks/parallel-execution/{parent_id}"
        else:
            webhook_url = f"{self._webhook_base_url}/api/webhooks/execution-results"
        payload = {
            "execution_id": execution["id"],
            "test_suite": execution["test_suite"],
            "environment": execution["environment"],
            "priority": execution.get("priority"),
            "timeout_at": execution.get("timeout_at"),
            "parent_execution_id": parent_id,
            "shard_index": execution.get("shard_index"),
            "webhook_url": webhook_url,
            "metadata": execution.get("metadata") or {},
        }
        if self._webhook_token:
            payload["webhook_token"] = self._webhook_token
        return payload

    def dispatch(self, execution_id: str) -> bool:
        execution = self._repo.get_execution(execution_id)
        if not execution or execution.get("status") != ExecutionStatus.assigned.value:
            return False
        runner = self._repo.get_runner(execution.get("assigned_runner_id") or "")
        if not runner or not runner.get("endpoint_url"):
            LOGGER.debug("Runner for execution %s has no trigger endpoint; waiting for pull", execution_id)
            return False
        headers = {"Content-Type": "application/json"}
        if self._runner_api_token:
            headers["Authorization"] = f"Bearer {self._runner_api_token}"
        try:
            self._send(runner["endpoint_url"], self.build_payload(execution), headers, self._timeout)
        except (urllib.error.URLError, OSError, ValueError) as exc:
            LOGGER.error("Failed to trigger execution %s on runner %s: %s", execution_id, runner["id"], exc)
            self._engine.unassign(execution_id, reason=f"dispatch failed: {exc}")
            return False
        LOGGER.info("Triggered execution %s on runner %s", execution_id, runner["id"])
        return True

    # -- background worker ------------------------------------------------------------
    def start(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run_loop, daemon=True, name="tms-dispatch")
        self._worker.start()

    def stop(self) -> None:
        self._stop.set()

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                execution_id = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.dispatch(execution_id)
            except Exception:
                LOGGER.exception("Unhandled error while dispatching execution %s", execution_id)
