from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from tms.schemas import ExecutionStatus, RuleType
from tms.services.registry import free_capacity, is_eligible
from tms.services.resources import ResourceTracker
from tms.services.rules import LoadBalancingRuleStore, pattern_matches
from tms.services.storage import OrchestrationRepository, parse_timestamp

LOGGER = logging.getLogger("tms.assignment")


def _most_free_key(runner: Dict[str, Any]):
    return (-free_capacity(runner), -int(runner.get("priority", 0)), runner["id"])


def most_free_capacity(runners: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Largest free capacity, then priority descending, then id ascending."""
    if not runners:
        return None
    return sorted(runners, key=_most_free_key)[0]


class AssignmentEngine:
    """Binds queued executions to runners.

    Selection and the capacity commit happen inside one storage transaction,
    so the capacity check and the ``current_jobs`` increment act as a single
    compare-and-increment. Two concurrent assignments can therefore never push
    a runner past ``max_concurrent_jobs``.
    """

    def __init__(
        self,
        repo: OrchestrationRepository,
        rules: LoadBalancingRuleStore,
        resources: ResourceTracker,
    ) -> None:
        self._repo = repo
        self._rules = rules
        self._resources = resources
        self._lock = threading.Lock()
        self._cursors: Dict[str, int] = {}
        self._weights: Dict[str, Dict[str, float]] = {}

    def assign(self, execution: Dict[str, Any]) -> Optional[str]:
        """Return the chosen runner id, or ``None`` if the execution stays queued."""
        execution_id = execution["id"]
        with self._repo.transaction():
            current = self._repo.get_execution(execution_id)
            if not current or current.get("status") != ExecutionStatus.queued.value:
                LOGGER.debug("Execution %s is not queued; skipping assignment", execution_id)
                return None
            runner = self._select(current)
            if runner is None:
                return None
            self._resources.allocate(current, runner)
            assigned_at = datetime.now(tz=timezone.utc)
            timeout_seconds = int(current.get("timeout_seconds") or self._repo.get_config()["default_timeout_seconds"])
            current["status"] = ExecutionStatus.assigned.value
            current["assigned_runner_id"] = runner["id"]
            current["assigned_at"] = assigned_at.isoformat()
            current["timeout_at"] = (assigned_at + timedelta(seconds=timeout_seconds)).isoformat()
            self._repo.save_execution(current)
            created = parse_timestamp(current.get("created_at"))
            if created is not None:
                waited = (assigned_at - created).total_seconds()
                self._repo.record_metric(
                    metric_type="queue_time",
                    metric_value=max(0.0, waited),
                    metric_unit="seconds",
                    execution_id=execution_id,
                    runner_id=runner["id"],
                )
        LOGGER.info("Assigned execution %s to runner %s (%s)", execution_id, runner["id"], runner.get("name"))
        return runner["id"]

    def unassign(self, execution_id: str, reason: str) -> bool:
        """Return an assigned execution to the queue, e.g. after a failed dispatch."""
        with self._repo.transaction():
            current = self._repo.get_execution(execution_id)
            if not current or current.get("status") != ExecutionStatus.assigned.value:
                return False
            self._resources.release(execution_id)
            runner_id = current.get("assigned_runner_id")
            current["status"] = ExecutionStatus.queued.value
            current["assigned_runner_id"] = None
            current["assigned_at"] = None
            current["timeout_at"] = None
            self._repo.save_execution(current)
        LOGGER.warning("Execution %s returned to queue from runner %s: %s", execution_id, runner_id, reason)
        return True

    # -- selection ------------------------------------------------------------------
    def _select(self, execution: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        runners = self._repo.list_runners()
        requested_type = execution.get("requested_runner_type")
        pinned_id = execution.get("requested_runner_id")
        if pinned_id:
            pinned = next((runner for runner in runners if runner["id"] == pinned_id), None)
            if pinned is not None and is_eligible(pinned, requested_type):
                return pinned
            if not self._repo.get_config().get("pinned_assignment_advisory"):
                LOGGER.debug(
                    "Pinned runner %s not eligible for execution %s; leaving queued",
                    pinned_id,
                    execution["id"],
                )
                return None

        eligible = [runner for runner in runners if is_eligible(runner, requested_type)]
        rule = self._rules.first_match(execution)
        if rule is None:
            return most_free_capacity(eligible)

        candidates = [runner for runner in eligible if pattern_matches(rule.get("runner_type_filter"), runner.get("type"))]
        if not candidates:
            LOGGER.debug("Rule %s matched execution %s but has no eligible runner", rule["name"], execution["id"])
            return None
        chosen = self._apply_strategy(rule, candidates)
        if chosen is not None:
            LOGGER.debug("Rule %s (%s) selected runner %s", rule["name"], rule["rule_type"], chosen["id"])
        return chosen

    def _apply_strategy(self, rule: Dict[str, Any], candidates: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        rule_type = rule.get("rule_type")
        config = rule.get("rule_config") or {}
        if rule_type == RuleType.round_robin.value:
            return self._round_robin(rule["id"], candidates)
        if rule_type == RuleType.weighted.value:
            return self._weighted(rule["id"], candidates, config.get("weights") or {})
        if rule_type == RuleType.pinned.value:
            preferred = config.get("runner_ids") or ([config["runner_id"]] if config.get("runner_id") else [])
            by_id = {runner["id"]: runner for runner in candidates}
            return next((by_id[runner_id] for runner_id in preferred if runner_id in by_id), None)
        if rule_type == RuleType.priority_based.value:
            return sorted(
                candidates,
                key=lambda it: (-int(it.get("priority", 0)), -free_capacity(it), it["id"]),
            )[0]
        if rule_type == RuleType.resource_based.value:
            return sorted(
                candidates,
                key=lambda it: (
                    -free_capacity(it) / max(1, int(it.get("max_concurrent_jobs", 1))),
                    -int(it.get("priority", 0)),
                    it["id"],
                ),
            )[0]
        return most_free_capacity(candidates)

    def _round_robin(self, rule_id: str, candidates: List[Dict[str, Any]]) -> Dict[str, Any]:
        ordered = sorted(candidates, key=lambda it: it["id"])
        with self._lock:
            cursor = self._cursors.get(rule_id, 0)
            self._cursors[rule_id] = cursor + 1
        return ordered[cursor % len(ordered)]

    def _weighted(
        self, rule_id: str, candidates: List[Dict[str, Any]], weights: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Smooth weighted round robin; weights default to runner priority."""

        def weight_of(runner: Dict[str, Any]) -> float:
            raw = weights.get(runner["id"], weights.get(runner.get("type")))
            if raw is None:
                raw = runner.get("priority", 1)
            return max(float(raw), 1.0)

        ordered = sorted(candidates, key=lambda it: it["id"])
        with self._lock:
            current = self._weights.setdefault(rule_id, {})
            total = 0.0
            for runner in ordered:
                weight = weight_of(runner)
                total += weight
                current[runner["id"]] = current.get(runner["id"], 0.0) + weight
            chosen = max(ordered, key=lambda it: current[it["id"]])
            current[chosen["id"]] -= total
        return chosen
