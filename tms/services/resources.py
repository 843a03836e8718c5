from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

from tms.constants import (
    DEFAULT_CPU_ALLOCATION,
    DEFAULT_MAX_CPU_PERCENT,
    DEFAULT_MAX_MEMORY_MB,
    DEFAULT_MEMORY_ALLOCATION_MB,
    SUITE_CPU_MULTIPLIERS,
    SUITE_MEMORY_MULTIPLIERS,
)
from tms.schemas import TERMINAL_STATUSES, AllocationStatus
from tms.services.storage import OrchestrationRepository, utcnow

LOGGER = logging.getLogger("tms.resources")

HELD = {AllocationStatus.allocated.value, AllocationStatus.exceeded.value}

# Advisory thresholds for optimisation suggestions.
HIGH_UTILIZATION = 0.9
IMBALANCE = 0.3
CPU_REDUCE_ABOVE = 60.0
CPU_FLOOR = 30.0
MEMORY_REDUCE_ABOVE = 4096.0
MEMORY_FLOOR = 2048.0


def runner_capacity(runner: Dict[str, Any]) -> Tuple[float, float]:
    capabilities = runner.get("capabilities") or {}
    cpu = float(capabilities.get("max_cpu_percent") or DEFAULT_MAX_CPU_PERCENT)
    memory = float(capabilities.get("max_memory_mb") or DEFAULT_MAX_MEMORY_MB)
    return cpu, memory


def _suite_key(test_suite: str) -> Optional[str]:
    tokens = set(re.split(r"[^a-z0-9]+", (test_suite or "").lower()))
    for key in SUITE_CPU_MULTIPLIERS:
        if key in tokens:
            return key
    return None


def compute_requirements(execution: Dict[str, Any], runner: Dict[str, Any]) -> Tuple[float, float]:
    """CPU percent and memory MB to commit for one execution on one runner."""
    metadata = execution.get("metadata") or {}
    cpu = DEFAULT_CPU_ALLOCATION
    memory = DEFAULT_MEMORY_ALLOCATION_MB
    suite = _suite_key(execution.get("test_suite", ""))
    if suite:
        cpu *= SUITE_CPU_MULTIPLIERS[suite]
        memory *= SUITE_MEMORY_MULTIPLIERS[suite]
    if metadata.get("cpu_allocation") is not None:
        cpu = float(metadata["cpu_allocation"])
    if metadata.get("memory_allocation") is not None:
        memory = float(metadata["memory_allocation"])
    max_cpu, max_memory = runner_capacity(runner)
    cpu = min(cpu, max_cpu)
    memory = min(memory, max_memory)
    return round(cpu, 2), round(memory, 2)


class ResourceTracker:
    """Per-runner bookkeeping of capacity committed to in-flight executions.

    A runner's ``current_jobs`` always equals the number of its held
    allocations (``allocated`` or ``exceeded``). Capacity breaches are flagged
    with ``exceeded`` rather than rejected so the queue never deadlocks.
    """

    def __init__(self, repo: OrchestrationRepository) -> None:
        self._repo = repo

    def allocate(self, execution: Dict[str, Any], runner: Dict[str, Any]) -> Dict[str, Any]:
        with self._repo.transaction():
            cpu, memory = compute_requirements(execution, runner)
            held = self._repo.list_allocations(
                runner_id=runner["id"], statuses={AllocationStatus.allocated.value}
            )
            max_cpu, max_memory = runner_capacity(runner)
            used_cpu = sum(float(row["cpu_allocation"]) for row in held)
            used_memory = sum(float(row["memory_allocation"]) for row in held)
            fits = used_cpu + cpu <= max_cpu and used_memory + memory <= max_memory
            allocation_id = str(uuid.uuid4())
            record = {
                "id": allocation_id,
                "runner_id": runner["id"],
                "execution_id": execution["id"],
                "cpu_allocation": cpu,
                "memory_allocation": memory,
                "status": AllocationStatus.allocated.value if fits else AllocationStatus.exceeded.value,
                "allocated_at": utcnow(),
                "released_at": None,
            }
            self._repo.save_allocation(record)
            runner["current_jobs"] = int(runner.get("current_jobs", 0)) + 1
            self._repo.save_runner(runner)
        if not fits:
            LOGGER.warning(
                "Allocation for execution %s exceeds capacity of runner %s (cpu %.1f/%.1f, memory %.0f/%.0f)",
                execution["id"],
                runner["id"],
                used_cpu + cpu,
                max_cpu,
                used_memory + memory,
                max_memory,
            )
        return record

    def release(self, execution_id: str) -> Optional[Dict[str, Any]]:
        """Release the execution's held allocation and free its runner slot.

        Returns ``None`` when nothing was held, which makes the call idempotent.
        """
        with self._repo.transaction():
            held = self._repo.list_allocations(execution_id=execution_id, statuses=HELD)
            if not held:
                return None
            released = None
            for row in held:
                row["status"] = AllocationStatus.released.value
                row["released_at"] = utcnow()
                released = self._repo.save_allocation(row)
                runner = self._repo.get_runner(row["runner_id"])
                if runner:
                    runner["current_jobs"] = max(0, int(runner.get("current_jobs", 0)) - 1)
                    self._repo.save_runner(runner)
        LOGGER.debug("Released allocation for execution %s", execution_id)
        return released

    def optimize_resource_allocation(self, runner_id: str) -> Dict[str, Any]:
        """Re-check held allocations against capacity and flag breaches.

        Allocations are walked oldest first; rows that still fit stay
        ``allocated`` and the rest flip to ``exceeded``. Nothing is preempted.
        """
        with self._repo.transaction():
            runner = self._repo.require_runner(runner_id)
            max_cpu, max_memory = runner_capacity(runner)
            held = self._repo.list_allocations(runner_id=runner_id, statuses=HELD)
            used_cpu = used_memory = 0.0
            flipped = 0
            for row in held:
                cpu = float(row["cpu_allocation"])
                memory = float(row["memory_allocation"])
                if used_cpu + cpu <= max_cpu and used_memory + memory <= max_memory:
                    used_cpu += cpu
                    used_memory += memory
                    target = AllocationStatus.allocated.value
                else:
                    target = AllocationStatus.exceeded.value
                if row["status"] != target:
                    row["status"] = target
                    self._repo.save_allocation(row)
                    flipped += 1

        total_cpu = sum(float(row["cpu_allocation"]) for row in held)
        total_memory = sum(float(row["memory_allocation"]) for row in held)
        cpu_ratio = total_cpu / max_cpu if max_cpu else 0.0
        memory_ratio = total_memory / max_memory if max_memory else 0.0
        exceeded = [row for row in held if row["status"] == AllocationStatus.exceeded.value]
        if flipped:
            LOGGER.info(
                "Resource optimisation for runner %s flipped %s allocation(s); %s exceeded",
                runner_id,
                flipped,
                len(exceeded),
            )
        return {
            "runner_id": runner_id,
            "status": "exceeded" if exceeded else "within_capacity",
            "cpu": {"allocated": round(total_cpu, 2), "capacity": max_cpu, "utilization": round(cpu_ratio, 3)},
            "memory": {
                "allocated": round(total_memory, 2),
                "capacity": max_memory,
                "utilization": round(memory_ratio, 3),
            },
            "held_allocations": len(held),
            "exceeded_allocations": len(exceeded),
            "flipped": flipped,
            "suggestions": self._suggestions(held, cpu_ratio, memory_ratio),
        }

    @staticmethod
    def _suggestions(held: List[Dict[str, Any]], cpu_ratio: float, memory_ratio: float) -> List[Dict[str, Any]]:
        if max(cpu_ratio, memory_ratio) <= HIGH_UTILIZATION and abs(cpu_ratio - memory_ratio) <= IMBALANCE:
            return []
        suggestions: List[Dict[str, Any]] = []
        for row in held:
            cpu = float(row["cpu_allocation"])
            memory = float(row["memory_allocation"])
            if cpu > CPU_REDUCE_ABOVE:
                suggestions.append(
                    {
                        "execution_id": row["execution_id"],
                        "action": "reduce_cpu",
                        "current": cpu,
                        "suggested": round(max(CPU_FLOOR, cpu * 0.8), 2),
                    }
                )
            if memory > MEMORY_REDUCE_ABOVE:
                suggestions.append(
                    {
                        "execution_id": row["execution_id"],
                        "action": "reduce_memory",
                        "current": memory,
                        "suggested": round(max(MEMORY_FLOOR, memory * 0.8), 2),
                    }
                )
        return suggestions

    def get_system_resource_summary(self) -> Dict[str, Any]:
        allocations = self._repo.list_allocations()
        totals = {status.value: 0 for status in AllocationStatus}
        per_runner: Dict[str, Dict[str, Any]] = {}
        for runner in self._repo.list_runners():
            max_cpu, max_memory = runner_capacity(runner)
            per_runner[runner["id"]] = {
                "runner_id": runner["id"],
                "name": runner.get("name"),
                "status": runner.get("status"),
                "health_status": runner.get("health_status"),
                "current_jobs": runner.get("current_jobs", 0),
                "max_concurrent_jobs": runner.get("max_concurrent_jobs"),
                "allocated": 0,
                "exceeded": 0,
                "cpu_allocated": 0.0,
                "memory_allocated": 0.0,
                "max_cpu_percent": max_cpu,
                "max_memory_mb": max_memory,
            }
        for row in allocations:
            status = row.get("status")
            totals[status] = totals.get(status, 0) + 1
            entry = per_runner.get(row.get("runner_id"))
            if entry is None or status not in HELD:
                continue
            entry[status] += 1
            entry["cpu_allocated"] += float(row["cpu_allocation"])
            entry["memory_allocated"] += float(row["memory_allocation"])
        held = totals[AllocationStatus.allocated.value] + totals[AllocationStatus.exceeded.value]
        return {
            "totals": {**totals, "held": held},
            "exceeded_ratio": round(totals[AllocationStatus.exceeded.value] / held, 3) if held else 0.0,
            "runners": sorted(per_runner.values(), key=lambda it: it["name"] or ""),
        }

    def release_orphaned_allocations(self) -> int:
        released = 0
        for row in self._repo.list_allocations(statuses=HELD):
            execution = self._repo.get_execution(row["execution_id"])
            if execution is None or execution.get("status") in TERMINAL_STATUSES:
                if self.release(row["execution_id"]):
                    released += 1
        if released:
            LOGGER.warning("Released %s orphaned allocation(s)", released)
        return released

    def reconcile_runner_jobs(self) -> Dict[str, Dict[str, int]]:
        """Force each runner's ``current_jobs`` back to its held-allocation count."""
        corrections: Dict[str, Dict[str, int]] = {}
        with self._repo.transaction():
            held = self._repo.list_allocations(statuses=HELD)
            for runner in self._repo.list_runners():
                expected = sum(1 for row in held if row["runner_id"] == runner["id"])
                actual = int(runner.get("current_jobs", 0))
                if actual != expected:
                    corrections[runner["id"]] = {"before": actual, "after": expected}
                    runner["current_jobs"] = expected
                    self._repo.save_runner(runner)
        for runner_id, change in corrections.items():
            LOGGER.warning(
                "Reconciled current_jobs for runner %s from %s to %s", runner_id, change["before"], change["after"]
            )
        return corrections
