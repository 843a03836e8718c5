from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Query
from fastapi.concurrency import run_in_threadpool

from tms.schemas import (
    ConfigUpdate,
    Execution,
    ExecutionAccepted,
    ExecutionCreate,
    ExecutionMetric,
    ExecutionStatus,
    LoadBalancingRule,
    LoadBalancingRuleCreate,
    OrchestrationConfig,
    Runner,
    RunnerCreate,
    RunnerPerformance,
    RunnerRegistered,
    RunnerUpdate,
    SystemHealth,
)
from tms.services.orchestrator import ContextDep, OrchestrationContext

router = APIRouter(prefix="/api", tags=["api"])


# Executions ----------------------------------------------------------------------
@router.post("/executions", response_model=ExecutionAccepted, status_code=202)
async def submit_execution(
    payload: ExecutionCreate,
    background_tasks: BackgroundTasks,
    context: OrchestrationContext = ContextDep,
) -> Dict[str, Any]:
    accepted = context.submit(payload.model_dump())
    background_tasks.add_task(context.assign_submitted, accepted)
    return accepted


@router.get("/executions", response_model=List[Execution])
async def list_executions(
    status: Optional[ExecutionStatus] = None,
    parent_execution_id: Optional[str] = None,
    context: OrchestrationContext = ContextDep,
) -> List[Dict[str, Any]]:
    return context.executions.list_executions(
        status=status.value if status else None,
        parent_execution_id=parent_execution_id,
    )


@router.get("/executions/{execution_id}", response_model=Execution)
async def get_execution(execution_id: str, context: OrchestrationContext = ContextDep) -> Dict[str, Any]:
    return context.executions.get_status(execution_id)


@router.get("/executions/{execution_id}/status")
async def get_execution_status(
    execution_id: str, context: OrchestrationContext = ContextDep
) -> Dict[str, Any]:
    return context.execution_status(execution_id)


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str, context: OrchestrationContext = ContextDep) -> Dict[str, Any]:
    return context.cancel(execution_id)


@router.post("/executions/{execution_id}/retry", response_model=Execution, status_code=201)
async def retry_execution(
    execution_id: str,
    background_tasks: BackgroundTasks,
    context: OrchestrationContext = ContextDep,
) -> Dict[str, Any]:
    retried = context.executions.retry(execution_id)
    background_tasks.add_task(
        context.assign_submitted, {"execution_id": retried["id"], "type": "regular"}
    )
    return retried


@router.get("/executions/{execution_id}/metrics", response_model=List[ExecutionMetric])
async def execution_metrics(
    execution_id: str, context: OrchestrationContext = ContextDep
) -> List[Dict[str, Any]]:
    return context.execution_metrics(execution_id)


# Runners -------------------------------------------------------------------------
@router.post("/runners/register", response_model=RunnerRegistered, status_code=201)
async def register_runner(
    payload: RunnerCreate, context: OrchestrationContext = ContextDep
) -> Dict[str, str]:
    runner_id = context.registry.register(payload.model_dump(mode="json"))
    return {"runner_id": runner_id}


@router.get("/runners", response_model=List[Runner])
async def list_runners(context: OrchestrationContext = ContextDep) -> List[Dict[str, Any]]:
    return context.registry.list_runners()


@router.get("/runners/{runner_id}", response_model=Runner)
async def get_runner(runner_id: str, context: OrchestrationContext = ContextDep) -> Dict[str, Any]:
    return context.registry.get(runner_id)


@router.put("/runners/{runner_id}", response_model=Runner)
async def update_runner(
    runner_id: str, payload: RunnerUpdate, context: OrchestrationContext = ContextDep
) -> Dict[str, Any]:
    return context.registry.update_runner(runner_id, payload.model_dump(mode="json", exclude_unset=True))


@router.delete("/runners/{runner_id}", status_code=204)
async def delete_runner(runner_id: str, context: OrchestrationContext = ContextDep) -> None:
    context.registry.delete_runner(runner_id)


@router.get("/runners/{runner_id}/metrics", response_model=List[RunnerPerformance])
async def runner_metrics(
    runner_id: str,
    hours: int = Query(default=24, ge=1, le=24 * 30),
    context: OrchestrationContext = ContextDep,
) -> List[Dict[str, Any]]:
    return context.registry.performance(runner_id, hours=hours)


@router.post("/runners/{runner_id}/health-check", response_model=Runner)
async def check_runner_health(runner_id: str, context: OrchestrationContext = ContextDep) -> Dict[str, Any]:
    await run_in_threadpool(context.health.check_runner, runner_id)
    return context.registry.get(runner_id)


# Load balancing rules ------------------------------------------------------------
@router.post("/load-balancing-rules", response_model=LoadBalancingRule, status_code=201)
async def create_rule(
    payload: LoadBalancingRuleCreate, context: OrchestrationContext = ContextDep
) -> Dict[str, Any]:
    return context.rules.create_rule(payload.model_dump(mode="json"))


@router.get("/load-balancing-rules", response_model=List[LoadBalancingRule])
async def list_rules(context: OrchestrationContext = ContextDep) -> List[Dict[str, Any]]:
    return context.rules.list_rules()


@router.delete("/load-balancing-rules/{rule_id}", status_code=204)
async def delete_rule(rule_id: str, context: OrchestrationContext = ContextDep) -> None:
    context.rules.delete_rule(rule_id)


# Resources -----------------------------------------------------------------------
@router.get("/resources/utilization")
async def resource_utilization(context: OrchestrationContext = ContextDep) -> Dict[str, Any]:
    return context.resources.get_system_resource_summary()


@router.post("/resources/optimize/{runner_id}")
async def optimize_resources(runner_id: str, context: OrchestrationContext = ContextDep) -> Dict[str, Any]:
    return context.resources.optimize_resource_allocation(runner_id)


# System --------------------------------------------------------------------------
@router.get("/system/health", response_model=SystemHealth)
async def system_health(context: OrchestrationContext = ContextDep) -> Dict[str, Any]:
    return context.health.system_health()


@router.post("/system/health-checks")
async def run_health_checks(context: OrchestrationContext = ContextDep) -> Dict[str, str]:
    return await run_in_threadpool(context.health.run_checks)


@router.get("/config", response_model=OrchestrationConfig)
async def get_config(context: OrchestrationContext = ContextDep) -> Dict[str, Any]:
    return context.repo.get_config()


@router.put("/config", response_model=OrchestrationConfig)
async def update_config(payload: ConfigUpdate, context: OrchestrationContext = ContextDep) -> Dict[str, Any]:
    return context.update_config(payload.model_dump(exclude_unset=True))
