from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel


class ExecutionStatus(str, Enum):
    queued = "queued"
    assigned = "assigned"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.completed.value,
        ExecutionStatus.failed.value,
        ExecutionStatus.cancelled.value,
    }
)
HELD_STATUSES = frozenset({ExecutionStatus.assigned.value, ExecutionStatus.running.value})


class RunnerStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    maintenance = "maintenance"
    error = "error"


class HealthStatus(str, Enum):
    healthy = "healthy"
    unhealthy = "unhealthy"
    unknown = "unknown"


class AllocationStatus(str, Enum):
    allocated = "allocated"
    exceeded = "exceeded"
    released = "released"


class RuleType(str, Enum):
    round_robin = "round_robin"
    weighted = "weighted"
    pinned = "pinned"
    priority_based = "priority_based"
    resource_based = "resource_based"
    least_loaded = "least_loaded"


def normalize_rule_type(value: Any) -> Any:
    """Accept hyphenated spellings such as ``round-robin`` for rule types."""
    if isinstance(value, str):
        return value.strip().lower().replace("-", "_")
    return value


class ParentStatus(str, Enum):
    running = "running"
    completed = "completed"
    cancelled = "cancelled"


class WebhookStatus(str, Enum):
    running = "running"
    completed = "completed"
    failed = "failed"


class OverallHealth(str, Enum):
    healthy = "healthy"
    degraded = "degraded"
    unhealthy = "unhealthy"


class CamelModel(BaseModel):
    """Accepts both camelCase (runner/dashboard payloads) and snake_case keys."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


# Executions ----------------------------------------------------------------------
class ExecutionCreate(CamelModel):
    test_suite: str
    environment: str
    execution_id: Optional[str] = None
    priority: int = 50
    requested_runner_type: Optional[str] = None
    requested_runner_id: Optional[str] = None
    estimated_duration: Optional[int] = Field(default=None, ge=0)
    parallel_shards: Optional[int] = Field(default=None, ge=1, le=64)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("test_suite", "environment")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        return value.strip()


class ExecutionAccepted(BaseModel):
    execution_id: str = Field(alias="executionId")
    status: ExecutionStatus = ExecutionStatus.queued
    type: str = "regular"
    total_shards: Optional[int] = Field(default=None, alias="totalShards")

    model_config = {"populate_by_name": True}


class Execution(BaseModel):
    id: str
    test_suite: str
    environment: str
    priority: int
    status: ExecutionStatus
    requested_runner_type: Optional[str] = None
    requested_runner_id: Optional[str] = None
    assigned_runner_id: Optional[str] = None
    cancelled_from: Optional[str] = None
    estimated_duration: Optional[int] = None
    retry_count: int = 0
    retry_of: Optional[str] = None
    parent_execution_id: Optional[str] = None
    shard_index: Optional[int] = None
    timeout_seconds: Optional[int] = None
    timeout_at: Optional[str] = None
    results: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: str
    updated_at: str
    assigned_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    model_config = {"from_attributes": True}


# Runners -------------------------------------------------------------------------
class RunnerCreate(CamelModel):
    name: str
    type: str
    endpoint_url: Optional[str] = None
    webhook_url: Optional[str] = None
    health_check_url: Optional[str] = None
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    max_concurrent_jobs: int = Field(default=1, ge=1)
    priority: int = 50
    status: RunnerStatus = RunnerStatus.active
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RunnerUpdate(CamelModel):
    status: Optional[RunnerStatus] = None
    priority: Optional[int] = None
    capabilities: Optional[Dict[str, Any]] = None
    max_concurrent_jobs: Optional[int] = Field(default=None, ge=1)
    endpoint_url: Optional[str] = None
    webhook_url: Optional[str] = None
    health_check_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "extra": "forbid"}


class RunnerRegistered(BaseModel):
    runner_id: str = Field(alias="runnerId")

    model_config = {"populate_by_name": True}


class Runner(BaseModel):
    id: str
    name: str
    type: str
    endpoint_url: Optional[str] = None
    webhook_url: Optional[str] = None
    health_check_url: Optional[str] = None
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    max_concurrent_jobs: int
    current_jobs: int
    priority: int
    status: RunnerStatus
    health_status: HealthStatus
    last_health_check: Optional[str] = None
    last_health_error: Optional[str] = None
    consecutive_failures: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: str
    updated_at: str

    model_config = {"from_attributes": True}


class RunnerPerformance(BaseModel):
    metric_type: str
    metric_unit: Optional[str] = None
    average: float
    minimum: float
    maximum: float
    samples: int


# Load balancing rules ------------------------------------------------------------
class LoadBalancingRuleCreate(CamelModel):
    name: str
    rule_type: RuleType
    test_suite_pattern: Optional[str] = None
    environment_pattern: Optional[str] = None
    runner_type_filter: Optional[str] = None
    priority: int = 50
    active: bool = True
    rule_config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("rule_type", mode="before")
    @classmethod
    def _rule_type_spelling(cls, value: Any) -> Any:
        return normalize_rule_type(value)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Rule name cannot be blank.")
        return value.strip()


class LoadBalancingRule(BaseModel):
    id: str
    name: str
    rule_type: RuleType
    test_suite_pattern: Optional[str] = None
    environment_pattern: Optional[str] = None
    runner_type_filter: Optional[str] = None
    priority: int
    active: bool
    rule_config: Dict[str, Any] = Field(default_factory=dict)
    created_at: str

    model_config = {"from_attributes": True}


# Webhooks ------------------------------------------------------------------------
class ExecutionResults(BaseModel):
    total: Optional[int] = None
    passed: Optional[int] = None
    failed: Optional[int] = None
    skipped: Optional[int] = None
    duration: Optional[float] = None
    artifacts: Optional[Any] = None

    model_config = {"extra": "allow"}


class ExecutionWebhook(CamelModel):
    execution_id: str
    status: WebhookStatus
    results: Optional[ExecutionResults] = None
    error_message: Optional[str] = None


class ShardWebhook(CamelModel):
    status: WebhookStatus
    shard_id: Optional[str] = None
    shard_index: Optional[int] = Field(default=None, ge=0)
    execution_id: Optional[str] = None
    results: Optional[ExecutionResults] = None
    artifacts_url: Optional[str] = None
    error_message: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool = True
    execution_id: str
    status: ExecutionStatus
    changed: bool
    shard_id: Optional[str] = None
    parent_execution_id: Optional[str] = None


# Resources / metrics -------------------------------------------------------------
class ExecutionMetric(BaseModel):
    id: str
    execution_id: Optional[str] = None
    runner_id: Optional[str] = None
    metric_type: str
    metric_value: float
    metric_unit: Optional[str] = None
    timestamp: str

    model_config = {"from_attributes": True}


class ComponentHealth(BaseModel):
    status: OverallHealth
    details: Dict[str, Any] = Field(default_factory=dict)


class SystemHealth(BaseModel):
    status: OverallHealth
    timestamp: str
    components: Dict[str, ComponentHealth]


# Config --------------------------------------------------------------------------
class OrchestrationConfig(BaseModel):
    scheduler_interval_seconds: int
    health_check_interval_seconds: int
    health_check_timeout_seconds: int
    health_failure_threshold: int
    timeout_sweep_interval_seconds: int
    default_timeout_seconds: int
    queue_wait_degraded_minutes: int
    pinned_assignment_advisory: bool


class ConfigUpdate(CamelModel):
    scheduler_interval_seconds: Optional[int] = None
    health_check_interval_seconds: Optional[int] = None
    health_check_timeout_seconds: Optional[int] = None
    health_failure_threshold: Optional[int] = None
    timeout_sweep_interval_seconds: Optional[int] = None
    default_timeout_seconds: Optional[int] = None
    queue_wait_degraded_minutes: Optional[int] = None
    pinned_assignment_advisory: Optional[bool] = None
