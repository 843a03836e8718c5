from __future__ import annotations

DEFAULT_RUNNER_PRIORITY = 50
DEFAULT_MAX_CONCURRENT_JOBS = 1
DEFAULT_RULE_PRIORITY = 50
DEFAULT_EXECUTION_PRIORITY = 50

DEFAULT_TIMEOUT_SECONDS = 3600
MIN_ESTIMATED_TIMEOUT_SECONDS = 1800
ESTIMATE_TIMEOUT_FACTOR = 1.3

SCHEDULER_BATCH_SIZE = 50

DEFAULT_CPU_ALLOCATION = 50.0
DEFAULT_MEMORY_ALLOCATION_MB = 2048.0
DEFAULT_MAX_CPU_PERCENT = 80.0
DEFAULT_MAX_MEMORY_MB = 8192.0

SUITE_CPU_MULTIPLIERS = {
    "smoke": 0.8,
    "regression": 1.2,
    "api": 0.9,
    "ui": 1.1,
    "performance": 1.3,
}

SUITE_MEMORY_MULTIPLIERS = {
    "smoke": 0.7,
    "regression": 1.3,
    "api": 0.8,
    "ui": 1.4,
    "performance": 1.5,
}

DEFAULT_CONFIG = {
    "scheduler_interval_seconds": 5,
    "health_check_interval_seconds": 120,
    "health_check_timeout_seconds": 10,
    "health_failure_threshold": 3,
    "timeout_sweep_interval_seconds": 60,
    "default_timeout_seconds": DEFAULT_TIMEOUT_SECONDS,
    "queue_wait_degraded_minutes": 30,
    "pinned_assignment_advisory": False,
}
