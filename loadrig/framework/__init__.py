"""
Core framework of the loadrig load-generation harness.

This module provides:
- RampingSchedule: Target concurrency over time from a stage list
- VirtualUserPool: Spawns and retires virtual users running a workload
- HttpExecutor: Measured HTTP requests over a shared connection pool
- MetricsAggregator: Concurrency-safe metric accumulation and snapshots
- ThresholdEvaluator: Pass/fail criteria over metric snapshots
- LoadTestRunner: Run orchestration and the final verdict
- RunReporter: JSON, Markdown and CSV reports
"""

from .config import (
    ConfigValidationError,
    HttpConfig,
    RunConfig,
    RunOptions,
    ScenarioConfig,
    load_config,
    validate_config,
)
from .executor import HttpExecutor
from .metrics import (
    BUILTIN_METRICS,
    CheckSummary,
    MetricsAggregator,
    MetricsSnapshot,
    MetricSummary,
    MetricTypeError,
    QuantileSketch,
)
from .models import (
    CheckResult,
    MetricType,
    RequestSample,
    RunState,
    Stage,
    VUState,
)
from .pool import VirtualUser, VirtualUserPool
from .reporter import RunReporter
from .runner import LoadTestRunner, RunResult, run_load_test_sync
from .scheduler import RampingSchedule, parse_duration
from .thresholds import (
    ThresholdError,
    ThresholdEvaluator,
    ThresholdOutcome,
    ThresholdSpec,
    parse_threshold_expression,
)
from .workload import VUContext, WorkloadResolutionError, resolve_workload

__all__ = [
    # Models
    "CheckResult",
    "MetricType",
    "RequestSample",
    "RunState",
    "Stage",
    "VUState",
    # Scheduler
    "RampingSchedule",
    "parse_duration",
    # Pool and workloads
    "VirtualUser",
    "VirtualUserPool",
    "VUContext",
    "WorkloadResolutionError",
    "resolve_workload",
    # Executor
    "HttpExecutor",
    # Metrics
    "BUILTIN_METRICS",
    "CheckSummary",
    "MetricsAggregator",
    "MetricsSnapshot",
    "MetricSummary",
    "MetricTypeError",
    "QuantileSketch",
    # Thresholds
    "ThresholdError",
    "ThresholdEvaluator",
    "ThresholdOutcome",
    "ThresholdSpec",
    "parse_threshold_expression",
    # Configuration
    "ConfigValidationError",
    "HttpConfig",
    "RunConfig",
    "RunOptions",
    "ScenarioConfig",
    "load_config",
    "validate_config",
    # Runner and reporting
    "LoadTestRunner",
    "RunResult",
    "run_load_test_sync",
    "RunReporter",
]
