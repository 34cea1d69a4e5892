"""PreFlight, Execution and PostFlight stages of a single task run."""

from taskpilot.orchestrator.phases.execution import ExecutionPhase
from taskpilot.orchestrator.phases.postflight import run_postflight
from taskpilot.orchestrator.phases.preflight import run_preflight
from taskpilot.orchestrator.phases.types import (
    ExecutionOutcome,
    ExecutorDependencies,
    ExecutorOptions,
    PreFlightResult,
    RunContext,
    TaskLogAdapter,
)

__all__ = [
    "ExecutionOutcome",
    "ExecutionPhase",
    "ExecutorDependencies",
    "ExecutorOptions",
    "PreFlightResult",
    "RunContext",
    "TaskLogAdapter",
    "run_postflight",
    "run_preflight",
]
