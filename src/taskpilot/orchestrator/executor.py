"""Single-task executor sequencing PreFlight, Execution and PostFlight."""

from __future__ import annotations

import logging
from pathlib import Path

from taskpilot.config import Settings
from taskpilot.orchestrator.errors import TaskPilotError
from taskpilot.orchestrator.models import (
    ExecutorResult,
    RunState,
    RunStatus,
    TerminationReason,
    utc_now,
)
from taskpilot.orchestrator.phases import (
    ExecutionOutcome,
    ExecutionPhase,
    ExecutorDependencies,
    ExecutorOptions,
    PreFlightResult,
    RunContext,
    TaskLogAdapter,
    run_postflight,
    run_preflight,
)

logger = logging.getLogger(__name__)


class TaskExecutor:
    """Runs one task end to end; owns the mutable run state for that task."""

    def __init__(
        self,
        settings: Settings,
        *,
        options: ExecutorOptions | None = None,
        dependencies: ExecutorDependencies | None = None,
    ) -> None:
        self.settings = settings
        self.options = options or ExecutorOptions()
        self.dependencies = dependencies or ExecutorDependencies()
        self.state = RunState()

    async def run(self, task_path: Path) -> ExecutorResult:
        """Execute the task; always returns a well-formed result."""

        self.state.status = RunStatus.RUNNING
        self.state.started_at = utc_now()
        run = RunContext(
            task_path=task_path,
            settings=self.settings,
            options=self.options,
            dependencies=self.dependencies,
            state=self.state,
            log=TaskLogAdapter(logger, {"task": task_path.name}),
        )

        preflight: PreFlightResult | None = None
        outcome: ExecutionOutcome | None = None
        try:
            preflight = await run_preflight(run)
            run.settings = preflight.settings
            outcome = await ExecutionPhase(run, preflight).execute()
        except Exception as error:  # noqa: BLE001
            run.log.error("Task execution failed: %s", error)
            self.state.status = RunStatus.FAILED
            self.state.last_error = str(error)
            if isinstance(error, TaskPilotError):
                self.state.error_category = error.category
                self.state.error_code = error.code
            outcome = ExecutionOutcome(TerminationReason.FATAL_ERROR, error=str(error))

        return await run_postflight(run, preflight, outcome)

    def pause(self) -> None:
        """Stop after the current pass; in-flight provider calls are never interrupted."""

        if self.state.status is RunStatus.RUNNING:
            self.state.status = RunStatus.PAUSED
            logger.info("Execution paused")

    def resume(self) -> None:
        if self.state.status is RunStatus.PAUSED:
            self.state.status = RunStatus.RUNNING
            logger.info("Execution resumed")

    def get_state(self) -> RunState:
        return self.state.snapshot()


async def execute_task(
    task_path: Path,
    settings: Settings,
    *,
    options: ExecutorOptions | None = None,
    dependencies: ExecutorDependencies | None = None,
) -> ExecutorResult:
    """Convenience wrapper running a fresh executor for one task."""

    executor = TaskExecutor(settings, options=options, dependencies=dependencies)
    return await executor.run(task_path)
