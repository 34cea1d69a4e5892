"""Controllers for task CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from taskpilot.config import Settings
from taskpilot.orchestrator.executor import execute_task
from taskpilot.orchestrator.models import ExecutorResult, ParallelExecutionResult
from taskpilot.orchestrator.parallel import ParallelExecutor, ParallelOptions, format_duration
from taskpilot.orchestrator.phases import ExecutorDependencies, ExecutorOptions
from taskpilot.orchestrator.phases.types import AskUserCallback


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for a single task run."""

    task_path: Path
    config_path: Path | None = None
    resume: bool = False
    dry_run: bool = False
    max_iterations: int | None = None
    on_output: Callable[[str], None] | None = None
    on_ask_user: AskUserCallback | None = None


@dataclass(slots=True)
class ParallelRunCommand:
    """CLI input for running several tasks concurrently."""

    task_paths: tuple[Path, ...]
    config_path: Path | None = None
    concurrency: int = 2
    resume: bool = False
    dry_run: bool = False
    max_iterations: int | None = None


@dataclass(slots=True)
class CommandOutcome:
    lines: list[str]
    success: bool


class TaskCliController:
    """Adapter between CLI commands and the executors."""

    def __init__(self, dependencies: ExecutorDependencies | None = None) -> None:
        self.dependencies = dependencies

    def run_task(self, command: RunTaskCommand) -> CommandOutcome:
        settings = Settings.from_env(command.config_path)
        result = asyncio.run(
            execute_task(
                command.task_path,
                settings,
                options=ExecutorOptions(
                    resume=command.resume,
                    dry_run=command.dry_run,
                    max_iterations=command.max_iterations,
                    on_output=command.on_output,
                    on_ask_user=command.on_ask_user,
                ),
                dependencies=self.dependencies,
            ),
        )
        return CommandOutcome(
            lines=render_result_lines(result),
            success=result.success or command.dry_run,
        )

    def run_parallel(self, command: ParallelRunCommand) -> CommandOutcome:
        settings = Settings.from_env(command.config_path)
        executor = ParallelExecutor(
            settings,
            options=ParallelOptions(
                concurrency=command.concurrency,
                dry_run=command.dry_run,
                resume=command.resume,
                max_iterations=command.max_iterations,
            ),
            dependencies=self.dependencies,
        )
        result = asyncio.run(executor.run(command.task_paths))
        return CommandOutcome(
            lines=render_parallel_lines(result),
            success=result.success or command.dry_run,
        )


def render_result_lines(result: ExecutorResult) -> list[str]:
    lines = [
        f"Task: {result.task_path.name}",
        f"Status: {result.status.value}",
        f"Iterations: {result.iterations}",
        f"Files modified: {len(result.files_modified)}",
    ]
    lines.extend(f"  - {path}" for path in result.files_modified)
    if result.termination_reason is not None:
        lines.append(f"Termination: {result.termination_reason.value}")
    if result.blocked_reason:
        lines.append(f"Blocked: {result.blocked_reason}")
    elif result.error:
        category = f"[{result.error_category.value}] " if result.error_category else ""
        lines.append(f"Error: {category}{result.error}")
    usage = result.token_usage
    if usage is not None and usage.total_tokens:
        tokens = (
            f"Tokens: {usage.total_tokens:,} "
            f"(input {usage.total_input_tokens:,} / output {usage.total_output_tokens:,})"
        )
        if usage.estimated_cost is not None:
            tokens += f", est. cost ${usage.estimated_cost:.2f}"
        lines.append(tokens)
    if result.moved_to is not None:
        lines.append(f"Moved to: {result.moved_to}")
    return lines


def render_parallel_lines(result: ParallelExecutionResult) -> list[str]:
    lines = [
        f"Tasks: {result.total_tasks} "
        f"(completed {result.completed}, failed {result.failed}, "
        f"blocked {result.blocked}, skipped {result.skipped})",
        f"Total iterations: {result.total_iterations}",
        f"Files modified: {len(result.total_files_modified)}",
    ]
    for dependency in result.dependencies:
        lines.append(
            f"Dependency: {dependency.task_path.stem} -> "
            f"{', '.join(path.stem for path in dependency.depends_on)} ({dependency.reason})",
        )
    for entry in result.tasks:
        lines.append(
            f"- {entry.task_name}: {entry.result.status.value} | "
            f"{entry.result.iterations} iterations | "
            f"{len(entry.result.files_modified)} files | "
            f"{format_duration(entry.duration_seconds)}",
        )
        if entry.result.error:
            lines.append(f"    error: {entry.result.error}")
    lines.extend(f"Conflict: {conflict}" for conflict in result.file_conflicts)
    return lines
