"""Run several tasks concurrently, serializing the ones whose scopes overlap."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

from taskpilot.config import Settings
from taskpilot.orchestrator.context import ContextLoader, ParsedTask, find_project_root
from taskpilot.orchestrator.executor import TaskExecutor
from taskpilot.orchestrator.models import (
    ExecutorResult,
    ParallelExecutionResult,
    ParallelTaskResult,
    RunState,
    RunStatus,
    TaskDependency,
    TerminationReason,
    utc_now,
)
from taskpilot.orchestrator.phases import ExecutorDependencies, ExecutorOptions, TaskLogAdapter
from taskpilot.orchestrator.scope import matches_pattern

logger = logging.getLogger(__name__)

TaskRunner = Callable[[Path, ExecutorOptions], Awaitable[ExecutorResult]]


@dataclass(slots=True)
class ParallelOptions:
    """Switches applied to every task of a parallel run."""

    concurrency: int = 2
    dry_run: bool = False
    resume: bool = False
    max_iterations: int | None = None
    on_task_start: Callable[[Path], None] | None = None
    on_task_complete: Callable[[Path, ExecutorResult], None] | None = None


def scope_overlap(paths_a: Sequence[str], paths_b: Sequence[str]) -> str | None:
    """Approximate overlap of two allowed-pattern lists; returns a reason or None.

    Compares glob-stripped base directories by prefix in both directions and
    cross-checks each base against the other side's pattern. This can both
    over- and under-report true path conflicts.
    """

    for pattern_a in paths_a:
        for pattern_b in paths_b:
            base_a = _glob_base(pattern_a)
            base_b = _glob_base(pattern_b)
            if not base_a or not base_b:
                continue
            if (
                base_a.startswith(base_b)
                or base_b.startswith(base_a)
                or matches_pattern(base_a, [pattern_b])
                or matches_pattern(base_b, [pattern_a])
            ):
                return f"{pattern_a} overlaps with {pattern_b}"
    return None


def detect_dependencies(
    task_paths: Sequence[Path],
    tasks: dict[Path, ParsedTask],
) -> list[TaskDependency]:
    dependencies: list[TaskDependency] = []
    for task_path in task_paths:
        conflicts: list[Path] = []
        reasons: list[str] = []
        for other in task_paths:
            if other == task_path:
                continue
            overlap = scope_overlap(tasks[task_path].scope.allowed, tasks[other].scope.allowed)
            if overlap is not None:
                conflicts.append(other)
                reasons.append(overlap)
        if conflicts:
            dependencies.append(
                TaskDependency(
                    task_path=task_path,
                    depends_on=tuple(conflicts),
                    reason="; ".join(reasons),
                ),
            )
    return dependencies


def build_waves(
    task_paths: Sequence[Path],
    dependencies: Sequence[TaskDependency],
) -> list[list[Path]]:
    """Greedily place each task into the earliest wave holding none of its conflicts."""

    conflict_pairs = {
        frozenset((dependency.task_path, other))
        for dependency in dependencies
        for other in dependency.depends_on
    }
    if not conflict_pairs:
        return [list(task_paths)] if task_paths else []

    waves: list[list[Path]] = []
    for task_path in task_paths:
        for wave in waves:
            if not any(frozenset((task_path, existing)) in conflict_pairs for existing in wave):
                wave.append(task_path)
                break
        else:
            waves.append([task_path])
    return waves


class FileOwnership:
    """Shared file -> owning task map; every update is a single-writer critical section."""

    def __init__(self) -> None:
        self._owners: dict[str, Path] = {}
        self._lock = threading.Lock()

    def claim(self, task_path: Path, files: Sequence[str]) -> list[str]:
        """Record ownership and return conflicts with files owned by other tasks."""

        conflicts: list[str] = []
        with self._lock:
            for path in files:
                owner = self._owners.get(path)
                if owner is not None and owner != task_path:
                    conflicts.append(f"{path} (also modified by {owner.stem})")
                else:
                    self._owners[path] = task_path
        return conflicts

    def release(self, task_path: Path) -> None:
        with self._lock:
            for path in [path for path, owner in self._owners.items() if owner == task_path]:
                del self._owners[path]


class ParallelExecutor:
    """Coordinate waves of task executions with bounded concurrency."""

    def __init__(
        self,
        settings: Settings,
        *,
        options: ParallelOptions | None = None,
        dependencies: ExecutorDependencies | None = None,
        task_runner: TaskRunner | None = None,
    ) -> None:
        self.settings = settings
        self.options = options or ParallelOptions()
        self.executor_dependencies = dependencies or ExecutorDependencies()
        self._task_runner = task_runner or self._run_with_executor
        self._ownership = FileOwnership()
        self._results: dict[Path, ParallelTaskResult] = {}
        self._file_conflicts: list[str] = []
        self._conflicted: set[Path] = set()

    async def run(self, task_paths: Sequence[Path]) -> ParallelExecutionResult:
        task_paths = list(dict.fromkeys(task_paths))
        tasks = {path: _parse_task(path) for path in task_paths}

        dependencies = detect_dependencies(task_paths, tasks)
        for dependency in dependencies:
            logger.warning(
                "%s conflicts with: %s (%s)",
                dependency.task_path.stem,
                ", ".join(path.stem for path in dependency.depends_on),
                dependency.reason,
            )

        waves = build_waves(task_paths, dependencies)
        logger.info(
            "Parallel execution: %s tasks, concurrency %s, %s dependencies, %s waves",
            len(task_paths),
            self.options.concurrency,
            len(dependencies),
            len(waves),
        )
        for index, path in enumerate(task_paths, start=1):
            logger.info("  %s. %s: %s", index, path.stem, tasks[path].goal[:60])

        started = utc_now()
        for index, wave in enumerate(waves, start=1):
            if len(waves) > 1:
                logger.info("--- Wave %s/%s (%s tasks) ---", index, len(waves), len(wave))
            self._conflicted.clear()
            await self._run_wave(wave)
            await self._retry_conflicted(wave)

        result = self._aggregate(task_paths, dependencies)
        log_parallel_summary(result, (utc_now() - started).total_seconds())
        return result

    async def _run_wave(self, wave: Sequence[Path]) -> None:
        queue: asyncio.Queue[Path] = asyncio.Queue()
        for task_path in wave:
            queue.put_nowait(task_path)

        async def worker() -> None:
            while True:
                try:
                    task_path = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await self._run_one(task_path, task_path)

        workers = max(1, min(self.options.concurrency, len(wave)))
        await asyncio.gather(*(worker() for _ in range(workers)))

    async def _retry_conflicted(self, wave: Sequence[Path]) -> None:
        """Re-run unsuccessful conflicted tasks once, one at a time."""

        retry = [
            path
            for path in wave
            if path in self._conflicted and not self._results[path].result.success
        ]
        if not retry:
            return
        logger.info("--- Retrying %s conflicted task(s) ---", len(retry))
        for task_path in retry:
            previous = self._results[task_path].result
            await self._run_one(task_path, previous.moved_to or task_path)

    async def _run_one(self, task_key: Path, run_path: Path) -> None:
        task_log = TaskLogAdapter(logger, {"task": task_key.stem})
        started_at = utc_now()
        if self.options.on_task_start is not None:
            self.options.on_task_start(task_key)

        def on_iteration(state: RunState) -> None:
            conflicts = self._ownership.claim(task_key, state.files_modified)
            if conflicts:
                task_log.warning("File conflict detected: %s", ", ".join(conflicts))
                self._file_conflicts.extend(conflicts)
                self._conflicted.add(task_key)

        options = ExecutorOptions(
            resume=self.options.resume,
            dry_run=self.options.dry_run,
            max_iterations=self.options.max_iterations,
            on_iteration=on_iteration,
        )
        try:
            result = await self._task_runner(run_path, options)
        except Exception as error:  # noqa: BLE001
            task_log.error("Failed: %s", error)
            result = ExecutorResult(
                success=False,
                status=RunStatus.FAILED,
                iterations=0,
                files_modified=(),
                task_path=run_path,
                error=str(error),
                termination_reason=TerminationReason.FATAL_ERROR,
            )
        finally:
            self._ownership.release(task_key)

        if result.task_path != task_key:
            result = replace(result, task_path=task_key)
        self._results[task_key] = ParallelTaskResult(
            task_path=task_key,
            task_name=task_key.stem,
            result=result,
            started_at=started_at,
            completed_at=utc_now(),
        )
        task_log.info(
            "Finished: %s (%s iterations, %s files)",
            "OK" if result.success else "FAIL",
            result.iterations,
            len(result.files_modified),
        )
        if self.options.on_task_complete is not None:
            self.options.on_task_complete(task_key, result)

    async def _run_with_executor(
        self,
        task_path: Path,
        options: ExecutorOptions,
    ) -> ExecutorResult:
        executor = TaskExecutor(
            self.settings,
            options=options,
            dependencies=self.executor_dependencies,
        )
        return await executor.run(task_path)

    def _aggregate(
        self,
        task_paths: Sequence[Path],
        dependencies: Sequence[TaskDependency],
    ) -> ParallelExecutionResult:
        entries = tuple(self._results[path] for path in task_paths if path in self._results)
        completed = sum(1 for entry in entries if entry.result.success)
        failed = sum(1 for entry in entries if entry.result.status is RunStatus.FAILED)
        blocked = sum(1 for entry in entries if entry.result.status is RunStatus.BLOCKED)
        skipped = len(task_paths) - len(entries)
        files = dict.fromkeys(path for entry in entries for path in entry.result.files_modified)
        return ParallelExecutionResult(
            success=failed == 0 and blocked == 0 and skipped == 0,
            total_tasks=len(task_paths),
            completed=completed,
            failed=failed,
            blocked=blocked,
            skipped=skipped,
            tasks=entries,
            dependencies=tuple(dependencies),
            file_conflicts=tuple(self._file_conflicts),
            total_iterations=sum(entry.result.iterations for entry in entries),
            total_files_modified=tuple(files),
        )


def log_parallel_summary(result: ParallelExecutionResult, elapsed_seconds: float) -> None:
    logger.info(
        "Parallel Execution Summary\n"
        "  Total Tasks: %s\n"
        "    Completed: %s\n"
        "    Failed:    %s\n"
        "    Blocked:   %s\n"
        "    Skipped:   %s\n"
        "  Total Iterations: %s\n"
        "  Total Files Modified: %s\n"
        "  File Conflicts: %s\n"
        "  Duration: %s",
        result.total_tasks,
        result.completed,
        result.failed,
        result.blocked,
        result.skipped,
        result.total_iterations,
        len(result.total_files_modified),
        len(result.file_conflicts),
        format_duration(elapsed_seconds),
    )
    for entry in result.tasks:
        logger.info(
            "  %s: %s | %s iterations | %s files | %s",
            entry.task_name,
            entry.result.status.value.upper(),
            entry.result.iterations,
            len(entry.result.files_modified),
            format_duration(entry.duration_seconds),
        )
        if entry.result.error:
            logger.error("    Error: %s", entry.result.error)
    for conflict in result.file_conflicts:
        logger.warning("  conflict: %s", conflict)
    for path in result.total_files_modified:
        logger.info("  modified: %s", path)


def format_duration(seconds: float) -> str:
    total = round(seconds)
    minutes, remaining = divmod(total, 60)
    return f"{minutes}m {remaining}s" if minutes else f"{total}s"


def _parse_task(task_path: Path) -> ParsedTask:
    project_root = find_project_root(task_path.resolve().parent) or task_path.parent
    return ContextLoader(project_root).parse_task(task_path)


def _glob_base(pattern: str) -> str:
    return re.sub(r"/?\*\*.*$", "", pattern).removesuffix("/*")
