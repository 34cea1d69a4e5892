"""Interpret how the loop ended, persist it, and report the final result."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

from taskpilot.orchestrator.errors import GitError
from taskpilot.orchestrator.git import GitCommandError
from taskpilot.orchestrator.models import (
    ExecutorResult,
    RunStatus,
    TerminationReason,
    TokenUsageSummary,
    utc_now,
)
from taskpilot.orchestrator.phases.types import ExecutionOutcome, PreFlightResult, RunContext
from taskpilot.orchestrator.pricing import estimate_cost_usd, lookup_pricing
from taskpilot.orchestrator.task_file import (
    move_task_file,
    update_resume_attempt_history,
    write_blocked_status,
    write_execution_history,
    write_terminal_status,
)

_BUDGET_REASONS = frozenset({TerminationReason.MAX_ITERATIONS, TerminationReason.MAX_FAILURES})
_SUMMARY_TITLES = {
    RunStatus.COMPLETED: "Task Completed",
    RunStatus.BLOCKED: "Task Blocked",
    RunStatus.PAUSED: "Task Paused",
    RunStatus.IDLE: "Dry Run",
}


async def run_postflight(
    run: RunContext,
    preflight: PreFlightResult | None,
    outcome: ExecutionOutcome | None,
) -> ExecutorResult:
    """Build the immutable result; every side effect here is best-effort."""

    state = run.state
    reason = outcome.termination_reason if outcome is not None else None
    blocked_status = preflight.blocked_status if preflight is not None else None
    resumed = run.options.resume and blocked_status is not None

    if reason in _BUDGET_REASONS:
        state.status = RunStatus.BLOCKED
        state.last_error = outcome.error
    elif outcome is not None and state.status is RunStatus.FAILED and state.last_error is None:
        state.last_error = outcome.error

    state.completed_at = utc_now()
    moved_to: Path | None = None

    if preflight is not None:
        if state.status is RunStatus.BLOCKED:
            await _best_effort(
                run,
                "write BLOCKED status",
                write_blocked_status,
                run.task_path,
                started_at=state.started_at,
                iterations=state.iteration,
                blocked_at=state.completed_at,
                reason=state.last_error or "Unknown blocker",
                files=state.files_modified,
            )
            if resumed:
                await _best_effort(
                    run,
                    "update resume history",
                    update_resume_attempt_history,
                    run.task_path,
                    status="blocked_again",
                    iterations=state.iteration - blocked_status.previous_iteration,
                    completed_at=state.completed_at,
                )
        elif state.status is RunStatus.COMPLETED and resumed:
            await _best_effort(
                run,
                "write execution history",
                write_execution_history,
                run.task_path,
                blocked_status,
                completed_at=state.completed_at,
                iterations=state.iteration,
                files_count=len(state.files_modified),
            )
        elif state.status in {RunStatus.COMPLETED, RunStatus.FAILED}:
            await _best_effort(
                run,
                f"write {state.status.value.upper()} status",
                write_terminal_status,
                run.task_path,
                state.status,
                started_at=state.started_at,
                completed_at=state.completed_at,
                iterations=state.iteration,
                files=state.files_modified,
                error=state.last_error,
                token_usage=state.token_usage,
            )

        if state.status in {RunStatus.COMPLETED, RunStatus.BLOCKED, RunStatus.FAILED}:
            moved_to = await _move_and_stage(run, preflight)

        if state.status is RunStatus.COMPLETED and preflight.settings.permissions.auto_push:
            await _push(run, preflight)

    success = state.status is RunStatus.COMPLETED
    result = ExecutorResult(
        success=success,
        status=state.status,
        iterations=state.iteration,
        files_modified=tuple(state.files_modified),
        task_path=run.task_path,
        error=None if success else state.last_error,
        blocked_reason=state.last_error if state.status is RunStatus.BLOCKED else None,
        token_usage=build_token_summary(run, preflight),
        termination_reason=reason,
        moved_to=moved_to,
        error_category=None if success else state.error_category,
        error_code=None if success else state.error_code,
    )
    log_summary(run, result)

    try:
        notifier = run.dependencies.notifier_factory(run.settings.notifications)
        await notifier.notify_result(result)
    except Exception as error:  # noqa: BLE001
        run.log.debug("Notification failed: %s", error)
    return result


def build_token_summary(
    run: RunContext,
    preflight: PreFlightResult | None,
) -> TokenUsageSummary | None:
    state = run.state
    context_tokens = state.context_tokens or 0
    input_tokens = state.token_usage.input_tokens if state.token_usage else 0
    output_tokens = state.token_usage.output_tokens if state.token_usage else 0
    if context_tokens == 0 and input_tokens == 0 and output_tokens == 0:
        return None

    settings = preflight.settings if preflight is not None else run.settings
    pricing = lookup_pricing(
        model=settings.provider.model,
        provider_type=settings.provider.type,
        configured=settings.cost.rates,
    )
    return TokenUsageSummary(
        context_tokens=context_tokens,
        total_input_tokens=input_tokens,
        total_output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        estimated_cost=estimate_cost_usd(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            pricing=pricing,
        ),
        breakdown=state.context_breakdown,
    )


def log_summary(run: RunContext, result: ExecutorResult) -> None:
    lines = [
        f"Task: {result.task_path.name}",
        f"Status: {result.status.value}",
        f"Iterations: {result.iterations}",
        f"Files: {len(result.files_modified)}",
    ]
    usage = result.token_usage
    if usage is not None:
        lines.append(f"Context: ~{usage.context_tokens:,} tokens")
        if usage.total_tokens:
            lines.append(f"Total tokens: ~{usage.total_tokens:,}")
            lines.append(f"  Input:  ~{usage.total_input_tokens:,}")
            lines.append(f"  Output: ~{usage.total_output_tokens:,}")
        if usage.estimated_cost is not None:
            lines.append(f"Est. cost: ~${usage.estimated_cost:.2f}")
    if result.blocked_reason:
        lines.append(f"Blocked: {result.blocked_reason}")
    elif result.error:
        lines.append(f"Error: {result.error}")

    title = _SUMMARY_TITLES.get(result.status, "Task Failed")
    body = "\n".join(f"  {line}" for line in lines)
    run.log.info("%s\n%s\n%s", title, "=" * len(title), body)


async def _move_and_stage(run: RunContext, preflight: PreFlightResult) -> Path | None:
    try:
        new_path = await asyncio.to_thread(move_task_file, run.task_path, run.state.status)
    except OSError as error:
        run.log.warning("Could not move task file: %s", error)
        return None

    try:
        if new_path != run.task_path:
            await preflight.vcs.add([str(new_path)])
            await preflight.vcs.rm_cached([str(run.task_path)])
        else:
            await preflight.vcs.add([str(run.task_path)])
    except (GitCommandError, OSError) as error:
        run.log.debug("Staging task file failed: %s", error)
    return new_path


async def _push(run: RunContext, preflight: PreFlightResult) -> None:
    try:
        summary = await preflight.validator.pre_push()
        run.state.validation_results.append(summary)
        if not summary.passed:
            run.log.warning(
                "Skipping push, pre-push validation failed:\n%s",
                preflight.validator.format_report(summary),
            )
            return
        await preflight.vcs.push()
    except (GitCommandError, OSError) as error:
        run.log.warning("%s", GitError.push_failed(str(error)))
        return
    run.log.info("Pushed changes to remote")


async def _best_effort(
    run: RunContext,
    action: str,
    func: Callable[..., object],
    *args: object,
    **kwargs: object,
) -> None:
    try:
        await asyncio.to_thread(func, *args, **kwargs)
    except (OSError, ValueError) as error:
        run.log.warning("Could not %s: %s", action, error)
