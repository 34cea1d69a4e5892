"""Resolve config, load context and build the collaborators for one run.

Plaintext-secret warnings are computed on the settings as loaded, before
`${VAR}` references are substituted. Scanning the resolved settings would flag
every secret that is correctly supplied through the environment.
"""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path

from taskpilot.config import detect_plaintext_secrets, resolve_config
from taskpilot.orchestrator.context import (
    AI_DIR_NAME,
    ContextLoader,
    ContextLoadError,
    estimate_context_size,
    find_project_root,
)
from taskpilot.orchestrator.errors import ConfigError, PreFlightError
from taskpilot.orchestrator.models import BlockedStatus, ResumeAttempt, utc_now
from taskpilot.orchestrator.phases.types import PreFlightResult, RunContext
from taskpilot.orchestrator.scope import ScopeGuard
from taskpilot.orchestrator.task_file import record_resume_attempt
from taskpilot.orchestrator.validator import ValidationCommands

NOT_BLOCKED_MESSAGE = "Task is not blocked. Cannot resume a task that is not in BLOCKED status."


async def run_preflight(run: RunContext) -> PreFlightResult:
    """Prepare everything the execution loop needs; failures are never retried."""

    for warning in detect_plaintext_secrets(run.settings):
        run.log.warning(warning)
    try:
        settings = resolve_config(run.settings)
    except ConfigError as error:
        raise PreFlightError(f"Configuration error: {error}") from error

    project_root = find_project_root(run.task_path.resolve().parent) or find_project_root(
        Path.cwd(),
    )
    if project_root is None:
        raise ContextLoadError(f"No {AI_DIR_NAME}/AGENTS.md found above {run.task_path}")
    loader = ContextLoader(project_root, load_skills=settings.skills.enabled)
    context = await asyncio.to_thread(loader.load_context, run.task_path)

    blocked_status: BlockedStatus | None = None
    if run.options.resume:
        blocked_status = context.task.blocked_status
        if blocked_status is None:
            raise PreFlightError(NOT_BLOCKED_MESSAGE)
        run.state.iteration = blocked_status.previous_iteration
        run.state.add_modified_files(blocked_status.files_modified)
        run.log.info(
            "Resuming blocked task from iteration %s (%s files previously modified)",
            blocked_status.previous_iteration,
            len(blocked_status.files_modified),
        )

    breakdown = estimate_context_size(context)
    run.state.context_breakdown = breakdown
    run.state.context_tokens = breakdown.total
    run.log.info(
        "Context: ~%s tokens (agents %s, role %s, task %s, plan %s, skills %s)",
        breakdown.total,
        breakdown.agents,
        breakdown.role,
        breakdown.task,
        breakdown.plan,
        breakdown.skills,
    )

    skip_permissions = settings.security.skip_permissions
    if skip_permissions and settings.security.warn_on_skip:
        run.log.warning(
            "Running with permission prompts disabled; the agent can modify files "
            "without confirmation. Set security.skip_permissions: false to require prompts.",
        )

    guard = ScopeGuard(context.task.scope, settings.permissions.scope_enforcement)
    validator = run.dependencies.validator_factory(
        ValidationCommands(
            pre_commit=settings.validation.pre_commit,
            pre_push=settings.validation.pre_push,
            pre_pr=settings.validation.pre_pr,
            timeout_seconds=settings.validation.command_timeout_seconds,
        ),
        project_root,
    )

    if blocked_status is not None:
        blocked_status = await _record_resume(run, blocked_status)

    provider = run.dependencies.provider_factory(settings, project_root)
    vcs = run.dependencies.vcs_factory(project_root)
    return PreFlightResult(
        settings=settings,
        project_root=project_root,
        context=context,
        guard=guard,
        validator=validator,
        provider=provider,
        vcs=vcs,
        blocked_status=blocked_status,
        skip_permissions=skip_permissions,
    )


async def _record_resume(run: RunContext, blocked_status: BlockedStatus) -> BlockedStatus:
    resumed_at = utc_now()
    try:
        await asyncio.to_thread(
            record_resume_attempt,
            run.task_path,
            blocked_status,
            resumed_at=resumed_at,
        )
    except OSError as error:
        run.log.warning("Could not record resume attempt: %s", error)
    attempt = ResumeAttempt(resumed_at=resumed_at.isoformat())
    return dataclasses.replace(
        blocked_status,
        attempt_history=(attempt, *blocked_status.attempt_history),
    )
