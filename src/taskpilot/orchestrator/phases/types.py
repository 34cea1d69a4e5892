"""Shared values threaded through the PreFlight, Execution and PostFlight stages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from taskpilot.config import NotificationSettings, Settings
from taskpilot.orchestrator.context import LoadedContext
from taskpilot.orchestrator.git import GitOps, VcsClient
from taskpilot.orchestrator.models import (
    BlockedStatus,
    ErrorCategory,
    ExecutorResult,
    PhaseEvent,
    RunState,
    TerminationReason,
    ValidationSummary,
)
from taskpilot.orchestrator.notifications import NotificationService
from taskpilot.orchestrator.providers import Provider, create_provider
from taskpilot.orchestrator.scope import ScopeGuard
from taskpilot.orchestrator.validator import ValidationCommands, Validator

AskUserCallback = Callable[[str, list[str]], bool | Awaitable[bool]]


class QualityGate(Protocol):
    """Validator surface the execution loop relies on."""

    async def pre_commit(self) -> ValidationSummary: ...

    async def pre_push(self) -> ValidationSummary: ...

    def format_report(self, summary: ValidationSummary) -> str: ...


class Notifier(Protocol):
    async def notify_result(self, result: ExecutorResult) -> None: ...


def _default_provider(settings: Settings, cwd: Path) -> Provider:
    return create_provider(settings.provider.type, cwd, model=settings.provider.model)


def _default_validator(commands: ValidationCommands, cwd: Path) -> QualityGate:
    return Validator(commands, cwd)


def _default_notifier(settings: NotificationSettings) -> Notifier:
    return NotificationService(settings)


@dataclass(slots=True)
class ExecutorDependencies:
    """Factories for every collaborator with side effects outside the process."""

    provider_factory: Callable[[Settings, Path], Provider] = _default_provider
    vcs_factory: Callable[[Path], VcsClient] = GitOps
    validator_factory: Callable[[ValidationCommands, Path], QualityGate] = _default_validator
    notifier_factory: Callable[[NotificationSettings], Notifier] = _default_notifier
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


@dataclass(slots=True)
class ExecutorOptions:
    """Per-run switches and observer callbacks."""

    resume: bool = False
    dry_run: bool = False
    max_iterations: int | None = None
    on_iteration: Callable[[RunState], None] | None = None
    on_phase: Callable[[PhaseEvent], None] | None = None
    on_output: Callable[[str], None] | None = None
    on_ask_user: AskUserCallback | None = None


class TaskLogAdapter(logging.LoggerAdapter):
    """Prefix every record with the task name so concurrent runs stay attributable."""

    def process(
        self,
        msg: Any,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        iteration = extra.get("iteration")
        prefix = f"[{extra.get('task')}#{iteration}]" if iteration else f"[{extra.get('task')}]"
        return f"{prefix} {msg}", kwargs


@dataclass(slots=True)
class RunContext:
    """State owned by one executor and handed from stage to stage."""

    task_path: Path
    settings: Settings
    options: ExecutorOptions
    dependencies: ExecutorDependencies
    state: RunState
    log: TaskLogAdapter

    @property
    def max_iterations(self) -> int:
        return self.options.max_iterations or self.settings.execution.max_iterations

    def bind_iteration(self, iteration: int) -> None:
        self.log.extra = {**(self.log.extra or {}), "iteration": iteration}


@dataclass(slots=True)
class PreFlightResult:
    """Collaborators built for one run."""

    settings: Settings
    project_root: Path
    context: LoadedContext
    guard: ScopeGuard
    validator: QualityGate
    provider: Provider
    vcs: VcsClient
    blocked_status: BlockedStatus | None = None
    skip_permissions: bool = False


@dataclass(slots=True)
class ExecutionOutcome:
    """How the execution loop ended."""

    termination_reason: TerminationReason
    error: str | None = None
    error_category: ErrorCategory | None = None
    error_code: str | None = None


@dataclass(slots=True)
class IterationState:
    """Loop-local carry-over between passes."""

    consecutive_failures: int = 0
    validation_feedback: str | None = None
    previous_output: str | None = None
    conversation_state: Any = None
    blocked_status: BlockedStatus | None = None
