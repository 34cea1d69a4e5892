"""Domain models for task execution, scope checks, and parallel coordination."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class RunStatus(str, Enum):
    """Lifecycle states of one task execution."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.BLOCKED, RunStatus.FAILED})


class TerminationReason(str, Enum):
    """Why the execution loop stopped."""

    COMPLETED = "completed"
    BLOCKED = "blocked"
    MAX_ITERATIONS = "max_iterations"
    MAX_FAILURES = "max_failures"
    DRY_RUN = "dry_run"
    FATAL_ERROR = "fatal_error"
    PAUSED = "paused"


class ErrorCategory(str, Enum):
    """Closed set of failure categories driving the retry policy."""

    CONFIG = "config"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    PROVIDER = "provider"
    GIT = "git"
    SCOPE = "scope"
    VALIDATION = "validation"


class ScopeMode(str, Enum):
    """How files outside the allowed scope are treated."""

    STRICT = "strict"
    ASK = "ask"
    PERMISSIVE = "permissive"


class ScopeAction(str, Enum):
    """Batch-level verdict for a set of file changes."""

    ALLOW = "ALLOW"
    ASK_USER = "ASK_USER"
    BLOCK = "BLOCK"


class ValidationPhase(str, Enum):
    """Quality-gate phases with their own command lists."""

    PRE_COMMIT = "pre_commit"
    PRE_PUSH = "pre_push"
    PRE_PR = "pre_pr"


@dataclass(slots=True, frozen=True)
class FileChange:
    """One file touched by the agent."""

    path: str
    change_type: str = "modified"


@dataclass(slots=True, frozen=True)
class ScopeDecision:
    """Scope verdict for a batch of file changes."""

    action: ScopeAction
    reason: str = ""
    files: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class TaskScope:
    """Allow/forbid path patterns declared by a task."""

    allowed: tuple[str, ...] = ()
    forbidden: tuple[str, ...] = ()
    ask_before: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ValidationResult:
    """Outcome of one quality-gate command."""

    command: str
    passed: bool
    output: str
    duration_seconds: float
    exit_code: int


@dataclass(slots=True, frozen=True)
class ValidationSummary:
    """Aggregated outcome of one validation phase."""

    phase: ValidationPhase
    passed: bool
    results: tuple[ValidationResult, ...]
    total_duration_seconds: float


@dataclass(slots=True)
class TokenUsage:
    """Input/output token counters."""

    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True, frozen=True)
class ConversationMetrics:
    """Provider-reported conversation window statistics."""

    total_messages: int
    preserved_messages: int
    evicted_messages: int
    estimated_tokens: int


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one provider call."""

    success: bool
    output: str
    files_changed: list[str] = field(default_factory=list)
    iteration_complete: bool = False
    error: str | None = None
    error_category: ErrorCategory | None = None
    error_code: str | None = None
    completion_signal: str | None = None
    token_usage: TokenUsage | None = None
    conversation_state: Any = None
    conversation_metrics: ConversationMetrics | None = None


@dataclass(slots=True, frozen=True)
class ResumeAttempt:
    """One resume of a previously blocked task."""

    resumed_at: str
    status: str = "resumed"
    iterations: int = 0
    completed_at: str | None = None


@dataclass(slots=True, frozen=True)
class BlockedStatus:
    """Snapshot parsed from a task's persisted BLOCKED section."""

    previous_iteration: int
    files_modified: tuple[str, ...]
    blocking_issue: str
    started_at: str
    blocked_at: str
    attempt_history: tuple[ResumeAttempt, ...] = ()


@dataclass(slots=True, frozen=True)
class ContextBreakdown:
    """Estimated token share per context part."""

    agents: int = 0
    role: int = 0
    task: int = 0
    plan: int = 0
    skills: int = 0

    @property
    def total(self) -> int:
        return self.agents + self.role + self.task + self.plan + self.skills


@dataclass(slots=True)
class RunState:
    """Mutable state of one task execution, owned by a single executor."""

    status: RunStatus = RunStatus.IDLE
    iteration: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    files_modified: list[str] = field(default_factory=list)
    validation_results: list[ValidationSummary] = field(default_factory=list)
    token_usage: TokenUsage | None = None
    context_tokens: int | None = None
    context_breakdown: ContextBreakdown | None = None
    conversation_message_count: int | None = None
    error_category: ErrorCategory | None = None
    error_code: str | None = None

    def add_modified_files(self, files: list[str] | tuple[str, ...]) -> None:
        """Append files keeping first-seen order and no duplicates."""

        seen = set(self.files_modified)
        for path in files:
            if path in seen:
                continue
            seen.add(path)
            self.files_modified.append(path)

    def add_token_usage(self, usage: TokenUsage) -> None:
        if self.token_usage is None:
            self.token_usage = TokenUsage()
        self.token_usage.input_tokens += usage.input_tokens
        self.token_usage.output_tokens += usage.output_tokens

    def snapshot(self) -> RunState:
        """Return a copy that callers may keep or mutate freely."""

        return RunState(
            status=self.status,
            iteration=self.iteration,
            started_at=self.started_at,
            completed_at=self.completed_at,
            last_error=self.last_error,
            files_modified=list(self.files_modified),
            validation_results=list(self.validation_results),
            token_usage=(
                TokenUsage(self.token_usage.input_tokens, self.token_usage.output_tokens)
                if self.token_usage is not None
                else None
            ),
            context_tokens=self.context_tokens,
            context_breakdown=self.context_breakdown,
            conversation_message_count=self.conversation_message_count,
            error_category=self.error_category,
            error_code=self.error_code,
        )


@dataclass(slots=True, frozen=True)
class PhaseEvent:
    """Progress event emitted at each step of a pass."""

    phase: str
    iteration: int
    total_iterations: int
    files_modified: int


@dataclass(slots=True, frozen=True)
class TokenUsageSummary:
    """Final token and cost accounting for a run."""

    context_tokens: int
    total_input_tokens: int
    total_output_tokens: int
    total_tokens: int
    estimated_cost: float | None = None
    breakdown: ContextBreakdown | None = None


@dataclass(slots=True, frozen=True)
class ExecutorResult:
    """Immutable outcome of one task execution."""

    success: bool
    status: RunStatus
    iterations: int
    files_modified: tuple[str, ...]
    task_path: Path
    error: str | None = None
    blocked_reason: str | None = None
    token_usage: TokenUsageSummary | None = None
    termination_reason: TerminationReason | None = None
    moved_to: Path | None = None
    error_category: ErrorCategory | None = None
    error_code: str | None = None


@dataclass(slots=True, frozen=True)
class TaskDependency:
    """Static scope-overlap edge between one task and others."""

    task_path: Path
    depends_on: tuple[Path, ...]
    reason: str


@dataclass(slots=True, frozen=True)
class ParallelTaskResult:
    """Per-task entry of a parallel run."""

    task_path: Path
    task_name: str
    result: ExecutorResult
    started_at: datetime
    completed_at: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


@dataclass(slots=True, frozen=True)
class ParallelExecutionResult:
    """Aggregate outcome of a parallel run."""

    success: bool
    total_tasks: int
    completed: int
    failed: int
    blocked: int
    skipped: int
    tasks: tuple[ParallelTaskResult, ...]
    dependencies: tuple[TaskDependency, ...]
    file_conflicts: tuple[str, ...]
    total_iterations: int
    total_files_modified: tuple[str, ...]
