"""Categorized errors and the retry policy applied by the execution loop."""

from __future__ import annotations

from enum import Enum
from typing import Any

from taskpilot.orchestrator.models import ErrorCategory

PROVIDER_CRASH = "PROVIDER_CRASH"
PROVIDER_NOT_AVAILABLE = "PROVIDER_NOT_AVAILABLE"
PROVIDER_API_ERROR = "PROVIDER_API_ERROR"
PROVIDER_RATE_LIMIT = "PROVIDER_RATE_LIMIT"
TIMEOUT_ITERATION = "TIMEOUT_ITERATION"
TIMEOUT_OPERATION = "TIMEOUT_OPERATION"
VALIDATION_PRE_COMMIT = "VALIDATION_PRE_COMMIT"
VALIDATION_PRE_PUSH = "VALIDATION_PRE_PUSH"
VALIDATION_PRE_PR = "VALIDATION_PRE_PR"
SCOPE_FORBIDDEN = "SCOPE_FORBIDDEN"
SCOPE_OUTSIDE_ALLOWED = "SCOPE_OUTSIDE_ALLOWED"
SCOPE_USER_DENIED = "SCOPE_USER_DENIED"
CONFIG_INVALID = "CONFIG_INVALID"
CONFIG_MISSING = "CONFIG_MISSING"
CONFIG_ENV_VAR_MISSING = "CONFIG_ENV_VAR_MISSING"
GIT_COMMIT_FAILED = "GIT_COMMIT_FAILED"
GIT_PUSH_FAILED = "GIT_PUSH_FAILED"
GIT_REVERT_FAILED = "GIT_REVERT_FAILED"
GIT_STATUS_FAILED = "GIT_STATUS_FAILED"
PERMISSION_FILE_ACCESS = "PERMISSION_FILE_ACCESS"
PERMISSION_SKIP_DENIED = "PERMISSION_SKIP_DENIED"


class FailureAction(str, Enum):
    """What the execution loop does after a categorized failure."""

    ABORT = "abort"
    RETRY_UNCOUNTED = "retry_uncounted"
    RETRY_COUNTED = "retry_counted"


class TaskPilotError(RuntimeError):
    """Base error carrying a category, a stable code and a retry hint."""

    category: ErrorCategory

    def __init__(
        self,
        message: str,
        *,
        code: str,
        retryable: bool,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": str(self),
            "category": self.category.value,
            "code": self.code,
            "retryable": self.retryable,
            "context": dict(self.context),
        }


class ProviderError(TaskPilotError):
    category = ErrorCategory.PROVIDER

    @classmethod
    def crash(cls, provider: str, detail: str) -> ProviderError:
        return cls(
            f"Provider '{provider}' crashed: {detail}",
            code=PROVIDER_CRASH,
            retryable=True,
            context={"provider": provider},
        )

    @classmethod
    def not_available(cls, provider: str, detail: str = "") -> ProviderError:
        suffix = f": {detail}" if detail else ""
        return cls(
            f"Provider '{provider}' is not available{suffix}",
            code=PROVIDER_NOT_AVAILABLE,
            retryable=False,
            context={"provider": provider},
        )

    @classmethod
    def api_error(
        cls,
        provider: str,
        detail: str,
        status_code: int | None = None,
    ) -> ProviderError:
        return cls(
            f"Provider '{provider}' API error: {detail}",
            code=PROVIDER_API_ERROR,
            retryable=True,
            context={"provider": provider, "status_code": status_code},
        )

    @classmethod
    def rate_limit(cls, provider: str, detail: str = "") -> ProviderError:
        suffix = f": {detail}" if detail else ""
        return cls(
            f"Provider '{provider}' rate limited{suffix}",
            code=PROVIDER_RATE_LIMIT,
            retryable=True,
            context={"provider": provider},
        )


class IterationTimeoutError(TaskPilotError):
    category = ErrorCategory.TIMEOUT

    @classmethod
    def iteration(cls, timeout_seconds: float, iteration: int) -> IterationTimeoutError:
        return cls(
            f"Iteration {iteration} timed out after {timeout_seconds:g}s",
            code=TIMEOUT_ITERATION,
            retryable=True,
            context={"timeout_seconds": timeout_seconds, "iteration": iteration},
        )

    @classmethod
    def operation(cls, operation: str, timeout_seconds: float) -> IterationTimeoutError:
        return cls(
            f"Operation '{operation}' timed out after {timeout_seconds:g}s",
            code=TIMEOUT_OPERATION,
            retryable=True,
            context={"operation": operation, "timeout_seconds": timeout_seconds},
        )


class ValidationFailedError(TaskPilotError):
    category = ErrorCategory.VALIDATION

    @classmethod
    def for_phase(cls, phase: str, report: str) -> ValidationFailedError:
        codes = {
            "pre_commit": VALIDATION_PRE_COMMIT,
            "pre_push": VALIDATION_PRE_PUSH,
            "pre_pr": VALIDATION_PRE_PR,
        }
        return cls(
            f"Validation failed during {phase}",
            code=codes.get(phase, VALIDATION_PRE_COMMIT),
            retryable=True,
            context={"phase": phase, "report": report},
        )


class ScopeError(TaskPilotError):
    category = ErrorCategory.SCOPE

    @classmethod
    def forbidden(cls, files: list[str]) -> ScopeError:
        return cls(
            f"{len(files)} file(s) touched forbidden paths",
            code=SCOPE_FORBIDDEN,
            retryable=True,
            context={"files": list(files)},
        )

    @classmethod
    def outside_allowed(cls, files: list[str]) -> ScopeError:
        return cls(
            f"{len(files)} file(s) outside allowed scope",
            code=SCOPE_OUTSIDE_ALLOWED,
            retryable=True,
            context={"files": list(files)},
        )

    @classmethod
    def user_denied(cls, files: list[str]) -> ScopeError:
        return cls(
            f"User denied changes to {len(files)} file(s)",
            code=SCOPE_USER_DENIED,
            retryable=False,
            context={"files": list(files)},
        )


class ConfigError(TaskPilotError):
    category = ErrorCategory.CONFIG

    @classmethod
    def invalid(cls, detail: str) -> ConfigError:
        return cls(f"Invalid configuration: {detail}", code=CONFIG_INVALID, retryable=False)

    @classmethod
    def missing(cls, path: str) -> ConfigError:
        return cls(
            f"Configuration file not found: {path}",
            code=CONFIG_MISSING,
            retryable=False,
            context={"path": path},
        )

    @classmethod
    def missing_env_var(cls, name: str) -> ConfigError:
        return cls(
            f"Environment variable '{name}' is referenced in config but not set",
            code=CONFIG_ENV_VAR_MISSING,
            retryable=False,
            context={"variable": name},
        )


class GitError(TaskPilotError):
    category = ErrorCategory.GIT

    @classmethod
    def commit_failed(cls, detail: str) -> GitError:
        return cls(f"git commit failed: {detail}", code=GIT_COMMIT_FAILED, retryable=True)

    @classmethod
    def push_failed(cls, detail: str) -> GitError:
        return cls(f"git push failed: {detail}", code=GIT_PUSH_FAILED, retryable=True)

    @classmethod
    def revert_failed(cls, files: list[str], detail: str) -> GitError:
        return cls(
            f"git revert failed for {len(files)} file(s): {detail}",
            code=GIT_REVERT_FAILED,
            retryable=False,
            context={"files": list(files)},
        )

    @classmethod
    def status_failed(cls, detail: str) -> GitError:
        return cls(f"git status failed: {detail}", code=GIT_STATUS_FAILED, retryable=True)


class PermissionDeniedError(TaskPilotError):
    category = ErrorCategory.PERMISSION

    @classmethod
    def file_access(cls, path: str, detail: str = "") -> PermissionDeniedError:
        suffix = f": {detail}" if detail else ""
        return cls(
            f"Permission denied for {path}{suffix}",
            code=PERMISSION_FILE_ACCESS,
            retryable=False,
            context={"path": path},
        )

    @classmethod
    def skip_denied(cls) -> PermissionDeniedError:
        return cls(
            "Permission bypass was requested but is not allowed",
            code=PERMISSION_SKIP_DENIED,
            retryable=False,
        )


class PreFlightError(RuntimeError):
    """Raised when a run cannot start; never retried."""


def failure_policy(category: ErrorCategory | None, code: str | None) -> FailureAction:
    """Map a failure category and code to the loop's retry decision."""

    match category:
        case None:
            return FailureAction.RETRY_COUNTED
        case ErrorCategory.CONFIG | ErrorCategory.PERMISSION:
            return FailureAction.ABORT
        case ErrorCategory.TIMEOUT | ErrorCategory.VALIDATION:
            return FailureAction.RETRY_COUNTED
        case ErrorCategory.PROVIDER:
            if code == PROVIDER_RATE_LIMIT:
                return FailureAction.RETRY_UNCOUNTED
            if code == PROVIDER_NOT_AVAILABLE:
                return FailureAction.ABORT
            return FailureAction.RETRY_COUNTED
        case ErrorCategory.GIT:
            if code == GIT_REVERT_FAILED:
                return FailureAction.ABORT
            return FailureAction.RETRY_COUNTED
        case ErrorCategory.SCOPE:
            if code == SCOPE_USER_DENIED:
                return FailureAction.ABORT
            return FailureAction.RETRY_COUNTED
    raise ValueError(f"Unhandled error category: {category!r}")
