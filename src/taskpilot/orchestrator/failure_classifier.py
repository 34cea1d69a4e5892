"""Deterministic provider failure classification for the execution loop."""

from __future__ import annotations

from dataclasses import dataclass

from taskpilot.orchestrator.errors import (
    PERMISSION_FILE_ACCESS,
    PROVIDER_API_ERROR,
    PROVIDER_CRASH,
    PROVIDER_NOT_AVAILABLE,
    PROVIDER_RATE_LIMIT,
)
from taskpilot.orchestrator.models import ErrorCategory

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "overloaded",
    "try again later",
)
_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "command not found",
    "no such file or directory",
    "not installed",
    "model not found",
    "unknown model",
    "invalid model",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "permission denied",
    "invalid api key",
    "authentication",
    "401",
    "403",
)
_API_ERROR_PATTERNS: tuple[str, ...] = (
    "internal server error",
    "api error",
    "bad gateway",
    "service unavailable",
    "500",
    "502",
    "503",
)


@dataclass(slots=True, frozen=True)
class ProviderFailureClassification:
    """Normalized provider failure classification result."""

    category: ErrorCategory
    code: str
    matched_rule: str
    matched_pattern: str | None


def classify_provider_failure(
    *,
    provider: str,
    exit_code: int | None,
    stdout: str,
    stderr: str,
) -> ProviderFailureClassification:
    """Classify a failed provider call into one category and code."""

    haystack = f"{stderr}\n{stdout}".lower()

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            category=ErrorCategory.PROVIDER,
            code=PROVIDER_RATE_LIMIT,
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _NOT_AVAILABLE_PATTERNS)
    if pattern is not None or exit_code == 127:
        return ProviderFailureClassification(
            category=ErrorCategory.PROVIDER,
            code=PROVIDER_NOT_AVAILABLE,
            matched_rule="not_available" if pattern is not None else "exit_code_127",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            category=ErrorCategory.PERMISSION,
            code=PERMISSION_FILE_ACCESS,
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _API_ERROR_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            category=ErrorCategory.PROVIDER,
            code=PROVIDER_API_ERROR,
            matched_rule="api_error",
            matched_pattern=pattern,
        )

    return ProviderFailureClassification(
        category=ErrorCategory.PROVIDER,
        code=PROVIDER_CRASH,
        matched_rule=f"{provider}_fallback_crash",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
