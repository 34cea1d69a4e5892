"""Provider interface for agent execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from taskpilot.orchestrator.models import ExecutionResult

COMPLETION_SIGNALS: tuple[str, ...] = (
    "<TASK_COMPLETE>",
    "<DONE>",
    "## Task Complete",
    "✅ All done",
    "Definition of Done: All criteria met",
)
BLOCKED_MARKER_PREFIX = "<BLOCKED:"


@dataclass(slots=True)
class ConversationLimits:
    """Sliding-window limits for providers that keep message history."""

    max_messages: int = 100
    preserve_first_n: int = 1
    preserve_last_n: int = 20


@dataclass(slots=True)
class ProviderOptions:
    """Per-call options passed to a provider."""

    timeout_seconds: float = 600.0
    skip_permissions: bool = False
    session_continuation: bool = False
    conversation_state: Any = None
    on_output: Callable[[str], None] | None = None
    model: str | None = None
    max_tokens: int = 8_192
    conversation: ConversationLimits | None = None


class Provider(Protocol):
    """Protocol implemented by agent providers."""

    name: str

    async def execute(self, prompt: str, options: ProviderOptions) -> ExecutionResult:
        """Run one prompt and report what the agent did."""

    async def is_available(self) -> bool:
        """Return True when the provider can be invoked."""


def detect_completion_signal(output: str) -> str | None:
    for signal in COMPLETION_SIGNALS:
        if signal in output:
            return signal
    return None


def detect_blocked_reason(output: str) -> str | None:
    """Return the reason carried by a ``<BLOCKED: reason>`` marker, if present."""

    start = output.find(BLOCKED_MARKER_PREFIX)
    if start == -1:
        return None
    end = output.find(">", start)
    raw = output[start + len(BLOCKED_MARKER_PREFIX) : end if end != -1 else len(output)]
    return raw.strip() or "no reason given"
