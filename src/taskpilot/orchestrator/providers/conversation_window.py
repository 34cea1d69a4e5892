"""Sliding window over API conversation history."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

from taskpilot.orchestrator.models import ConversationMetrics
from taskpilot.orchestrator.providers.base import ConversationLimits

CHARS_PER_TOKEN = 4


@dataclass(slots=True, frozen=True)
class TrimResult:
    trimmed: list[dict[str, Any]]
    evicted: list[dict[str, Any]]
    metrics: ConversationMetrics


class ConversationWindow:
    """Keep the first and last messages, evicting the oldest middle ones."""

    def __init__(self, limits: ConversationLimits | None = None) -> None:
        limits = limits or ConversationLimits()
        self.max_messages = limits.max_messages
        self.preserve_first_n = limits.preserve_first_n
        self.preserve_last_n = limits.preserve_last_n

    def trim(self, messages: list[dict[str, Any]]) -> TrimResult:
        if self.max_messages <= 0 or len(messages) <= self.max_messages:
            return TrimResult(
                trimmed=list(messages),
                evicted=[],
                metrics=self._metrics(messages, messages, 0),
            )

        head = messages[: self.preserve_first_n]
        tail_start = max(len(messages) - self.preserve_last_n, self.preserve_first_n)
        tail = messages[tail_start:]
        middle = messages[self.preserve_first_n : tail_start]

        keep_middle = max(self.max_messages - self.preserve_first_n - self.preserve_last_n, 0)
        split = len(middle) - keep_middle
        evicted = middle[:split]
        trimmed = [*head, *middle[split:], *tail]
        return TrimResult(
            trimmed=trimmed,
            evicted=evicted,
            metrics=self._metrics(messages, trimmed, len(evicted)),
        )

    def _metrics(
        self,
        messages: list[dict[str, Any]],
        kept: list[dict[str, Any]],
        evicted: int,
    ) -> ConversationMetrics:
        return ConversationMetrics(
            total_messages=len(messages),
            preserved_messages=len(kept),
            evicted_messages=evicted,
            estimated_tokens=estimate_tokens(kept),
        )


def estimate_tokens(messages: list[dict[str, Any]]) -> int:
    total_chars = sum(_content_length(message.get("content")) for message in messages)
    return math.ceil(total_chars / CHARS_PER_TOKEN)


def _content_length(content: Any) -> int:
    if isinstance(content, str):
        return len(content)
    if isinstance(content, list):
        length = 0
        for item in content:
            if isinstance(item, str):
                length += len(item)
            elif isinstance(item, dict):
                if isinstance(item.get("text"), str):
                    length += len(item["text"])
                elif isinstance(item.get("content"), str):
                    length += len(item["content"])
                else:
                    length += len(json.dumps(item, default=str))
        return length
    if isinstance(content, dict):
        return len(json.dumps(content, default=str))
    return 0
