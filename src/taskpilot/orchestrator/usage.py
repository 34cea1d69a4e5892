"""Usage extraction helpers for CLI agent output streams."""

from __future__ import annotations

import re
from dataclasses import dataclass

from taskpilot.orchestrator.models import TokenUsage

USAGE_PARSER_VERSION = "v1"

_JSON_INPUT_TOKENS = re.compile(r'"(?:input|prompt)_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_OUTPUT_TOKENS = re.compile(r'"(?:output|completion)_tokens"\s*:\s*(\d+)', re.IGNORECASE)

_INPUT_TOKENS = re.compile(r"(?:input|prompt)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class UsageExtraction:
    """Best-effort token usage extraction result."""

    input_tokens: int | None
    output_tokens: int | None
    usage_source: str
    parser_version: str = USAGE_PARSER_VERSION

    def to_token_usage(self) -> TokenUsage | None:
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return TokenUsage(
            input_tokens=self.input_tokens or 0,
            output_tokens=self.output_tokens or 0,
        )


def extract_usage(*, stdout: str, stderr: str) -> UsageExtraction:
    """Extract token usage from structured or textual agent output."""

    for source_name, text in (("agent_stdout", stdout), ("agent_stderr", stderr)):
        input_tokens = _extract_int(_JSON_INPUT_TOKENS, text)
        output_tokens = _extract_int(_JSON_OUTPUT_TOKENS, text)
        if input_tokens is not None or output_tokens is not None:
            return UsageExtraction(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                usage_source=f"{source_name}_json",
            )

    for source_name, text in (("agent_stderr", stderr), ("agent_stdout", stdout)):
        input_tokens = _extract_int(_INPUT_TOKENS, text)
        output_tokens = _extract_int(_OUTPUT_TOKENS, text)
        if input_tokens is not None or output_tokens is not None:
            return UsageExtraction(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                usage_source=source_name,
            )

    return UsageExtraction(input_tokens=None, output_tokens=None, usage_source="none")


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
