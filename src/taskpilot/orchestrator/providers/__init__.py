"""Provider adapters and the factory selecting one by configured type."""

from __future__ import annotations

from pathlib import Path

from taskpilot.orchestrator.errors import ConfigError
from taskpilot.orchestrator.providers.api_provider import AnthropicApiProvider
from taskpilot.orchestrator.providers.base import Provider, ProviderOptions
from taskpilot.orchestrator.providers.cli_provider import ClaudeCliProvider, CursorCliProvider
from taskpilot.orchestrator.providers.openai_provider import OpenAiApiProvider

PROVIDER_TYPES = ("claude-cli", "cursor-cli", "anthropic-api", "openai-api")


def create_provider(provider_type: str, cwd: Path, *, model: str | None = None) -> Provider:
    """Build the provider registered under ``provider_type``."""

    match provider_type:
        case "claude-cli":
            return ClaudeCliProvider(cwd)
        case "cursor-cli":
            return CursorCliProvider(cwd)
        case "anthropic-api":
            return AnthropicApiProvider(cwd, model=model)
        case "openai-api":
            return OpenAiApiProvider(cwd, model=model)
    raise ConfigError.invalid(
        f"unknown provider type {provider_type!r}; expected one of {', '.join(PROVIDER_TYPES)}",
    )


__all__ = [
    "PROVIDER_TYPES",
    "Provider",
    "ProviderOptions",
    "create_provider",
]
