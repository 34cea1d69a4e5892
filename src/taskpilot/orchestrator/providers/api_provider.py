"""Anthropic Messages API provider with a local file-tool loop."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import httpx

from taskpilot.orchestrator.errors import (
    PermissionDeniedError,
    ProviderError,
    TaskPilotError,
)
from taskpilot.orchestrator.models import ExecutionResult, TokenUsage
from taskpilot.orchestrator.providers.base import ProviderOptions
from taskpilot.orchestrator.providers.conversation_window import ConversationWindow
from taskpilot.orchestrator.providers.tool_handler import FILE_TOOLS, ToolHandler

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_MODEL = "claude-sonnet-4-20250514"
ANTHROPIC_VERSION = "2023-06-01"
MAX_TOOL_ROUNDS = 50


class AnthropicApiProvider:
    """Drive the Messages API, executing tool calls until the agent stops."""

    name = "anthropic-api"

    def __init__(
        self,
        cwd: Path,
        *,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cwd = cwd
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY", "")
        self.model = model or DEFAULT_MODEL
        self.base_url = base_url or os.getenv("ANTHROPIC_BASE_URL", DEFAULT_BASE_URL)
        self._transport = transport
        self._tools = ToolHandler(cwd)

    async def is_available(self) -> bool:
        return bool(self.api_key)

    async def execute(self, prompt: str, options: ProviderOptions) -> ExecutionResult:
        self._tools.reset()
        window = ConversationWindow(options.conversation)
        history = list(options.conversation_state) if options.conversation_state else []
        messages: list[dict[str, Any]] = [*history, {"role": "user", "content": prompt}]
        output_parts: list[str] = []
        usage = TokenUsage()
        completed = False
        blocked_reason: str | None = None
        metrics = None

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=options.timeout_seconds if options.timeout_seconds > 0 else None,
                transport=self._transport,
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "content-type": "application/json",
                },
            ) as client:
                for _ in range(MAX_TOOL_ROUNDS):
                    trim = window.trim(messages)
                    messages = trim.trimmed
                    metrics = trim.metrics
                    response = await self._create_message(client, messages, options)

                    body_usage = response.get("usage") or {}
                    usage.input_tokens += int(body_usage.get("input_tokens", 0))
                    usage.output_tokens += int(body_usage.get("output_tokens", 0))

                    content = response.get("content") or []
                    messages.append({"role": "assistant", "content": content})
                    tool_results: list[dict[str, Any]] = []
                    for block in content:
                        if block.get("type") == "text":
                            text = str(block.get("text", ""))
                            output_parts.append(text)
                            if options.on_output is not None:
                                options.on_output(text + "\n")
                        elif block.get("type") == "tool_use":
                            tool_input = block.get("input") or {}
                            result = await self._tools.handle(str(block.get("name")), tool_input)
                            tool_results.append(
                                {
                                    "type": "tool_result",
                                    "tool_use_id": block.get("id"),
                                    "content": result,
                                },
                            )
                            if block.get("name") == "task_complete":
                                completed = True
                            elif block.get("name") == "task_blocked":
                                blocked_reason = str(tool_input.get("reason") or "no reason given")

                    if tool_results:
                        messages.append({"role": "user", "content": tool_results})
                    if completed or blocked_reason is not None or not tool_results:
                        break
        except TaskPilotError as error:
            return self._failure(error, output_parts, usage, messages)
        except httpx.TimeoutException as error:
            failure = ProviderError.api_error(self.name, f"request timed out: {error}")
            return self._failure(failure, output_parts, usage, messages)
        except httpx.HTTPError as error:
            failure = ProviderError.api_error(self.name, str(error))
            return self._failure(failure, output_parts, usage, messages)

        output = "\n".join(output_parts)
        return ExecutionResult(
            success=blocked_reason is None,
            output=output,
            files_changed=self._tools.changed_files,
            iteration_complete=completed,
            error=f"BLOCKED: {blocked_reason}" if blocked_reason is not None else None,
            completion_signal="<TASK_COMPLETE>" if completed else None,
            token_usage=usage,
            conversation_state=messages,
            conversation_metrics=metrics,
        )

    async def _create_message(
        self,
        client: httpx.AsyncClient,
        messages: list[dict[str, Any]],
        options: ProviderOptions,
    ) -> dict[str, Any]:
        response = await client.post(
            "/v1/messages",
            json={
                "model": options.model or self.model,
                "max_tokens": options.max_tokens,
                "tools": list(FILE_TOOLS),
                "messages": messages,
            },
        )
        if response.status_code >= 400:
            raise error_for_status(self.name, response, service="Anthropic API")
        return response.json()

    def _failure(
        self,
        error: TaskPilotError,
        output_parts: list[str],
        usage: TokenUsage,
        messages: list[dict[str, Any]],
    ) -> ExecutionResult:
        logger.debug("Provider %s failed: %s", self.name, error)
        return ExecutionResult(
            success=False,
            output="\n".join(output_parts),
            files_changed=self._tools.changed_files,
            error=str(error),
            error_category=error.category,
            error_code=error.code,
            token_usage=usage if usage.input_tokens or usage.output_tokens else None,
            conversation_state=messages,
        )


def error_for_status(
    provider: str,
    response: httpx.Response,
    *,
    service: str,
) -> TaskPilotError:
    """Map an HTTP error status onto the provider error taxonomy."""

    detail = response.text[:500]
    if response.status_code == 429:
        return ProviderError.rate_limit(provider, detail)
    if response.status_code in {401, 403}:
        return PermissionDeniedError.file_access(service, detail)
    if response.status_code == 404:
        return ProviderError.not_available(provider, detail)
    return ProviderError.api_error(provider, detail, response.status_code)
