"""OpenAI Chat Completions provider driving the same local file tools."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import httpx

from taskpilot.orchestrator.errors import ProviderError, TaskPilotError
from taskpilot.orchestrator.models import ExecutionResult, TokenUsage
from taskpilot.orchestrator.providers.api_provider import MAX_TOOL_ROUNDS, error_for_status
from taskpilot.orchestrator.providers.base import ProviderOptions
from taskpilot.orchestrator.providers.conversation_window import ConversationWindow
from taskpilot.orchestrator.providers.tool_handler import FILE_TOOLS, ToolHandler

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com"
DEFAULT_MODEL = "gpt-4o"

FUNCTION_TOOLS = tuple(
    {
        "type": "function",
        "function": {
            "name": tool["name"],
            "description": tool["description"],
            "parameters": tool["input_schema"],
        },
    }
    for tool in FILE_TOOLS
)


class OpenAiApiProvider:
    """Function-calling loop over ``/v1/chat/completions``.

    The message list is the continuation handle: it is returned as
    ``conversation_state`` and replayed in front of the next prompt.
    """

    name = "openai-api"

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
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        self.model = model or DEFAULT_MODEL
        self.base_url = base_url or os.getenv("OPENAI_BASE_URL", DEFAULT_BASE_URL)
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
                    "authorization": f"Bearer {self.api_key}",
                    "content-type": "application/json",
                },
            ) as client:
                for _ in range(MAX_TOOL_ROUNDS):
                    trim = window.trim(messages)
                    messages = trim.trimmed
                    metrics = trim.metrics
                    response = await self._create_completion(client, messages, options)

                    body_usage = response.get("usage") or {}
                    usage.input_tokens += int(body_usage.get("prompt_tokens", 0))
                    usage.output_tokens += int(body_usage.get("completion_tokens", 0))

                    choices = response.get("choices") or []
                    if not choices:
                        break
                    message = choices[0].get("message") or {}
                    text = message.get("content")
                    if text:
                        output_parts.append(str(text))
                        if options.on_output is not None:
                            options.on_output(f"{text}\n")

                    tool_calls = message.get("tool_calls") or []
                    assistant: dict[str, Any] = {"role": "assistant", "content": text}
                    if tool_calls:
                        assistant["tool_calls"] = tool_calls
                    messages.append(assistant)

                    for call in tool_calls:
                        function = call.get("function") or {}
                        name = str(function.get("name"))
                        try:
                            arguments = json.loads(function.get("arguments") or "{}")
                        except json.JSONDecodeError as error:
                            result = f"Error: arguments are not valid JSON: {error}"
                            arguments = None
                        else:
                            result = await self._tools.handle(name, arguments)
                        messages.append(
                            {"role": "tool", "tool_call_id": call.get("id"), "content": result},
                        )
                        if arguments is None:
                            continue
                        if name == "task_complete":
                            completed = True
                        elif name == "task_blocked":
                            blocked_reason = str(arguments.get("reason") or "no reason given")

                    if completed or blocked_reason is not None or not tool_calls:
                        break
        except TaskPilotError as error:
            return self._failure(error, output_parts, usage, messages)
        except httpx.TimeoutException as error:
            failure = ProviderError.api_error(self.name, f"request timed out: {error}")
            return self._failure(failure, output_parts, usage, messages)
        except httpx.HTTPError as error:
            failure = ProviderError.api_error(self.name, str(error))
            return self._failure(failure, output_parts, usage, messages)

        return ExecutionResult(
            success=blocked_reason is None,
            output="\n".join(output_parts),
            files_changed=self._tools.changed_files,
            iteration_complete=completed,
            error=f"BLOCKED: {blocked_reason}" if blocked_reason is not None else None,
            completion_signal="<TASK_COMPLETE>" if completed else None,
            token_usage=usage,
            conversation_state=messages,
            conversation_metrics=metrics,
        )

    async def _create_completion(
        self,
        client: httpx.AsyncClient,
        messages: list[dict[str, Any]],
        options: ProviderOptions,
    ) -> dict[str, Any]:
        response = await client.post(
            "/v1/chat/completions",
            json={
                "model": options.model or self.model,
                "max_tokens": options.max_tokens,
                "tools": list(FUNCTION_TOOLS),
                "messages": messages,
            },
        )
        if response.status_code >= 400:
            raise error_for_status(self.name, response, service="OpenAI API")
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
