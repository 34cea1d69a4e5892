"""Outbound run notifications over webhook, Slack and Discord."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from taskpilot.config import NotificationSettings
from taskpilot.orchestrator.models import TERMINAL_STATUSES, ExecutorResult, RunStatus

logger = logging.getLogger(__name__)

APP_TITLE = "taskpilot"
FIELD_PREVIEW = 200

_TITLES = {
    "completed": "Task Completed",
    "blocked": "Task Blocked",
    "failed": "Task Failed",
}
_SLACK_COLORS = {
    "completed": "#36a64f",
    "blocked": "#ff9900",
    "failed": "#ff0000",
}
_DISCORD_COLORS = {
    "completed": 0x36A64F,
    "blocked": 0xFF9900,
    "failed": 0xFF0000,
}


def event_type_for(result: ExecutorResult) -> str:
    if result.status is RunStatus.COMPLETED:
        return "completed"
    if result.status is RunStatus.BLOCKED:
        return "blocked"
    return "failed"


def format_title(event_type: str) -> str:
    return f"{APP_TITLE}: {_TITLES.get(event_type, event_type)}"


def format_message(result: ExecutorResult) -> str:
    """Plain-text body shared by every channel."""

    lines = [
        f"Task: {result.task_path}",
        f"Iterations: {result.iterations}",
        f"Files modified: {len(result.files_modified)}",
    ]
    if result.error:
        if result.error_category is not None:
            lines.append(f"[{result.error_category.value.upper()}] {result.error}")
        else:
            lines.append(f"Error: {result.error}")
    if result.blocked_reason:
        lines.append(f"Blocked: {result.blocked_reason}")
    return "\n".join(lines)


class NotificationService:
    """Fan a finished run out to every configured channel."""

    def __init__(
        self,
        settings: NotificationSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    def is_enabled(self) -> bool:
        return self.settings.enabled

    def should_notify(self, event_type: str) -> bool:
        match self.settings.level:
            case "errors":
                return event_type in {"failed", "blocked"}
            case "blocked":
                return event_type == "blocked"
        return True

    async def notify_result(self, result: ExecutorResult) -> None:
        """Send to all channels; channel failures are logged and never raised."""

        if result.status not in TERMINAL_STATUSES:
            return
        event_type = event_type_for(result)
        if not self.is_enabled() or not self.should_notify(event_type):
            return

        requests: list[tuple[str, str, dict[str, Any]]] = []
        if self.settings.webhook_url:
            requests.append(
                ("webhook", self.settings.webhook_url, webhook_payload(event_type, result)),
            )
        if self.settings.slack_webhook_url:
            requests.append(
                ("slack", self.settings.slack_webhook_url, slack_payload(event_type, result)),
            )
        if self.settings.discord_webhook_url:
            requests.append(
                (
                    "discord",
                    self.settings.discord_webhook_url,
                    discord_payload(event_type, result),
                ),
            )

        async with httpx.AsyncClient(
            timeout=self.settings.timeout_seconds,
            transport=self._transport,
        ) as client:
            outcomes = await asyncio.gather(
                *(client.post(url, json=payload) for _, url, payload in requests),
                return_exceptions=True,
            )

        for (channel, _, _), outcome in zip(requests, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.debug("Notification via %s failed: %s", channel, outcome)
            elif outcome.status_code >= 400:
                logger.debug(
                    "Notification via %s rejected with HTTP %s",
                    channel,
                    outcome.status_code,
                )


def webhook_payload(event_type: str, result: ExecutorResult) -> dict[str, Any]:
    return {
        "event": event_type,
        "title": format_title(event_type),
        "message": format_message(result),
        "task": str(result.task_path),
        "status": result.status.value,
        "iterations": result.iterations,
        "files_modified": list(result.files_modified),
        "error": result.error,
        "blocked_reason": result.blocked_reason,
    }


def slack_payload(event_type: str, result: ExecutorResult) -> dict[str, Any]:
    fields = [
        {"type": "mrkdwn", "text": f"*Task:*\n{result.task_path.name}"},
        {"type": "mrkdwn", "text": f"*Iterations:*\n{result.iterations}"},
        {"type": "mrkdwn", "text": f"*Files:*\n{len(result.files_modified)}"},
    ]
    if result.error:
        fields.append({"type": "mrkdwn", "text": f"*Error:*\n{result.error[:FIELD_PREVIEW]}"})
    if result.blocked_reason:
        fields.append(
            {"type": "mrkdwn", "text": f"*Blocked:*\n{result.blocked_reason[:FIELD_PREVIEW]}"},
        )
    return {
        "attachments": [
            {
                "color": _SLACK_COLORS[event_type],
                "blocks": [
                    {
                        "type": "header",
                        "text": {"type": "plain_text", "text": format_title(event_type)},
                    },
                    {"type": "section", "fields": fields},
                ],
            },
        ],
    }


def discord_payload(event_type: str, result: ExecutorResult) -> dict[str, Any]:
    fields = [
        {"name": "Task", "value": result.task_path.name, "inline": True},
        {"name": "Iterations", "value": str(result.iterations), "inline": True},
        {"name": "Files", "value": str(len(result.files_modified)), "inline": True},
    ]
    if result.error:
        fields.append({"name": "Error", "value": result.error[:FIELD_PREVIEW]})
    if result.blocked_reason:
        fields.append({"name": "Blocked", "value": result.blocked_reason[:FIELD_PREVIEW]})
    return {
        "embeds": [
            {
                "title": format_title(event_type),
                "color": _DISCORD_COLORS[event_type],
                "fields": fields,
            },
        ],
    }
