from __future__ import annotations

import asyncio
import json
from pathlib import Path

import allure
import httpx

from taskpilot.config import NotificationSettings
from taskpilot.orchestrator.models import ErrorCategory, ExecutorResult, RunStatus
from taskpilot.orchestrator.notifications import (
    NotificationService,
    discord_payload,
    format_message,
    slack_payload,
    webhook_payload,
)

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Notifications"),
]

TASK = Path("/project/.ai/tasks/completed/001-greeting.md")


def _result(status: RunStatus = RunStatus.COMPLETED, **kwargs) -> ExecutorResult:
    return ExecutorResult(
        success=status is RunStatus.COMPLETED,
        status=status,
        iterations=kwargs.pop("iterations", 3),
        files_modified=kwargs.pop("files_modified", ("src/a.py",)),
        task_path=TASK,
        **kwargs,
    )


def _recording_transport(seen: list[httpx.Request]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    return httpx.MockTransport(handler)


def test_completed_run_posts_to_every_channel() -> None:
    seen: list[httpx.Request] = []
    service = NotificationService(
        NotificationSettings(
            webhook_url="https://hooks.example.com/run",
            slack_webhook_url="https://hooks.slack.example.com/T1",
        ),
        transport=_recording_transport(seen),
    )

    asyncio.run(service.notify_result(_result()))

    assert sorted(request.url.host for request in seen) == [
        "hooks.example.com",
        "hooks.slack.example.com",
    ]
    webhook = next(request for request in seen if request.url.host == "hooks.example.com")
    body = json.loads(webhook.content)
    assert body["event"] == "completed"
    assert body["title"] == "taskpilot: Task Completed"
    assert body["files_modified"] == ["src/a.py"]


def test_level_filters_events() -> None:
    seen: list[httpx.Request] = []
    service = NotificationService(
        NotificationSettings(level="errors", webhook_url="https://hooks.example.com/run"),
        transport=_recording_transport(seen),
    )

    asyncio.run(service.notify_result(_result()))
    assert seen == []

    asyncio.run(service.notify_result(_result(RunStatus.FAILED, error="boom")))
    assert len(seen) == 1

    blocked_only = NotificationService(NotificationSettings(level="blocked"))
    assert blocked_only.should_notify("blocked")
    assert not blocked_only.should_notify("failed")


def test_non_terminal_runs_are_not_announced() -> None:
    seen: list[httpx.Request] = []
    service = NotificationService(
        NotificationSettings(webhook_url="https://hooks.example.com/run"),
        transport=_recording_transport(seen),
    )

    asyncio.run(service.notify_result(_result(RunStatus.IDLE)))
    asyncio.run(service.notify_result(_result(RunStatus.PAUSED)))

    assert seen == []


def test_channel_errors_are_swallowed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.example.com":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(500)

    service = NotificationService(
        NotificationSettings(
            webhook_url="https://down.example.com/hook",
            discord_webhook_url="https://discord.example.com/api/webhooks/1",
        ),
        transport=httpx.MockTransport(handler),
    )

    asyncio.run(service.notify_result(_result(RunStatus.BLOCKED, blocked_reason="need keys")))


def test_disabled_without_channels() -> None:
    assert not NotificationService(NotificationSettings()).is_enabled()


def test_payload_shapes() -> None:
    blocked = _result(RunStatus.BLOCKED, blocked_reason="x" * 500)

    slack = slack_payload("blocked", blocked)
    discord = discord_payload("failed", _result(RunStatus.FAILED, error="boom"))
    webhook = webhook_payload("completed", _result())

    assert slack["attachments"][0]["color"] == "#ff9900"
    assert slack["attachments"][0]["blocks"][0]["text"]["text"] == "taskpilot: Task Blocked"
    blocked_field = slack["attachments"][0]["blocks"][1]["fields"][-1]["text"]
    assert blocked_field == "*Blocked:*\n" + "x" * 200
    assert discord["embeds"][0]["color"] == 0xFF0000
    assert discord["embeds"][0]["fields"][-1] == {"name": "Error", "value": "boom"}
    assert slack_payload("completed", _result())["attachments"][0]["color"] == "#36a64f"
    assert webhook["status"] == "completed"
    assert webhook["task"] == str(TASK)


def test_format_message_tags_error_category() -> None:
    message = format_message(
        _result(
            RunStatus.FAILED,
            error="Provider 'claude-cli' is not available",
            error_category=ErrorCategory.PROVIDER,
        ),
    )

    assert message.splitlines() == [
        f"Task: {TASK}",
        "Iterations: 3",
        "Files modified: 1",
        "[PROVIDER] Provider 'claude-cli' is not available",
    ]
    assert "Error: boom" in format_message(_result(RunStatus.FAILED, error="boom"))
