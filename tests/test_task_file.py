from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from taskpilot.orchestrator.context import ContextLoader, parse_blocked_status
from taskpilot.orchestrator.models import ResumeAttempt, RunStatus, TokenUsage
from taskpilot.orchestrator.task_file import (
    move_task_file,
    record_resume_attempt,
    update_resume_attempt_history,
    write_blocked_status,
    write_execution_history,
    write_terminal_status,
)

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Task File Persistence"),
]

STARTED = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
BLOCKED_AT = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)
RESUMED_AT = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


def _block(task_path: Path, *, reason: str = "Need database credentials") -> None:
    write_blocked_status(
        task_path,
        started_at=STARTED,
        iterations=5,
        blocked_at=BLOCKED_AT,
        reason=reason,
        files=["src/a.py", "src/b.py"],
    )


def test_blocked_section_round_trips(project_root: Path, write_task) -> None:
    task_path = write_task()

    _block(task_path)
    content = task_path.read_text("utf-8")
    status = parse_blocked_status(content)

    assert status is not None
    assert status.previous_iteration == 5
    assert status.files_modified == ("src/a.py", "src/b.py")
    assert status.blocking_issue == "Need database credentials"
    assert status.started_at == STARTED.isoformat()
    assert status.blocked_at == BLOCKED_AT.isoformat()
    assert f"`taskpilot run --resume {task_path}`" in content

    task = ContextLoader(project_root).parse_task(task_path)
    assert task.goal == "Add a greeting module"
    assert task.scope.allowed == ("src/**",)
    assert task.blocked_status == status


def test_rewriting_blocked_status_replaces_section(write_task) -> None:
    task_path = write_task()

    _block(task_path, reason="first")
    _block(task_path, reason="second")
    content = task_path.read_text("utf-8")

    assert content.count("## Status: BLOCKED") == 1
    assert parse_blocked_status(content).blocking_issue == "second"


def test_resume_history_is_recorded_and_preserved(write_task) -> None:
    task_path = write_task()
    _block(task_path)
    status = parse_blocked_status(task_path.read_text("utf-8"))

    record_resume_attempt(task_path, status, resumed_at=RESUMED_AT)
    assert update_resume_attempt_history(
        task_path,
        status="blocked_again",
        iterations=2,
        completed_at=RESUMED_AT,
    )
    _block(task_path, reason="still stuck")
    content = task_path.read_text("utf-8")
    reparsed = parse_blocked_status(content)

    assert reparsed.blocking_issue == "still stuck"
    assert reparsed.attempt_history == (
        ResumeAttempt(
            resumed_at=RESUMED_AT.isoformat(),
            status="blocked_again",
            iterations=2,
            completed_at=RESUMED_AT.isoformat(),
        ),
    )
    assert "- **Previous attempt:** Iteration 5, blocked at" in content
    assert "- **Status:** blocked_again" in content
    assert "- **Iterations in this attempt:** 2" in content


def test_update_resume_history_without_attempt_returns_false(write_task) -> None:
    task_path = write_task()

    assert not update_resume_attempt_history(
        task_path,
        status="completed",
        iterations=1,
        completed_at=RESUMED_AT,
    )


def test_execution_history_replaces_blocked_section(write_task) -> None:
    task_path = write_task()
    _block(task_path)
    status = parse_blocked_status(task_path.read_text("utf-8"))

    write_execution_history(
        task_path,
        status,
        completed_at=RESUMED_AT,
        iterations=7,
        files_count=3,
    )
    content = task_path.read_text("utf-8")

    assert "## Status: BLOCKED" not in content
    assert "## Execution History" in content
    assert "- **Iterations before block:** 5" in content
    assert "- **Blocking issue:** Need database credentials" in content
    assert "- **Total iterations:** 7" in content
    assert "## Status: ✅ COMPLETED\n\n## Task Type" in content


def test_terminal_sections(write_task) -> None:
    completed = write_task("completed.md")
    failed = write_task("failed.md")

    write_terminal_status(
        completed,
        RunStatus.COMPLETED,
        started_at=STARTED,
        completed_at=BLOCKED_AT,
        iterations=2,
        files=["src/app.py"],
        token_usage=TokenUsage(input_tokens=1_200, output_tokens=300),
    )
    write_terminal_status(
        failed,
        RunStatus.FAILED,
        started_at=STARTED,
        completed_at=BLOCKED_AT,
        iterations=1,
        files=[],
        error="Provider 'claude-cli' is not available",
    )

    completed_text = completed.read_text("utf-8")
    failed_text = failed.read_text("utf-8")
    assert "## Status: ✅ COMPLETED" in completed_text
    assert "- **Tokens used:** 1,500 (input: 1,200 / output: 300)" in completed_text
    assert "- `src/app.py`" in completed_text
    assert "## Status: ❌ FAILED" in failed_text
    assert "Provider 'claude-cli' is not available" in failed_text
    assert "_None_" in failed_text


def test_terminal_status_rejects_blocked(write_task) -> None:
    with pytest.raises(ValueError, match="not supported"):
        write_terminal_status(
            write_task(),
            RunStatus.BLOCKED,
            started_at=None,
            completed_at=None,
            iterations=0,
            files=[],
        )


def test_move_task_file_between_status_folders(project_root: Path, write_task) -> None:
    task_path = write_task()
    tasks_dir = project_root / ".ai" / "tasks"

    blocked = move_task_file(task_path, RunStatus.BLOCKED)
    completed = move_task_file(blocked, RunStatus.COMPLETED)

    assert blocked == tasks_dir / "blocked" / task_path.name
    assert completed == tasks_dir / "completed" / task_path.name
    assert completed.is_file()
    assert not task_path.exists()
    assert move_task_file(completed, RunStatus.COMPLETED) == completed


def test_move_task_file_outside_status_folder(tmp_path: Path) -> None:
    task_path = tmp_path / "task.md"
    task_path.write_text("## Goal\nX\n", "utf-8")

    moved = move_task_file(task_path, RunStatus.FAILED)

    assert moved == tmp_path / "failed" / "task.md"
