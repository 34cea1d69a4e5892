"""Persist run status into task markdown files and file them by outcome."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from taskpilot.orchestrator.models import BlockedStatus, RunStatus, TokenUsage

logger = logging.getLogger(__name__)

STATUS_FOLDERS = ("pending", "completed", "blocked", "failed")
RESUME_HISTORY_HEADING = "### Resume Attempt History"
BLOCKING_ISSUE_PREVIEW = 200

_STATUS_SECTION = re.compile(r"## Status:.*?(?=\n+## (?!#)|\Z)", re.DOTALL)
_GOAL_LINE = re.compile(r"(## Goal\n[^\n]+\n)")
_RESUME_HISTORY_BLOCK = re.compile(
    r"### Resume Attempt History\n.*?(?=\n---\n@developer:|\n### |\n## (?!#)|\Z)",
    re.DOTALL,
)
_LATEST_ATTEMPT = re.compile(
    r"(### Resume Attempt History\n"
    r"- \*\*Resumed at:\*\*[^\n]*\n"
    r"- \*\*Previous attempt:\*\*[^\n]*\n)",
    re.IGNORECASE,
)


def render_blocked_section(  # noqa: PLR0913
    *,
    task_path: Path,
    started_at: datetime | None,
    iterations: int,
    blocked_at: datetime,
    reason: str,
    files: Sequence[str],
    resume_history: str | None = None,
) -> str:
    lines = [
        "## Status: BLOCKED",
        "",
        "### Execution Log",
        f"- **Started:** {_iso(started_at)}",
        f"- **Iterations:** {iterations}",
        f"- **Blocked at:** {_iso(blocked_at)}",
        "",
        "### Blocking Issue",
        "```",
        reason,
        "```",
        "",
        "### Files Modified",
        _file_list(files),
        "",
    ]
    if resume_history:
        lines.extend([resume_history.rstrip("\n"), ""])
    lines.extend(
        [
            "---",
            "@developer: Review and provide guidance, then run "
            f"`taskpilot run --resume {task_path}`",
        ],
    )
    return "\n".join(lines)


def write_blocked_status(  # noqa: PLR0913
    task_path: Path,
    *,
    started_at: datetime | None,
    iterations: int,
    blocked_at: datetime,
    reason: str,
    files: Sequence[str],
) -> None:
    """Write or replace the BLOCKED section, keeping any resume history."""

    content = _read(task_path)
    history_match = _RESUME_HISTORY_BLOCK.search(content)
    section = render_blocked_section(
        task_path=task_path,
        started_at=started_at,
        iterations=iterations,
        blocked_at=blocked_at,
        reason=reason,
        files=files,
        resume_history=history_match.group(0) if history_match else None,
    )
    task_path.write_text(_replace_status_section(content, section), "utf-8")
    logger.info("Updated %s with BLOCKED status", task_path.name)


def write_terminal_status(  # noqa: PLR0913
    task_path: Path,
    status: RunStatus,
    *,
    started_at: datetime | None,
    completed_at: datetime | None,
    iterations: int,
    files: Sequence[str],
    error: str | None = None,
    token_usage: TokenUsage | None = None,
) -> None:
    """Write a COMPLETED or FAILED section."""

    if status not in {RunStatus.COMPLETED, RunStatus.FAILED}:
        raise ValueError(f"Terminal status section not supported for {status.value}")

    token_line = ""
    if token_usage is not None:
        total = token_usage.input_tokens + token_usage.output_tokens
        token_line = (
            f"\n- **Tokens used:** {total:,} "
            f"(input: {token_usage.input_tokens:,} / output: {token_usage.output_tokens:,})"
        )

    if status is RunStatus.COMPLETED:
        section = (
            "## Status: ✅ COMPLETED\n\n"
            "### Execution Log\n"
            f"- **Started:** {_iso(started_at)}\n"
            f"- **Completed:** {_iso(completed_at)}\n"
            f"- **Iterations:** {iterations}\n"
            f"- **Files modified:** {len(files)}{token_line}\n\n"
            "### Files Modified\n"
            f"{_file_list(files)}"
        )
    else:
        section = (
            "## Status: ❌ FAILED\n\n"
            "### Execution Log\n"
            f"- **Started:** {_iso(started_at)}\n"
            f"- **Failed at:** {_iso(completed_at)}\n"
            f"- **Iterations:** {iterations}{token_line}\n\n"
            "### Error\n"
            "```\n"
            f"{error or 'Unknown error'}\n"
            "```\n\n"
            "### Files Modified\n"
            f"{_file_list(files)}"
        )

    content = _read(task_path)
    task_path.write_text(_replace_status_section(content, section), "utf-8")
    logger.info("Updated %s with %s status", task_path.name, status.value.upper())


def record_resume_attempt(
    task_path: Path,
    blocked_status: BlockedStatus,
    *,
    resumed_at: datetime,
) -> None:
    """Prepend a resume entry to the task's resume history."""

    entry = (
        f"- **Resumed at:** {_iso(resumed_at)}\n"
        f"- **Previous attempt:** Iteration {blocked_status.previous_iteration}, "
        f"blocked at {blocked_status.blocked_at}"
    )
    content = _read(task_path)
    if RESUME_HISTORY_HEADING in content:
        updated = content.replace(
            f"{RESUME_HISTORY_HEADING}\n",
            f"{RESUME_HISTORY_HEADING}\n{entry}\n\n",
            1,
        )
    elif "---\n@developer:" in content:
        updated = content.replace(
            "---\n@developer:",
            f"{RESUME_HISTORY_HEADING}\n{entry}\n\n---\n@developer:",
            1,
        )
    else:
        updated = f"{content.rstrip()}\n\n{RESUME_HISTORY_HEADING}\n{entry}\n"
    task_path.write_text(updated, "utf-8")
    logger.info("Recorded resume attempt in %s", task_path.name)


def update_resume_attempt_history(
    task_path: Path,
    *,
    status: str,
    iterations: int,
    completed_at: datetime,
) -> bool:
    """Close the latest resume entry; returns False when there is none."""

    content = _read(task_path)
    if _LATEST_ATTEMPT.search(content) is None:
        return False
    closing = (
        f"- **Completed at:** {_iso(completed_at)}\n"
        f"- **Status:** {status}\n"
        f"- **Iterations in this attempt:** {iterations}\n"
    )
    updated = _LATEST_ATTEMPT.sub(lambda match: match.group(1) + closing, content, count=1)
    task_path.write_text(updated, "utf-8")
    logger.info("Updated resume attempt history with status: %s", status)
    return True


def write_execution_history(
    task_path: Path,
    blocked_status: BlockedStatus,
    *,
    completed_at: datetime,
    iterations: int,
    files_count: int,
) -> None:
    """Replace a BLOCKED section with the original block and resume summary."""

    issue = blocked_status.blocking_issue
    if len(issue) > BLOCKING_ISSUE_PREVIEW:
        issue = issue[:BLOCKING_ISSUE_PREVIEW] + "..."
    resumed_at = (
        blocked_status.attempt_history[0].resumed_at if blocked_status.attempt_history else "N/A"
    )
    history = (
        "## Execution History\n\n"
        "### Original Block\n"
        f"- **Started:** {blocked_status.started_at}\n"
        f"- **Blocked at:** {blocked_status.blocked_at}\n"
        f"- **Iterations before block:** {blocked_status.previous_iteration}\n"
        f"- **Blocking issue:** {issue}\n\n"
        "### Resume and Completion\n"
        f"- **Resumed at:** {resumed_at}\n"
        f"- **Completed at:** {_iso(completed_at)}\n"
        f"- **Total iterations:** {iterations}\n"
        f"- **Files modified:** {files_count} files\n\n"
        "---\n\n"
        "## Status: ✅ COMPLETED"
    )
    content = _read(task_path)
    task_path.write_text(_STATUS_SECTION.sub(lambda _: history, content, count=1), "utf-8")
    logger.info("Cleared BLOCKED status of %s", task_path.name)


def move_task_file(task_path: Path, status: RunStatus) -> Path:
    """Move a task into the folder named after its status; returns the new path."""

    parent = task_path.parent
    base = parent.parent if parent.name in STATUS_FOLDERS else parent
    target_dir = base / status.value
    if parent == target_dir:
        return task_path
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / task_path.name
    task_path.replace(target)
    logger.info("Moved %s to %s/", task_path.name, status.value)
    return target


def _replace_status_section(content: str, section: str) -> str:
    if "## Status:" in content:
        return _STATUS_SECTION.sub(lambda _: section, content, count=1)
    if _GOAL_LINE.search(content):
        return _GOAL_LINE.sub(lambda match: f"{match.group(1)}\n{section}\n", content, count=1)
    return f"{content.rstrip()}\n\n{section}\n"


def _file_list(files: Sequence[str]) -> str:
    return "\n".join(f"- `{path}`" for path in files) or "_None_"


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "N/A"


def _read(task_path: Path) -> str:
    return task_path.read_text("utf-8").replace("\r\n", "\n")
