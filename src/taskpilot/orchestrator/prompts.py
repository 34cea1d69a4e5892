"""Prompt builders for full and continuation iterations."""

from __future__ import annotations

from collections.abc import Sequence
from html import escape

from taskpilot.orchestrator.context import LoadedContext, LoadedSkill
from taskpilot.orchestrator.models import BlockedStatus

PREVIOUS_OUTPUT_TAIL = 2_000

_EXECUTION_INSTRUCTIONS = """\
## Execution Instructions

1. Read the task requirements carefully
2. Check the Definition of Done criteria
3. Make necessary code changes
4. Stay within the allowed scope
5. When ALL Definition of Done criteria are met, output: <TASK_COMPLETE>
6. If you encounter a blocker, output: <BLOCKED: reason>

**IMPORTANT:** Only modify files within the allowed scope. \
Do NOT modify files in the forbidden scope.
"""

_REMINDER = """\
## Reminder

- Stay within the allowed scope
- When ALL Definition of Done criteria are met, output: <TASK_COMPLETE>
- If you encounter a blocker, output: <BLOCKED: reason>
"""


def build_iteration_prompt(
    context: LoadedContext,
    *,
    iteration: int,
    previous_output: str | None = None,
    validation_feedback: str | None = None,
    blocked_status: BlockedStatus | None = None,
) -> str:
    """Full prompt carrying every piece of static context."""

    parts = [f"# Autonomous Task Execution - Iteration {iteration}\n"]

    if blocked_status is not None:
        parts.append(_resume_block(blocked_status))

    parts.append("You are executing a task autonomously. Follow the context below.\n")
    parts.append(f"## Project Context (AGENTS.md)\n\n{context.agents}\n")
    parts.append(f"## Your Role\n\n{context.role.raw}\n")
    parts.append(f"## Current Task\n\n{context.task.raw}\n")
    if context.plan:
        parts.append(f"## Implementation Plan\n\n{context.plan}\n")
    if context.skills:
        parts.append(f"## Available Skills\n\n{skills_xml(context.skills)}\n")
    if previous_output:
        parts.append(_previous_output_block(previous_output))
    if validation_feedback:
        parts.append(_feedback_block(validation_feedback))
    parts.append(_EXECUTION_INSTRUCTIONS)
    return "\n".join(parts)


def build_continuation_prompt(
    *,
    iteration: int,
    previous_output: str | None = None,
    validation_feedback: str | None = None,
) -> str:
    """Delta-only prompt for a provider that still holds the conversation."""

    parts = [
        f"# Continuation - Iteration {iteration}\n",
        "Continue working on the task from the previous iteration.\n",
    ]
    if previous_output:
        parts.append(_previous_output_block(previous_output))
    if validation_feedback:
        parts.append(_feedback_block(validation_feedback))
    parts.append(_REMINDER)
    return "\n".join(parts)


def skills_xml(skills: Sequence[LoadedSkill]) -> str:
    if not skills:
        return ""
    lines = ["<available_skills>"]
    for skill in skills:
        lines.append(f'<skill name="{escape(skill.name)}">')
        lines.append(f"<description>{escape(skill.description)}</description>")
        if skill.tags:
            lines.append(f"<tags>{escape(', '.join(skill.tags))}</tags>")
        lines.append(f"<instructions>\n{skill.body}\n</instructions>")
        lines.append("</skill>")
    lines.append("</available_skills>")
    return "\n".join(lines)


def _resume_block(blocked_status: BlockedStatus) -> str:
    files = "\n".join(f"- `{path}`" for path in blocked_status.files_modified) or "_None_"
    return (
        "## Resuming Blocked Task\n\n"
        "This task was previously blocked at iteration "
        f"{blocked_status.previous_iteration}.\n\n"
        "### Previous Blocking Issue\n\n"
        f"{blocked_status.blocking_issue}\n\n"
        "### Files Modified in Previous Attempt\n\n"
        f"{files}\n\n"
        "**IMPORTANT**: Review the blocking issue above. The problem has been addressed "
        "or guidance provided. Continue from where it left off.\n\n"
        "---\n"
    )


def _previous_output_block(previous_output: str) -> str:
    return f"## Previous Iteration Output\n\n```\n{previous_output[-PREVIOUS_OUTPUT_TAIL:]}\n```\n"


def _feedback_block(feedback: str) -> str:
    return (
        "## Previous Iteration Feedback\n\n"
        "Your previous iteration signaled <TASK_COMPLETE> but validation failed:\n\n"
        f"```\n{feedback}\n```\n\n"
        "Please fix the validation errors and signal <TASK_COMPLETE> again when done.\n"
    )
