"""Shared test fixtures."""

from __future__ import annotations

import subprocess
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

import taskpilot

_ECHO_AGENT_COMMAND = (sys.executable, "-m", "taskpilot.orchestrator.providers.echo_agent")

AGENTS_MD = """\
# Project Overview

A small demo project used by the tests.

## Conventions
- Keep functions short
"""

DEVELOPER_ROLE_MD = """\
# Role: Developer

## Identity
You are a careful software developer.

## Expertise
- Python
- Testing

## Constraints
- Never touch secrets
"""


def render_task(
    *,
    goal: str = "Add a greeting module",
    allowed: Sequence[str] = ("src/**",),
    forbidden: Sequence[str] = (".env",),
    ask_before: Sequence[str] = (),
) -> str:
    scope = ["## Scope", "", "### Allowed", *(f"- `{path}`" for path in allowed), ""]
    scope.extend(["### Forbidden", *(f"- `{path}`" for path in forbidden), ""])
    if ask_before:
        scope.extend(["### Ask Before", *(f"- `{path}`" for path in ask_before), ""])
    return "\n".join(
        [
            f"# TASK: {goal}",
            "",
            "## Goal",
            goal,
            "",
            "## Task Type",
            "component",
            "",
            "## Suggested Roles",
            "- developer",
            "",
            *scope,
            "## Requirements",
            "Write the module and keep it tested.",
            "",
            "## Definition of Done",
            "- [ ] Module exists",
            "- [ ] Tests pass",
            "",
        ],
    )


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    """Project with `.ai/AGENTS.md`, a developer role and an empty pending folder."""

    ai_dir = tmp_path / ".ai"
    (ai_dir / "roles").mkdir(parents=True)
    (ai_dir / "tasks" / "pending").mkdir(parents=True)
    (ai_dir / "AGENTS.md").write_text(AGENTS_MD, "utf-8")
    (ai_dir / "roles" / "developer.md").write_text(DEVELOPER_ROLE_MD, "utf-8")
    return tmp_path


@pytest.fixture()
def write_task(project_root: Path) -> Callable[..., Path]:
    """Write a task markdown file under `.ai/tasks/<folder>/`."""

    def _write(name: str = "001-greeting.md", *, folder: str = "pending", **kwargs) -> Path:
        task_path = project_root / ".ai" / "tasks" / folder / name
        task_path.parent.mkdir(parents=True, exist_ok=True)
        task_path.write_text(render_task(**kwargs), "utf-8")
        return task_path

    return _write


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)


@pytest.fixture()
def git_repo(project_root: Path) -> Path:
    """Turn the project into a git repository with one initial commit."""

    _git(project_root, "init", "-q")
    _git(project_root, "config", "user.email", "tests@example.com")
    _git(project_root, "config", "user.name", "Tests")
    _git(project_root, "config", "commit.gpgsign", "false")
    (project_root / "README.md").write_text("# demo\n", "utf-8")
    _git(project_root, "add", "-A")
    _git(project_root, "commit", "-q", "-m", "initial")
    return project_root


@pytest.fixture()
def echo_agent_command(monkeypatch) -> tuple[str, ...]:
    """Command running the scripted echo agent; makes the package importable in the child."""

    monkeypatch.setenv("PYTHONPATH", str(Path(taskpilot.__file__).resolve().parents[1]))
    monkeypatch.delenv("TASKPILOT_ECHO_SCRIPT", raising=False)
    return _ECHO_AGENT_COMMAND
