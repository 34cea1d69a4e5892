from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import allure
import pytest

from taskpilot.orchestrator.git import GitCommandError, GitOps, parse_porcelain_paths

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Version Control"),
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


def test_parse_porcelain_paths_handles_renames_and_quotes() -> None:
    paths = parse_porcelain_paths(
        [" M src/app.py", "?? notes.txt", "R  old.py -> new.py", '?? "with space.md"', "x"],
    )

    assert paths == {"src/app.py", "notes.txt", "new.py", "with space.md"}


def test_status_add_and_commit(git_repo: Path) -> None:
    git = GitOps(git_repo)
    (git_repo / "README.md").write_text("# changed\n", "utf-8")
    (git_repo / "new.txt").write_text("new\n", "utf-8")

    async def scenario() -> tuple[set[str], list[str]]:
        before = parse_porcelain_paths(await git.status_porcelain())
        await git.add(["README.md", "new.txt"])
        await git.commit("test: commit two files")
        return before, await git.status_porcelain()

    before, after = asyncio.run(scenario())

    assert {"README.md", "new.txt"} <= before
    assert not [line for line in after if "README.md" in line or "new.txt" in line]


def test_revert_files_restores_tracked_and_removes_untracked(git_repo: Path) -> None:
    git = GitOps(git_repo)
    (git_repo / "README.md").write_text("# vandalized\n", "utf-8")
    (git_repo / ".env").write_text("SECRET=1\n", "utf-8")

    asyncio.run(git.revert_files(["README.md", ".env"]))

    assert (git_repo / "README.md").read_text("utf-8") == "# demo\n"
    assert not (git_repo / ".env").exists()


def test_failed_command_raises_with_stderr(git_repo: Path) -> None:
    git = GitOps(git_repo)

    with pytest.raises(GitCommandError) as error:
        asyncio.run(git.run("checkout", "no-such-branch"))

    assert error.value.returncode != 0
    assert "no-such-branch" in str(error.value)
