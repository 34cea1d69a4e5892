"""Async git primitives used by the execution loop and task-file bookkeeping."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class GitCommandError(RuntimeError):
    """Raised when a git invocation exits non-zero."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}")
        self.returncode = returncode
        self.stderr = stderr


class VcsClient(Protocol):
    """Narrow version-control surface consumed by the orchestrator."""

    async def add(self, files: Sequence[str]) -> None: ...

    async def commit(self, message: str) -> None: ...

    async def revert_files(self, files: Sequence[str]) -> None: ...

    async def push(self) -> None: ...

    async def rm_cached(self, files: Sequence[str]) -> None: ...

    async def status_porcelain(self) -> list[str]: ...


class GitOps:
    """Run git subcommands in a working tree."""

    def __init__(self, repo_root: Path, *, timeout_seconds: float = 60.0) -> None:
        self.repo_root = repo_root
        self.timeout_seconds = timeout_seconds

    async def run(self, *args: str) -> str:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(self.repo_root),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.timeout_seconds)
        except TimeoutError:
            process.kill()
            await process.wait()
            raise GitCommandError(args, -1, f"timed out after {self.timeout_seconds:g}s") from None
        if process.returncode != 0:
            raise GitCommandError(
                args,
                process.returncode if process.returncode is not None else -1,
                stderr.decode("utf-8", errors="replace"),
            )
        return stdout.decode("utf-8", errors="replace")

    async def add(self, files: Sequence[str]) -> None:
        if files:
            await self.run("add", "--", *files)

    async def commit(self, message: str) -> None:
        await self.run("commit", "-m", message)

    async def checkout_files(self, files: Sequence[str]) -> None:
        if files:
            await self.run("checkout", "--", *files)

    async def revert_files(self, files: Sequence[str]) -> None:
        """Restore tracked files from the index and delete untracked ones."""

        if not files:
            return
        tracked = set((await self.run("ls-files", "--", *files)).splitlines())
        await self.checkout_files([path for path in files if path in tracked])
        for path in files:
            if path not in tracked:
                (self.repo_root / path).unlink(missing_ok=True)

    async def push(self) -> None:
        await self.run("push")

    async def rm_cached(self, files: Sequence[str]) -> None:
        if files:
            await self.run("rm", "--cached", "--ignore-unmatch", "--", *files)

    async def status_porcelain(self) -> list[str]:
        output = await self.run("status", "--porcelain")
        return [line for line in output.splitlines() if line.strip()]


def parse_porcelain_paths(lines: Sequence[str]) -> set[str]:
    """Extract file paths from ``git status --porcelain`` lines, renames included."""

    paths: set[str] = set()
    for line in lines:
        if len(line) < 4:
            continue
        path = line[3:].strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.add(path.strip('"'))
    return paths
