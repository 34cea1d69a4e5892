"""File and shell tools exposed to API-driven agents."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_SECONDS = 300.0

FILE_TOOLS: tuple[dict[str, Any], ...] = (
    {
        "name": "read_file",
        "description": "Read contents of a file",
        "input_schema": {
            "type": "object",
            "properties": {"path": {"type": "string", "description": "File path to read"}},
            "required": ["path"],
        },
    },
    {
        "name": "write_file",
        "description": "Write content to a file",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path to write"},
                "content": {"type": "string", "description": "Content to write"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "list_files",
        "description": "List files in a directory",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path"},
                "pattern": {"type": "string", "description": "Glob pattern to filter"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "run_command",
        "description": "Run a shell command",
        "input_schema": {
            "type": "object",
            "properties": {"command": {"type": "string", "description": "Command to execute"}},
            "required": ["command"],
        },
    },
    {
        "name": "task_complete",
        "description": "Signal that the task is complete",
        "input_schema": {
            "type": "object",
            "properties": {
                "summary": {"type": "string", "description": "Summary of what was done"},
            },
            "required": ["summary"],
        },
    },
    {
        "name": "task_blocked",
        "description": "Signal that the task is blocked and needs human input",
        "input_schema": {
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "Why the task is blocked"},
                "attempted": {"type": "string", "description": "What was attempted"},
                "suggestion": {"type": "string", "description": "Suggested next steps"},
            },
            "required": ["reason"],
        },
    },
)


class ToolHandler:
    """Execute tool calls inside a working directory and track written files."""

    def __init__(self, cwd: Path) -> None:
        self.cwd = cwd.resolve()
        self._changed: list[str] = []

    def reset(self) -> None:
        self._changed.clear()

    @property
    def changed_files(self) -> list[str]:
        return list(self._changed)

    async def handle(self, name: str, tool_input: dict[str, Any]) -> str:
        """Run one tool call; errors are reported back to the agent as text."""

        try:
            match name:
                case "read_file":
                    return self._resolve(tool_input["path"]).read_text("utf-8")
                case "write_file":
                    target = self._resolve(tool_input["path"])
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_text(str(tool_input.get("content", "")), "utf-8")
                    relative = target.relative_to(self.cwd).as_posix()
                    if relative not in self._changed:
                        self._changed.append(relative)
                    return f"File written: {relative}"
                case "list_files":
                    base = self._resolve(tool_input.get("path") or ".")
                    pattern = tool_input.get("pattern") or "**/*"
                    return "\n".join(
                        sorted(
                            path.relative_to(base).as_posix()
                            for path in base.glob(pattern)
                            if path.is_file()
                        ),
                    )
                case "run_command":
                    return await self._run_command(str(tool_input["command"]))
                case "task_complete":
                    return f"Task completed: {tool_input.get('summary', '')}"
                case "task_blocked":
                    return f"Task blocked: {tool_input.get('reason', '')}"
                case _:
                    return f"Unknown tool: {name}"
        except (OSError, KeyError, ValueError) as error:
            return f"Error: {error}"

    def _resolve(self, relative: str) -> Path:
        target = (self.cwd / relative).resolve()
        if not target.is_relative_to(self.cwd):
            raise ValueError(f"Path escapes the working directory: {relative}")
        return target

    async def _run_command(self, command: str) -> str:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), COMMAND_TIMEOUT_SECONDS)
        except TimeoutError:
            process.kill()
            await process.wait()
            return f"Error: command timed out after {COMMAND_TIMEOUT_SECONDS:g}s"
        return f"Exit code: {process.returncode}\n{stdout.decode('utf-8', errors='replace')}"
