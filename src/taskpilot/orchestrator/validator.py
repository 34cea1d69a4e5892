"""Quality-gate command runner for pre-commit, pre-push and pre-PR phases."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from taskpilot.orchestrator.models import ValidationPhase, ValidationResult, ValidationSummary

logger = logging.getLogger(__name__)

REPORT_OUTPUT_LIMIT = 5_000


@dataclass(slots=True)
class ValidationCommands:
    """Per-phase ordered command lists."""

    pre_commit: tuple[str, ...] = ()
    pre_push: tuple[str, ...] = ()
    pre_pr: tuple[str, ...] = ()
    timeout_seconds: float = 300.0


async def run_command(command: str, *, cwd: Path, timeout_seconds: float) -> ValidationResult:
    """Run one shell command; timeouts and spawn errors become failed results."""

    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as error:
        return ValidationResult(
            command=command,
            passed=False,
            output=f"Failed to execute: {error}",
            duration_seconds=time.monotonic() - started,
            exit_code=-1,
        )

    try:
        if timeout_seconds > 0:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout_seconds)
        else:
            stdout, stderr = await process.communicate()
    except TimeoutError:
        _kill(process)
        await process.wait()
        return ValidationResult(
            command=command,
            passed=False,
            output=f"Command timed out after {timeout_seconds:g}s",
            duration_seconds=time.monotonic() - started,
            exit_code=-1,
        )

    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")
    output = stdout_text + (f"\n--- stderr ---\n{stderr_text}" if stderr_text else "")
    exit_code = process.returncode if process.returncode is not None else -1
    return ValidationResult(
        command=command,
        passed=exit_code == 0,
        output=output,
        duration_seconds=time.monotonic() - started,
        exit_code=exit_code,
    )


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        return


async def run_validation(
    commands: Sequence[str],
    phase: ValidationPhase,
    *,
    cwd: Path,
    stop_on_first: bool = True,
    timeout_seconds: float = 300.0,
) -> ValidationSummary:
    started = time.monotonic()
    results: list[ValidationResult] = []
    for command in commands:
        result = await run_command(command, cwd=cwd, timeout_seconds=timeout_seconds)
        results.append(result)
        logger.debug(
            "Validation %s: %s exited %s in %.2fs",
            phase.value,
            command,
            result.exit_code,
            result.duration_seconds,
        )
        if not result.passed and stop_on_first:
            break
    return ValidationSummary(
        phase=phase,
        passed=all(result.passed for result in results),
        results=tuple(results),
        total_duration_seconds=time.monotonic() - started,
    )


class Validator:
    """Runs the configured command list for each validation phase."""

    def __init__(self, commands: ValidationCommands, cwd: Path) -> None:
        self.commands = commands
        self.cwd = cwd

    async def pre_commit(self) -> ValidationSummary:
        return await self._run(ValidationPhase.PRE_COMMIT, self.commands.pre_commit)

    async def pre_push(self) -> ValidationSummary:
        return await self._run(ValidationPhase.PRE_PUSH, self.commands.pre_push)

    async def pre_pr(self) -> ValidationSummary:
        return await self._run(
            ValidationPhase.PRE_PR,
            self.commands.pre_pr,
            stop_on_first=False,
        )

    async def _run(
        self,
        phase: ValidationPhase,
        commands: Sequence[str],
        *,
        stop_on_first: bool = True,
    ) -> ValidationSummary:
        if not commands:
            return ValidationSummary(
                phase=phase,
                passed=True,
                results=(),
                total_duration_seconds=0.0,
            )
        return await run_validation(
            commands,
            phase,
            cwd=self.cwd,
            stop_on_first=stop_on_first,
            timeout_seconds=self.commands.timeout_seconds,
        )

    @staticmethod
    def format_report(summary: ValidationSummary) -> str:
        """Render a markdown report suitable for prompt feedback."""

        icon = "✅" if summary.passed else "❌"
        lines = [
            f"## {icon} Validation: {summary.phase.value}",
            "",
            f"**Status:** {'PASSED' if summary.passed else 'FAILED'}",
            f"**Duration:** {summary.total_duration_seconds:.2f}s",
            "",
        ]
        if not summary.results:
            lines.append("_No validation commands configured for this phase._")
            return "\n".join(lines) + "\n"

        lines.extend(["### Results", ""])
        for result in summary.results:
            result_icon = "✅" if result.passed else "❌"
            lines.append(f"#### {result_icon} `{result.command}`")
            lines.append("")
            lines.append(f"- Exit code: {result.exit_code}")
            lines.append(f"- Duration: {result.duration_seconds:.2f}s")
            if not result.passed or result.output.strip():
                output = result.output[:REPORT_OUTPUT_LIMIT]
                if len(result.output) > REPORT_OUTPUT_LIMIT:
                    output += "\n... (truncated)"
                lines.extend(
                    [
                        "",
                        "<details>",
                        "<summary>Output</summary>",
                        "",
                        "```",
                        output,
                        "```",
                        "</details>",
                        "",
                    ],
                )
        return "\n".join(lines) + "\n"
