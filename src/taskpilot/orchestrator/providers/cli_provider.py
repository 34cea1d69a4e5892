"""Subprocess-based providers for CLI coding agents."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from pathlib import Path

from taskpilot.orchestrator.errors import IterationTimeoutError, ProviderError
from taskpilot.orchestrator.failure_classifier import classify_provider_failure
from taskpilot.orchestrator.git import GitCommandError, GitOps, parse_porcelain_paths
from taskpilot.orchestrator.models import ExecutionResult
from taskpilot.orchestrator.providers.base import (
    ProviderOptions,
    detect_blocked_reason,
    detect_completion_signal,
)
from taskpilot.orchestrator.usage import extract_usage

logger = logging.getLogger(__name__)

_READ_CHUNK = 4_096


class CliAgentProvider:
    """Run a CLI agent with the prompt on stdin and diff the working tree around it."""

    name = "cli"

    def __init__(self, cwd: Path, *, command: Sequence[str]) -> None:
        self.cwd = cwd
        self.command = tuple(command)
        self._git = GitOps(cwd)

    def build_args(self, options: ProviderOptions) -> list[str]:
        return [*self.command, "--print"]

    async def is_available(self) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError:
            return False
        return await process.wait() == 0

    async def execute(self, prompt: str, options: ProviderOptions) -> ExecutionResult:
        files_before = await self._changed_files()
        args = self.build_args(options)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(self.cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            failure = ProviderError.not_available(self.name, str(error))
            return _failed(failure, output="")
        except OSError as error:
            failure = ProviderError.crash(self.name, str(error))
            return _failed(failure, output="")

        stdout_parts: list[str] = []
        try:
            communicate = _communicate(process, prompt, stdout_parts, options.on_output)
            if options.timeout_seconds > 0:
                stderr_text = await asyncio.wait_for(communicate, options.timeout_seconds)
            else:
                stderr_text = await communicate
        except TimeoutError:
            failure = IterationTimeoutError.iteration(options.timeout_seconds, 0)
            return _failed(failure, output="".join(stdout_parts))
        finally:
            if process.returncode is None:
                _kill(process)
                await process.wait()

        stdout_text = "".join(stdout_parts)
        files_after = await self._changed_files()
        files_changed = sorted(files_after - files_before)
        completion_signal = detect_completion_signal(stdout_text)
        token_usage = extract_usage(stdout=stdout_text, stderr=stderr_text).to_token_usage()
        exit_code = process.returncode

        blocked_reason = detect_blocked_reason(stdout_text)
        if blocked_reason is not None and completion_signal is None:
            return ExecutionResult(
                success=False,
                output=stdout_text,
                files_changed=files_changed,
                error=f"BLOCKED: {blocked_reason}",
                token_usage=token_usage,
            )

        if exit_code != 0:
            classification = classify_provider_failure(
                provider=self.name,
                exit_code=exit_code,
                stdout=stdout_text,
                stderr=stderr_text,
            )
            logger.debug(
                "Provider %s failed with exit code %s (%s)",
                self.name,
                exit_code,
                classification.matched_rule,
            )
            return ExecutionResult(
                success=False,
                output=stdout_text,
                files_changed=files_changed,
                iteration_complete=completion_signal is not None,
                error=stderr_text.strip() or f"{self.name} exited with code {exit_code}",
                error_category=classification.category,
                error_code=classification.code,
                completion_signal=completion_signal,
                token_usage=token_usage,
            )

        return ExecutionResult(
            success=True,
            output=stdout_text,
            files_changed=files_changed,
            iteration_complete=completion_signal is not None,
            error=stderr_text.strip() or None,
            completion_signal=completion_signal,
            token_usage=token_usage,
        )

    async def _changed_files(self) -> set[str]:
        try:
            return parse_porcelain_paths(await self._git.status_porcelain())
        except (GitCommandError, OSError) as error:
            logger.debug("git status failed in %s: %s", self.cwd, error)
            return set()


class ClaudeCliProvider(CliAgentProvider):
    name = "claude-cli"

    def __init__(self, cwd: Path, *, command: Sequence[str] = ("claude",)) -> None:
        super().__init__(cwd, command=command)

    def build_args(self, options: ProviderOptions) -> list[str]:
        args = [*self.command, "--print"]
        if options.session_continuation:
            args.append("--continue")
        if options.skip_permissions:
            args.append("--dangerously-skip-permissions")
        if options.model:
            args.extend(["--model", options.model])
        return args


class CursorCliProvider(CliAgentProvider):
    name = "cursor-cli"

    def __init__(self, cwd: Path, *, command: Sequence[str] = ("agent",)) -> None:
        super().__init__(cwd, command=command)

    def build_args(self, options: ProviderOptions) -> list[str]:
        args = [*self.command, "--print"]
        if options.model:
            args.extend(["--model", options.model])
        return args


async def _communicate(
    process: asyncio.subprocess.Process,
    prompt: str,
    stdout_parts: list[str],
    on_output: Callable[[str], None] | None,
) -> str:
    assert process.stdin is not None
    assert process.stdout is not None
    assert process.stderr is not None

    async def pump_stdout() -> None:
        while chunk := await process.stdout.read(_READ_CHUNK):
            text = chunk.decode("utf-8", errors="replace")
            stdout_parts.append(text)
            if on_output is not None:
                on_output(text)

    async def write_prompt() -> None:
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Agent closed stdin before reading the full prompt")
        finally:
            process.stdin.close()

    _, _, stderr = await asyncio.gather(write_prompt(), pump_stdout(), process.stderr.read())
    await process.wait()
    return stderr.decode("utf-8", errors="replace")


def _failed(error: ProviderError | IterationTimeoutError, *, output: str) -> ExecutionResult:
    return ExecutionResult(
        success=False,
        output=output,
        error=str(error),
        error_category=error.category,
        error_code=error.code,
    )


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        return
