from __future__ import annotations

from pathlib import Path

import allure
from click.testing import CliRunner

from taskpilot import __version__, main
from taskpilot.orchestrator.controllers import (
    CommandOutcome,
    ParallelRunCommand,
    RunTaskCommand,
    TaskCliController,
)
from taskpilot.orchestrator.errors import ConfigError
from taskpilot.orchestrator.models import ExecutionResult
from taskpilot.orchestrator.phases import ExecutorDependencies

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Task Commands"),
]


class FakeController:
    def __init__(self, outcome: CommandOutcome | Exception) -> None:
        self.outcome = outcome
        self.commands: list[RunTaskCommand | ParallelRunCommand] = []

    def _respond(self, command) -> CommandOutcome:
        self.commands.append(command)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    def run_task(self, command: RunTaskCommand) -> CommandOutcome:
        return self._respond(command)

    def run_parallel(self, command: ParallelRunCommand) -> CommandOutcome:
        return self._respond(command)


def _install(monkeypatch, outcome: CommandOutcome | Exception) -> FakeController:
    controller = FakeController(outcome)
    monkeypatch.setattr(main, "TASK_CONTROLLER", controller)
    return controller


def test_run_passes_flags_to_controller(monkeypatch, write_task) -> None:
    task_path = write_task()
    controller = _install(monkeypatch, CommandOutcome(lines=["Status: completed"], success=True))

    result = CliRunner().invoke(
        main.taskpilot,
        ["run", str(task_path), "--yes", "--quiet", "--max-iterations", "4"],
    )

    assert result.exit_code == 0, result.output
    assert "Status: completed" in result.output
    [command] = controller.commands
    assert command.task_path == task_path
    assert command.max_iterations == 4
    assert command.on_output is None
    assert command.on_ask_user is main._approve_all
    assert command.resume is False


def test_run_streams_and_confirms_by_default(monkeypatch, write_task) -> None:
    controller = _install(monkeypatch, CommandOutcome(lines=[], success=True))

    result = CliRunner().invoke(main.taskpilot, ["run", str(write_task()), "--resume"])

    assert result.exit_code == 0, result.output
    [command] = controller.commands
    assert command.resume is True
    assert command.on_output is main._stream_output
    assert command.on_ask_user is main._confirm_scope


def test_unsuccessful_run_exits_non_zero(monkeypatch, write_task) -> None:
    _install(monkeypatch, CommandOutcome(lines=["Status: blocked"], success=False))

    result = CliRunner().invoke(main.taskpilot, ["run", str(write_task())])

    assert result.exit_code == 1
    assert "Status: blocked" in result.output
    assert "Task did not complete." in result.output


def test_errors_become_click_exceptions(monkeypatch, write_task) -> None:
    _install(monkeypatch, ConfigError.invalid("execution.max_iterations must be > 0"))

    result = CliRunner().invoke(main.taskpilot, ["run", str(write_task())])

    assert result.exit_code == 1
    assert "execution.max_iterations must be > 0" in result.output


def test_parallel_passes_concurrency(monkeypatch, write_task) -> None:
    first = write_task("001-a.md")
    second = write_task("002-b.md")
    controller = _install(monkeypatch, CommandOutcome(lines=["Tasks: 2"], success=True))

    result = CliRunner().invoke(
        main.taskpilot,
        ["parallel", str(first), str(second), "--concurrency", "3", "--dry-run"],
    )

    assert result.exit_code == 0, result.output
    [command] = controller.commands
    assert command.task_paths == (first, second)
    assert command.concurrency == 3
    assert command.dry_run is True


def test_version_option() -> None:
    result = CliRunner().invoke(main.taskpilot, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_controller_dry_run_renders_result(project_root: Path, write_task, monkeypatch) -> None:
    for name in ("TASKPILOT_CONFIG", "TASKPILOT_AUTO_COMMIT", "TASKPILOT_AUTO_PUSH"):
        monkeypatch.delenv(name, raising=False)
    config_path = project_root / "taskpilot.yml"
    config_path.write_text("execution:\n  max_iterations: 7\n", "utf-8")
    calls: list[str] = []

    class NeverCalled:
        name = "never"

        async def execute(self, prompt, options) -> ExecutionResult:
            calls.append(prompt)
            return ExecutionResult(success=True, output="")

        async def is_available(self) -> bool:
            return True

    controller = TaskCliController(
        ExecutorDependencies(provider_factory=lambda settings, cwd: NeverCalled()),
    )

    outcome = controller.run_task(
        RunTaskCommand(task_path=write_task(), config_path=config_path, dry_run=True),
    )

    assert outcome.success is True
    assert "Status: idle" in outcome.lines
    assert "Iterations: 1" in outcome.lines
    assert "Termination: dry_run" in outcome.lines
    assert calls == []
