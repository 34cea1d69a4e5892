"""CLI entrypoint for taskpilot."""

import logging
from pathlib import Path

import rich_click as click

from taskpilot import __version__
from taskpilot.orchestrator.context import ContextLoadError
from taskpilot.orchestrator.controllers import (
    ParallelRunCommand,
    RunTaskCommand,
    TaskCliController,
)
from taskpilot.orchestrator.errors import TaskPilotError

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="taskpilot")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def taskpilot(log_level: str) -> None:
    """Drive an AI coding agent through scoped, validated task iterations."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskpilot.command("run")
@click.argument("task_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None)
@click.option("--resume", is_flag=True, help="Resume a task persisted as BLOCKED.")
@click.option("--dry-run", is_flag=True, help="Build the first prompt without calling the agent.")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Override execution.max_iterations from config.",
)
@click.option("--quiet", is_flag=True, help="Do not stream agent output.")
@click.option("--yes", "assume_yes", is_flag=True, help="Approve every scope question.")
def run_task(  # noqa: PLR0913
    task_path: Path,
    config_path: Path | None,
    resume: bool,
    dry_run: bool,
    max_iterations: int | None,
    quiet: bool,
    assume_yes: bool,
) -> None:
    """Run one task file through the iteration loop."""

    try:
        outcome = TASK_CONTROLLER.run_task(
            RunTaskCommand(
                task_path=task_path,
                config_path=config_path,
                resume=resume,
                dry_run=dry_run,
                max_iterations=max_iterations,
                on_output=None if quiet else _stream_output,
                on_ask_user=_approve_all if assume_yes else _confirm_scope,
            ),
        )
    except (TaskPilotError, ContextLoadError, ValueError) as error:
        raise click.ClickException(str(error)) from error

    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException("Task did not complete.")


@taskpilot.command("parallel")
@click.argument(
    "task_paths",
    nargs=-1,
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
)
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=2,
    show_default=True,
    help="Maximum tasks running at once within a wave.",
)
@click.option("--resume", is_flag=True, help="Resume tasks persisted as BLOCKED.")
@click.option("--dry-run", is_flag=True, help="Plan waves without calling the agent.")
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
def run_parallel(  # noqa: PLR0913
    task_paths: tuple[Path, ...],
    config_path: Path | None,
    concurrency: int,
    resume: bool,
    dry_run: bool,
    max_iterations: int | None,
) -> None:
    """Run several task files, serializing the ones whose scopes overlap."""

    try:
        outcome = TASK_CONTROLLER.run_parallel(
            ParallelRunCommand(
                task_paths=task_paths,
                config_path=config_path,
                concurrency=concurrency,
                resume=resume,
                dry_run=dry_run,
                max_iterations=max_iterations,
            ),
        )
    except (TaskPilotError, ContextLoadError, ValueError) as error:
        raise click.ClickException(str(error)) from error

    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException("Not every task completed.")


def _stream_output(chunk: str) -> None:
    click.echo(chunk, nl=False)


def _confirm_scope(reason: str, files: list[str]) -> bool:
    click.echo(f"{reason}:")
    for path in files:
        click.echo(f"  - {path}")
    return click.confirm("Allow these changes?", default=False)


def _approve_all(reason: str, files: list[str]) -> bool:  # noqa: ARG001
    return True


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskpilot()
