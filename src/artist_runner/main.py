"""CLI entrypoint for artist-runner."""

import logging
from pathlib import Path

import rich_click as click

from artist_runner import __version__
from artist_runner.engine.backlog import BacklogError
from artist_runner.engine.controllers import (
    BacklogCommand,
    ClassifyCommand,
    MarkCompleteCommand,
    RunCommand,
    RunnerCliController,
)
from artist_runner.engine.handoff import HandoffError
from artist_runner.engine.process import LaunchError

click.rich_click.USE_MARKDOWN = True
RUNNER_CONTROLLER = RunnerCliController()

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_work_root_option = click.option(
    "--work-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help=(
        "Directory holding the worker subdirectory and launcher. "
        "Defaults to ARTIST_RUNNER_WORK_ROOT or cwd."
    ),
)
_data_root_option = click.option(
    "--data-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding the SQLite stores. Defaults to the work root.",
)


@click.group()
@click.version_option(version=__version__, prog_name="artist-runner")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level for runner and process output.",
)
def artist_runner(log_level: str) -> None:
    """Supervise the decrypt service and work through the artist backlog."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@artist_runner.command("run")
@_work_root_option
@_data_root_option
@click.option(
    "--budget-cap",
    type=click.IntRange(min=0),
    default=None,
    help="Stop a session once processed units exceed this value (0 disables).",
)
@click.option(
    "--max-sessions",
    type=click.IntRange(min=0),
    default=None,
    help="Give up after this many sessions (0 means unbounded).",
)
@click.option(
    "--max-attempts-per-item",
    type=click.IntRange(min=0),
    default=None,
    help="Restart the session after this many failures of one artist (0 means unbounded).",
)
def run(
    work_root: Path | None,
    data_root: Path | None,
    budget_cap: int | None,
    max_sessions: int | None,
    max_attempts_per_item: int | None,
) -> None:
    """Process pending artists until the backlog is empty or the run is cancelled."""

    try:
        result = RUNNER_CONTROLLER.run(
            RunCommand(
                work_root=work_root,
                data_root=data_root,
                budget_cap=budget_cap,
                max_sessions=max_sessions,
                max_attempts_per_item=max_attempts_per_item,
            ),
        )
    except (ValueError, BacklogError, HandoffError, LaunchError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Run did not complete the backlog.")


@artist_runner.command("backlog")
@_work_root_option
@_data_root_option
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    default=20,
    show_default=True,
    help="How many ids to list.",
)
@click.option("--show-completed", is_flag=True, default=False, help="Also list completed ids.")
def backlog(
    work_root: Path | None,
    data_root: Path | None,
    limit: int,
    show_completed: bool,
) -> None:
    """Show pending and completed artist ids."""

    try:
        lines = RUNNER_CONTROLLER.backlog(
            BacklogCommand(
                work_root=work_root,
                data_root=data_root,
                limit=limit,
                show_completed=show_completed,
            ),
        )
    except (ValueError, BacklogError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@artist_runner.command("mark-complete")
@_work_root_option
@_data_root_option
@click.argument("task_ids", nargs=-1, required=True)
def mark_complete(
    work_root: Path | None,
    data_root: Path | None,
    task_ids: tuple[str, ...],
) -> None:
    """Record artist ids as processed without running the worker."""

    try:
        lines = RUNNER_CONTROLLER.mark_complete(
            MarkCompleteCommand(work_root=work_root, data_root=data_root, task_ids=task_ids),
        )
    except (ValueError, BacklogError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@artist_runner.command("classify")
@click.argument("lines", nargs=-1, required=True)
def classify(lines: tuple[str, ...]) -> None:
    """Show severity and sentinel signals the configured rules assign to LINES."""

    try:
        output = RUNNER_CONTROLLER.classify(ClassifyCommand(lines=lines))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(output)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    artist_runner()
