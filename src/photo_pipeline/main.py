"""CLI entrypoint for photo-pipeline."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from photo_pipeline import __version__
from photo_pipeline.config import Settings
from photo_pipeline.logging_setup import setup_logging
from photo_pipeline.tasks.controllers import (
    TaskCliController,
    TaskDispatchCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskProgressCommand,
    TaskStatsCommand,
    TaskSubmitCommand,
    TaskSweepCommand,
    WorkerRunCommand,
)
from photo_pipeline.tasks.errors import TaskStoreError
from photo_pipeline.tasks.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="photo-pipeline")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override PHOTO_PIPELINE_LOG_LEVEL.",
)
def photo_pipeline(log_level: str | None) -> None:
    """Photo generation task pipeline CLI."""

    setup_logging((log_level or Settings.from_env().log_level).upper())


@photo_pipeline.group()
def task() -> None:
    """Task submission, dispatch and inspection commands."""


@task.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--image",
    "images",
    multiple=True,
    help="Source image reference (URL or blob path). Can be repeated.",
)
@click.option(
    "--count",
    type=click.IntRange(min=1, max=100),
    default=1,
    show_default=True,
    help="How many photos to generate.",
)
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Generation parameter as key=value; JSON values are decoded. Can be repeated.",
)
@click.option(
    "--dispatch/--no-dispatch",
    default=False,
    show_default=True,
    help="Run the dispatcher until the task stops making progress.",
)
def task_submit(
    db_path: Path | None,
    images: tuple[str, ...],
    count: int,
    params: tuple[str, ...],
    dispatch: bool,
) -> None:
    """Submit a photo generation request."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.submit,
            TaskSubmitCommand(
                db_path=db_path,
                images=images,
                count=count,
                params=params,
                dispatch=dispatch,
            ),
        ),
    )


@task.command("dispatch")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--until-idle",
    is_flag=True,
    default=False,
    help="Keep dispatching while each step advances the task.",
)
@click.option(
    "--max-steps",
    type=click.IntRange(min=1, max=100),
    default=20,
    show_default=True,
    help="Upper bound of dispatcher steps with --until-idle.",
)
def task_dispatch(task_id: str, db_path: Path | None, until_idle: bool, max_steps: int) -> None:
    """Advance a task by one stage (or until idle)."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.dispatch,
            TaskDispatchCommand(
                db_path=db_path,
                task_id=task_id,
                until_idle=until_idle,
                max_steps=max_steps,
            ),
        ),
    )


@task.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=10,
    show_default=True,
    help="Max number of due tasks to dispatch.",
)
def task_sweep(db_path: Path | None, limit: int) -> None:
    """Dispatch one step for every due task, oldest first.

    Meant to run from a timer (cron, systemd) so retried tasks come back.
    """

    _emit_lines(_run(TASK_CONTROLLER.sweep, TaskSweepCommand(db_path=db_path, limit=limit)))


@task.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def task_stats(db_path: Path | None) -> None:
    """Show task counts per status."""

    _emit_lines(_run(TASK_CONTROLLER.stats, TaskStatsCommand(db_path=db_path)))


@task.command("progress")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"], case_sensitive=False),
    default="text",
    show_default=True,
    help="Output format.",
)
def task_progress(task_id: str, db_path: Path | None, output_format: str) -> None:
    """Show status, message and percentage of a task."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.progress,
            TaskProgressCommand(
                db_path=db_path,
                task_id=task_id,
                output_format=output_format.lower(),
            ),
        ),
    )


@task.command("inspect")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def task_inspect(task_id: str, db_path: Path | None) -> None:
    """Show task fields and its event stream."""

    _emit_lines(
        _run(TASK_CONTROLLER.inspect, TaskInspectCommand(db_path=db_path, task_id=task_id)),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def task_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.list_tasks,
            TaskListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@photo_pipeline.group()
def worker() -> None:
    """Generation worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--snapshot-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Worker snapshot JSON written by the hand-off.",
)
@click.option(
    "--keep-snapshot",
    is_flag=True,
    default=False,
    help="Do not delete the snapshot file after the run.",
)
def worker_run(db_path: Path | None, snapshot_file: Path, keep_snapshot: bool) -> None:
    """Run the generation stage for one handed-off task."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.run_worker,
            WorkerRunCommand(
                db_path=db_path,
                snapshot_file=snapshot_file,
                keep_snapshot=keep_snapshot,
            ),
        ),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (TaskStoreError, ValueError, TypeError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    photo_pipeline()
