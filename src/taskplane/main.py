"""CLI entrypoint for taskplane."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from taskplane import __version__
from taskplane.controllers import (
    CronAddCommand,
    CronHistoryCommand,
    CronJobCommand,
    SignalCommand,
    StartCommand,
    StatusCommand,
    TaskAddCommand,
    TaskListCommand,
    TaskplaneCliController,
    TaskReviseCommand,
    TaskShowCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskplaneCliController()
CommandT = TypeVar("CommandT")

PRIORITIES = ["low", "normal", "high", "critical"]
STATUSES = ["pending", "assigned", "in-progress", "blocked", "completed", "failed", "escalated"]

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
world_root_option = click.option(
    "--world-root",
    type=click.Path(path_type=Path),
    default=None,
    help="Shared world directory holding per-task sync files.",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskplane")
def taskplane() -> None:
    """Task orchestration control plane."""


@taskplane.command("start")
@db_path_option
@world_root_option
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logger level.",
)
@click.option(
    "--console/--no-console",
    default=True,
    show_default=True,
    help="Read operator commands (`/help`) from stdin.",
)
def start(db_path: Path | None, world_root: Path | None, log_level: str, console: bool) -> None:
    """Run the scheduler loop, cron scheduler and operator console until interrupted."""

    _emit_lines(
        _call(
            CONTROLLER.start,
            StartCommand(
                db_path=db_path,
                world_root=world_root,
                log_level=log_level,
                interactive=console,
            ),
        ),
    )


@taskplane.group()
def task() -> None:
    """Task store commands."""


@task.command("add")
@db_path_option
@click.argument("title")
@click.option("--description", default="", help="Longer task description.")
@click.option(
    "--priority",
    type=click.Choice(PRIORITIES, case_sensitive=False),
    default="normal",
    show_default=True,
)
def task_add(db_path: Path | None, title: str, description: str, priority: str) -> None:
    """Queue a new pending task."""

    _emit_lines(
        _call(
            CONTROLLER.add_task,
            TaskAddCommand(
                db_path=db_path,
                title=title,
                description=description,
                priority=priority,
            ),
        ),
    )


@task.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def task_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(
        _call(CONTROLLER.list_tasks, TaskListCommand(db_path=db_path, status=status, limit=limit)),
    )


@task.command("show")
@db_path_option
@world_root_option
@click.argument("task_id")
def task_show(db_path: Path | None, world_root: Path | None, task_id: str) -> None:
    """Show one task with its latest progress and audit events."""

    _emit_lines(
        _call(
            CONTROLLER.show_task,
            TaskShowCommand(db_path=db_path, world_root=world_root, task_id=task_id),
        ),
    )


@task.command("revise")
@db_path_option
@click.argument("task_id")
@click.argument("feedback")
def task_revise(db_path: Path | None, task_id: str, feedback: str) -> None:
    """Re-run a completed or failed task with operator feedback."""

    _emit_lines(
        _call(
            CONTROLLER.revise_task,
            TaskReviseCommand(db_path=db_path, task_id=task_id, feedback=feedback),
        ),
    )


@taskplane.command("freeze")
@db_path_option
@click.option("--task", "task_id", default=None, help="Freeze one task instead of the loop.")
def freeze(db_path: Path | None, task_id: str | None) -> None:
    """Hard-pause the whole loop or one task."""

    _emit_lines(_call(CONTROLLER.freeze, SignalCommand(db_path=db_path, task_id=task_id)))


@taskplane.command("resume")
@db_path_option
@click.option("--task", "task_id", default=None, help="Resume one frozen task.")
def resume(db_path: Path | None, task_id: str | None) -> None:
    """Resume a frozen loop or task."""

    _emit_lines(_call(CONTROLLER.resume, SignalCommand(db_path=db_path, task_id=task_id)))


@taskplane.command("rest")
@db_path_option
def rest(db_path: Path | None) -> None:
    """Start the rest phase: active runners are asked to wrap up."""

    _emit_lines(_call(CONTROLLER.rest, SignalCommand(db_path=db_path)))


@taskplane.command("day-end")
@db_path_option
def day_end(db_path: Path | None) -> None:
    """End the rest phase and return the loop to working."""

    _emit_lines(_call(CONTROLLER.day_end, SignalCommand(db_path=db_path)))


@taskplane.command("status")
@db_path_option
def status(db_path: Path | None) -> None:
    """Show task counts, pending signals and cron jobs."""

    _emit_lines(_call(CONTROLLER.status, StatusCommand(db_path=db_path)))


@taskplane.group()
def cron() -> None:
    """Cron job commands."""


@cron.command("add")
@db_path_option
@click.argument("name")
@click.option("--at", default=None, help="One-shot ISO 8601 time (UTC when no offset).")
@click.option("--every", default=None, help="Fixed interval, for example 30s, 15m, 2h.")
@click.option("--cron", "cron_expr", default=None, help="5-field cron expression.")
@click.option("--tz", default=None, help="IANA timezone for --cron (local time by default).")
@click.option(
    "--runtime",
    type=click.Choice(["inline", "task"], case_sensitive=False),
    default="task",
    show_default=True,
    help="`task` enqueues a task; `inline` runs a script from the job folder.",
)
@click.option("--title", default=None, help="Task title for task runtime (defaults to NAME).")
@click.option("--description", default="", help="Job or task description.")
@click.option(
    "--priority",
    type=click.Choice(PRIORITIES, case_sensitive=False),
    default="normal",
    show_default=True,
)
@click.option("--script", default="run.py", show_default=True, help="Inline script file name.")
@click.option("--keep", is_flag=True, default=False, help="Keep one-shot jobs after they run.")
@click.option("--disabled", is_flag=True, default=False, help="Create the job disabled.")
def cron_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    at: str | None,
    every: str | None,
    cron_expr: str | None,
    tz: str | None,
    runtime: str,
    title: str | None,
    description: str,
    priority: str,
    script: str,
    keep: bool,
    disabled: bool,
) -> None:
    """Create a cron job."""

    _emit_lines(
        _call(
            CONTROLLER.add_cron,
            CronAddCommand(
                db_path=db_path,
                name=name,
                at=at,
                every=every,
                cron_expr=cron_expr,
                tz=tz,
                runtime=runtime,
                title=title,
                description=description,
                priority=priority,
                script=script,
                keep=keep,
                disabled=disabled,
            ),
        ),
    )


@cron.command("list")
@db_path_option
def cron_list(db_path: Path | None) -> None:
    """List cron jobs."""

    _emit_lines(_call(CONTROLLER.list_cron, StatusCommand(db_path=db_path)))


@cron.command("remove")
@db_path_option
@click.argument("job_id")
def cron_remove(db_path: Path | None, job_id: str) -> None:
    """Delete a cron job."""

    _emit_lines(_call(CONTROLLER.remove_cron, CronJobCommand(db_path=db_path, job_id=job_id)))


@cron.command("enable")
@db_path_option
@click.argument("job_id")
def cron_enable(db_path: Path | None, job_id: str) -> None:
    """Enable a cron job."""

    _emit_lines(_call(CONTROLLER.enable_cron, CronJobCommand(db_path=db_path, job_id=job_id)))


@cron.command("disable")
@db_path_option
@click.argument("job_id")
def cron_disable(db_path: Path | None, job_id: str) -> None:
    """Disable a cron job."""

    _emit_lines(_call(CONTROLLER.disable_cron, CronJobCommand(db_path=db_path, job_id=job_id)))


@cron.command("run")
@db_path_option
@click.argument("job_id")
def cron_run(db_path: Path | None, job_id: str) -> None:
    """Fire a cron job now, regardless of its schedule."""

    _emit_lines(_call(CONTROLLER.run_cron, CronJobCommand(db_path=db_path, job_id=job_id)))


@cron.command("history")
@db_path_option
@click.argument("job_id", required=False)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max runs to print.",
)
def cron_history(db_path: Path | None, job_id: str | None, limit: int) -> None:
    """Show cron run history, newest first."""

    _emit_lines(
        _call(
            CONTROLLER.cron_history,
            CronHistoryCommand(db_path=db_path, job_id=job_id, limit=limit),
        ),
    )


def _call(method: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return method(command)
    except (ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskplane()
