from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result

from taskplane.controllers import parse_duration_ms
from taskplane.main import taskplane
from taskplane.tasks import TaskRepository, TaskStatus

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Commands"),
]


@pytest.fixture()
def cli_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("TASKPLANE_CRON_ROOT", str(tmp_path / "cron"))
    monkeypatch.setenv("TASKPLANE_WORLD_ROOT", str(tmp_path / "world"))
    return tmp_path / "cli.db"


def _invoke(db_path: Path, *args: str) -> Result:
    group, *rest = args
    if group in {"task", "cron"}:
        command, *tail = rest
        argv = [group, command, "--db-path", str(db_path), *tail]
    else:
        argv = [group, "--db-path", str(db_path), *rest]
    return CliRunner().invoke(taskplane, argv)


def _first_value(result: Result) -> str:
    assert result.exit_code == 0, result.output
    return result.output.splitlines()[0].split(": ", 1)[1]


def test_task_add_list_and_show(cli_db: Path) -> None:
    added = _invoke(cli_db, "task", "add", "Draft announcement", "--priority", "high")
    task_id = _first_value(added)

    listed = _invoke(cli_db, "task", "list")
    shown = _invoke(cli_db, "task", "show", task_id[:8])

    assert "priority=high status=pending" in added.output
    assert listed.exit_code == 0
    assert listed.output.splitlines()[0] == "Tasks: 1"
    assert "title=Draft announcement" in listed.output
    assert shown.exit_code == 0
    lines = shown.output.splitlines()
    assert lines[0] == f"Task: {task_id}"
    assert "Status: pending" in lines
    assert "Created by: human" in lines
    assert "Events: 1" in lines


def test_task_add_rejects_blank_title(cli_db: Path) -> None:
    result = _invoke(cli_db, "task", "add", "   ")

    assert result.exit_code == 1
    assert "must not be empty" in result.output


def test_task_show_unknown_id(cli_db: Path) -> None:
    result = _invoke(cli_db, "task", "show", "nope")

    assert result.exit_code == 1
    assert "Task not found: nope" in result.output


def test_task_revise_only_finished_tasks(cli_db: Path) -> None:
    task_id = _first_value(_invoke(cli_db, "task", "add", "Write post"))

    refused = _invoke(cli_db, "task", "revise", task_id, "shorter please")
    assert refused.exit_code == 1
    assert "is pending" in refused.output

    repository = TaskRepository(cli_db)
    try:
        repository.update_status(task_id=task_id, status=TaskStatus.COMPLETED)
    finally:
        repository.close()

    revised = _invoke(cli_db, "task", "revise", task_id[:8], "shorter please")
    status = _invoke(cli_db, "status")

    assert revised.exit_code == 0, revised.output
    assert revised.output.strip() == f"Task revised: {task_id} revision=1"
    assert "  assigned: 1" in status.output.splitlines()
    assert f"  task_added {task_id[:8]}" in status.output.splitlines()


def test_signal_commands_and_status(cli_db: Path) -> None:
    task_id = _first_value(_invoke(cli_db, "task", "add", "Research"))

    freeze = _invoke(cli_db, "freeze", "--task", task_id[:8])
    resume = _invoke(cli_db, "resume")
    rest = _invoke(cli_db, "rest")
    day_end = _invoke(cli_db, "day-end")
    status = _invoke(cli_db, "status")

    assert freeze.output.strip() == f"Signal queued: freeze ({task_id})"
    assert resume.output.strip() == "Signal queued: resume (global)"
    assert rest.output.strip() == "Signal queued: rest_start (global)"
    assert day_end.output.strip() == "Signal queued: day_end (global)"
    assert status.exit_code == 0
    assert status.output.splitlines() == [
        "Tasks: 1",
        "  pending: 1",
        "Pending signals: 5",
        f"  task_added {task_id[:8]}",
        f"  freeze {task_id[:8]}",
        "  resume global",
        "  rest_start global",
        "  day_end global",
        "Cron jobs: 0 (0 enabled)",
    ]


def test_cron_add_run_history_and_remove(cli_db: Path) -> None:
    added = _invoke(
        cli_db,
        "cron",
        "add",
        "digest",
        "--every",
        "15m",
        "--title",
        "Morning digest",
    )
    job_id = _first_value(added)

    listed = _invoke(cli_db, "cron", "list")
    run = _invoke(cli_db, "cron", "run", job_id[:8])
    history = _invoke(cli_db, "cron", "history", job_id[:8])
    tasks = _invoke(cli_db, "task", "list")

    assert "[every 900s] runtime=task enabled=yes" in added.output
    assert listed.output.splitlines()[0] == "Cron jobs: 1"
    assert run.exit_code == 0, run.output
    assert run.output.splitlines()[0] == "Cron run #1: ok"
    assert run.output.splitlines()[1].startswith("  task=")
    assert history.output.splitlines()[0] == "Cron runs: 1"
    assert " digest ok " in history.output
    assert " manual " in history.output
    assert "title=Morning digest" in tasks.output

    disabled = _invoke(cli_db, "cron", "disable", job_id)
    assert disabled.output.strip() == f"Cron job disabled: {job_id}"
    assert "Cron jobs: 1 (0 enabled)" in _invoke(cli_db, "status").output

    removed = _invoke(cli_db, "cron", "remove", job_id)
    assert removed.output.strip() == f"Cron job removed: {job_id}"
    missing = _invoke(cli_db, "cron", "remove", job_id)
    assert missing.exit_code == 1
    assert "Cron job not found" in missing.output


def test_cron_add_inline_prepares_job_folder(cli_db: Path, tmp_path: Path) -> None:
    added = _invoke(
        cli_db,
        "cron",
        "add",
        "cleanup",
        "--cron",
        "0 3 * * *",
        "--tz",
        "UTC",
        "--runtime",
        "inline",
        "--script",
        "cleanup.sh",
    )
    job_id = _first_value(added)

    job_dir = tmp_path / "cron" / job_id
    assert job_dir.is_dir()
    assert f"  script: {job_dir / 'cleanup.sh'}" in added.output.splitlines()
    assert "[cron '0 3 * * *' UTC] runtime=inline" in added.output


@pytest.mark.parametrize(
    ("args", "message"),
    [
        (["--every", "5m", "--cron", "0 9 * * *"], "Pass exactly one of"),
        ([], "Pass exactly one of"),
        (["--every", "soon"], "Invalid duration"),
        (["--cron", "0 9 * *"], "Invalid cron expression"),
        (["--at", "tomorrow"], "Invalid isoformat"),
    ],
)
def test_cron_add_rejects_bad_schedules(cli_db: Path, args: list[str], message: str) -> None:
    result = _invoke(cli_db, "cron", "add", "bad", *args)

    assert result.exit_code == 1
    assert message in result.output


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("250ms", 250),
        ("30s", 30_000),
        ("15m", 900_000),
        ("1.5h", 5_400_000),
        ("1d", 86_400_000),
        ("45", 45_000),
    ],
)
def test_parse_duration_ms(raw: str, expected: int) -> None:
    assert parse_duration_ms(raw) == expected


def test_parse_duration_ms_rejects_zero_and_garbage() -> None:
    with pytest.raises(ValueError, match="Interval must be > 0"):
        parse_duration_ms("0s")
    with pytest.raises(ValueError, match="Invalid duration"):
        parse_duration_ms("every day")
