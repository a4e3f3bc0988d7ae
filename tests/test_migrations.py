from pathlib import Path

import allure
from sqlalchemy import text

from taskplane.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('tasks', 'task_events', 'signals', 'cron_jobs', 'cron_runs')
                ORDER BY name
                """,
            ),
        ).fetchall()
    repository.close()

    assert version == "20261019_0001"
    assert [row[0] for row in tables] == [
        "cron_jobs",
        "cron_runs",
        "signals",
        "task_events",
        "tasks",
    ]


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    assert repository.list_tasks() == []
    repository.close()
