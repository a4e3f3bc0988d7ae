from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from taskplane.runtime.sync import (
    Checkpoint,
    ProgressSnapshot,
    ProgressStatus,
    TaskPaths,
    append_inbox,
    clear_pause_signal,
    drain_inbox,
    read_inbox,
    read_pause_signal,
    read_progress,
    write_pause_signal,
    write_progress,
)

pytestmark = [
    allure.epic("Execution Runtime"),
    allure.feature("Sync Files"),
]


def test_task_paths_layout(tmp_path: Path) -> None:
    paths = TaskPaths(tmp_path, "task-1")

    assert paths.task_dir == tmp_path / "tasks" / "task-1"
    assert paths.progress.name == "progress.json"
    assert paths.inbox.name == "inbox.json"
    assert paths.pause_signal.name == "pause.signal"


def test_progress_round_trip_keeps_unknown_keys(tmp_path: Path) -> None:
    paths = TaskPaths(tmp_path, "task-1")
    paths.task_dir.mkdir(parents=True)
    paths.progress.write_text(
        json.dumps(
            {
                "taskId": "task-1",
                "leaderId": "aria",
                "status": "in-progress",
                "summary": "drafting",
                "percentComplete": 140,
                "checkpoints": [
                    {"at": "2026-10-19T10:00:00.000Z", "sessionId": "s-1", "description": "a"},
                    {"at": "2026-10-19T10:05:00.000Z", "description": "b"},
                ],
                "sandboxRepoUrl": "https://example.com/repo",
                "customField": {"nested": True},
            },
        ),
        "utf-8",
    )

    snapshot = read_progress(paths.progress)

    assert snapshot is not None
    assert snapshot.percent_complete == 100
    assert snapshot.artifact_ref == "https://example.com/repo"
    assert snapshot.latest_session_id == "s-1"
    assert snapshot.extra == {"customField": {"nested": True}}

    write_progress(paths, snapshot)
    rewritten = json.loads(paths.progress.read_text("utf-8"))
    assert rewritten["customField"] == {"nested": True}
    assert rewritten["artifactRef"] == "https://example.com/repo"
    assert "question" not in rewritten


def test_question_is_written_only_while_waiting_for_human() -> None:
    waiting = ProgressSnapshot(
        task_id="t",
        status=ProgressStatus.WAITING_FOR_HUMAN,
        question="Use tone A or B?",
    )
    working = ProgressSnapshot(task_id="t", status=ProgressStatus.IN_PROGRESS, question="stale")

    assert waiting.to_dict()["question"] == "Use tone A or B?"
    assert "question" not in working.to_dict()
    assert not waiting.is_terminal
    assert ProgressSnapshot(task_id="t", status=ProgressStatus.FAILED).is_terminal


def test_checkpoint_serializes_session_id_when_present() -> None:
    assert Checkpoint(at="x", description="d", session_id="s").to_dict() == {
        "at": "x",
        "sessionId": "s",
        "description": "d",
    }


@pytest.mark.parametrize(
    "content",
    ["", "{not json", "[]", '{"status": "in-progress"}', '{"taskId": "t", "status": "bogus"}'],
)
def test_read_progress_treats_invalid_content_as_no_update(tmp_path: Path, content: str) -> None:
    path = tmp_path / "progress.json"
    path.write_text(content, "utf-8")

    assert read_progress(path) is None


def test_read_progress_missing_file(tmp_path: Path) -> None:
    assert read_progress(tmp_path / "missing.json") is None


def test_inbox_append_and_drain_is_at_most_once(tmp_path: Path) -> None:
    paths = TaskPaths(tmp_path, "task-1")

    append_inbox(paths, "first")
    assert append_inbox(paths, "second") == ["first", "second"]

    assert drain_inbox(paths) == ["first", "second"]
    assert drain_inbox(paths) == []
    assert json.loads(paths.inbox.read_text("utf-8"))["messages"] == []


def test_unreadable_inbox_is_treated_as_empty(tmp_path: Path) -> None:
    paths = TaskPaths(tmp_path, "task-1")
    paths.task_dir.mkdir(parents=True)
    paths.inbox.write_text("{broken", "utf-8")

    assert read_inbox(paths) == []
    assert append_inbox(paths, "fresh") == ["fresh"]


def test_pause_signal_lifecycle(tmp_path: Path) -> None:
    paths = TaskPaths(tmp_path, "task-1")
    assert read_pause_signal(paths) is None

    written = write_pause_signal(paths, "Hold on, reviewing.")
    signal = read_pause_signal(paths)
    assert signal is not None
    assert signal.message == "Hold on, reviewing."
    assert signal.requested_at == written.requested_at

    assert clear_pause_signal(paths)
    assert not clear_pause_signal(paths)
    assert read_pause_signal(paths) is None


def test_unreadable_pause_signal_still_means_stop(tmp_path: Path) -> None:
    paths = TaskPaths(tmp_path, "task-1")
    paths.task_dir.mkdir(parents=True)
    paths.pause_signal.write_text("garbage", "utf-8")

    signal = read_pause_signal(paths)

    assert signal is not None
    assert signal.message == ""
