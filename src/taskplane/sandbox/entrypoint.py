"""In-container supervisor for one sandboxed task.

Runs inside the task image, so it depends on the standard library only.
It drives the agent command, honours ``pause.signal`` by terminating the
agent and waiting for operator replies in the inbox, and always leaves a
terminal progress snapshot behind.
"""

from __future__ import annotations

import json
import os
import shlex
import subprocess
import sys
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import IO
from urllib.parse import unquote

PAUSE_POLL_SECONDS = 1.0
INBOX_POLL_SECONDS = 2.0
TERMINATE_GRACE_SECONDS = 5.0
OUTPUT_PREFIX = "[leader] "


def now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TaskFiles:
    def __init__(self, workdir: Path) -> None:
        self.progress = workdir / "progress.json"
        self.inbox = workdir / "inbox.json"
        self.pause_signal = workdir / "pause.signal"


def read_json(path: Path) -> dict | None:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def write_json(path: Path, payload: dict) -> None:
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
    os.replace(tmp_path, path)


def update_progress(  # noqa: PLR0913
    files: TaskFiles,
    *,
    task_id: str,
    leader_id: str,
    status: str,
    summary: str | None = None,
    question: str | None = None,
    checkpoint: str | None = None,
    session_id: str | None = None,
    artifact_ref: str | None = None,
) -> None:
    """Merge a status change into progress.json without dropping checkpoints."""

    current = read_json(files.progress) or {}
    checkpoints = current.get("checkpoints")
    if not isinstance(checkpoints, list):
        checkpoints = []
    if checkpoint:
        entry: dict = {"at": now_iso()}
        if session_id:
            entry["sessionId"] = session_id
        entry["description"] = checkpoint
        checkpoints.append(entry)
    payload = dict(current)
    payload.update(
        {
            "taskId": task_id,
            "leaderId": leader_id or current.get("leaderId", ""),
            "reportedAt": now_iso(),
            "status": status,
            "summary": summary if summary is not None else current.get("summary", ""),
            "percentComplete": current.get("percentComplete", 0),
            "checkpoints": checkpoints,
        },
    )
    if status == "completed":
        payload["percentComplete"] = 100
    if question is not None and status == "waiting_for_human":
        payload["question"] = question
    else:
        payload.pop("question", None)
    if artifact_ref:
        payload["artifactRef"] = artifact_ref
    write_json(files.progress, payload)


def drain_inbox(files: TaskFiles) -> list[str]:
    payload = read_json(files.inbox) or {}
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        return []
    write_json(files.inbox, {"messages": [], "updatedAt": now_iso()})
    return [str(message) for message in messages]


def build_prompt(env: dict[str, str], files: TaskFiles, messages: list[str]) -> str:
    title = unquote(env.get("TASK_TITLE", ""))
    description = unquote(env.get("TASK_DESCRIPTION", ""))
    revision_note = unquote(env.get("TASK_REVISION_NOTE", ""))
    lines = [f"Task {env['TASK_ID']}: {title}"]
    if description:
        lines += ["", description]
    if revision_note:
        lines += ["", "Operator feedback on the previous run:", revision_note]
    if env.get("SANDBOX_ARTIFACT_REF"):
        lines += ["", f"Push deliverables to {env['SANDBOX_ARTIFACT_REF']}."]
    if messages:
        lines += ["", "Operator messages:", *[f"- {message}" for message in messages]]
    lines += [
        "",
        f"Rewrite {files.progress} as you work (status, summary, percentComplete, checkpoints).",
        f"Read {files.inbox} at safe boundaries. When you need a human decision, set status "
        "waiting_for_human with a question and stop.",
        "When done set status completed.",
    ]
    return "\n".join(lines)


def continuation_prompt(messages: list[str]) -> str:
    lines = ["The operator replied while you were paused:"]
    lines += [f"- {message}" for message in messages]
    lines += ["", "Continue the task from your last checkpoint, taking this into account."]
    return "\n".join(lines)


def render_command(
    template: str,
    *,
    prompt: str,
    session_id: str | None,
    tools_args: str,
) -> list[str]:
    resume_args = f"--resume {shlex.quote(session_id)}" if session_id else ""
    rendered = template.format(
        prompt=shlex.quote(prompt),
        resume_args=resume_args,
        tools_args=tools_args,
    )
    return shlex.split(rendered)


class AgentRun:
    """One agent subprocess with prefixed output streaming and session capture."""

    def __init__(self, argv: list[str], env: dict[str, str], workdir: Path) -> None:
        self.process = subprocess.Popen(  # noqa: S603
            argv,
            cwd=str(workdir),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
        if self.process.stdout is None:
            raise RuntimeError("agent stdout is not captured")
        self.output_seen = False
        self.session_id: str | None = None
        self._reader = threading.Thread(
            target=self._pump,
            args=(self.process.stdout,),
            daemon=True,
        )
        self._reader.start()

    def _pump(self, stdout: IO[str]) -> None:
        for line in stdout:
            if line.strip():
                self.output_seen = True
            session_id = _session_from_line(line)
            if session_id:
                self.session_id = session_id
            sys.stdout.write(OUTPUT_PREFIX + line)
            sys.stdout.flush()

    def poll(self) -> int | None:
        return self.process.poll()

    def finish(self) -> int:
        code = self.process.wait()
        self._reader.join(timeout=5)
        return code

    def terminate(self) -> None:
        if self.process.poll() is not None:
            return
        self.process.terminate()
        try:
            self.process.wait(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            self.process.kill()
            self.process.wait()


def _session_from_line(line: str) -> str | None:
    try:
        payload = json.loads(line)
    except ValueError:
        return None
    if isinstance(payload, dict) and payload.get("session_id"):
        return str(payload["session_id"])
    return None


def wait_for_operator(files: TaskFiles) -> list[str]:
    while True:
        messages = drain_inbox(files)
        if messages:
            return messages
        time.sleep(INBOX_POLL_SECONDS)


class Supervisor:
    def __init__(self, env: dict[str, str]) -> None:
        self.env = env
        self.task_id = env["TASK_ID"]
        self.leader_id = env.get("LEADER_ID", "")
        self.workdir = Path(env.get("TASK_WORKDIR") or os.getcwd())
        self.files = TaskFiles(self.workdir)
        self.template = env.get("AGENT_COMMAND", "")
        self.tools_enabled = env.get("SANDBOX_TOOLS_ENABLED", "1") == "1"
        self.session_id = env.get("SESSION_ID") or None
        self.artifact_ref = env.get("SANDBOX_ARTIFACT_REF") or None

    def progress(self, status: str, **kwargs: str | None) -> None:
        update_progress(
            self.files,
            task_id=self.task_id,
            leader_id=self.leader_id,
            status=status,
            artifact_ref=self.artifact_ref,
            **kwargs,
        )

    def run(self) -> int:
        if "{prompt}" not in self.template:
            self.progress("failed", summary="AGENT_COMMAND must include {prompt}")
            return 1
        self.progress("in-progress", checkpoint="sandbox started", session_id=self.session_id)
        prompt = build_prompt(self.env, self.files, drain_inbox(self.files))
        retried_without_tools = False

        while True:
            exit_code, paused_message, output_seen = self._run_agent(prompt)
            if paused_message is not None:
                stale = drain_inbox(self.files)
                if stale:
                    print(f"discarding {len(stale)} inbox message(s) queued before the pause")
                self.progress(
                    "waiting_for_human",
                    question=paused_message or "The operator asked to pause. What next?",
                    checkpoint="paused for operator alignment",
                    session_id=self.session_id,
                )
                prompt = continuation_prompt(wait_for_operator(self.files))
                self.progress("in-progress", checkpoint="resumed after operator reply")
                continue
            silent_success = exit_code == 0 and not output_seen
            if silent_success and self.tools_enabled and not retried_without_tools:
                print("agent produced no output with tools enabled; retrying without tools")
                retried_without_tools = True
                self.tools_enabled = False
                continue
            break

        if exit_code != 0:
            self.progress("failed", summary=f"agent exited with code {exit_code}")
            return 1
        current = read_json(self.files.progress) or {}
        if current.get("status") == "in-progress":
            self.progress(
                "completed",
                checkpoint="agent finished",
                session_id=self.session_id,
            )
        return 0

    def _run_agent(self, prompt: str) -> tuple[int, str | None, bool]:
        argv = render_command(
            self.template,
            prompt=prompt,
            session_id=self.session_id,
            tools_args=self.env.get("AGENT_TOOLS_ARGS", "") if self.tools_enabled else "",
        )
        child_env = dict(os.environ)
        child_env["SANDBOX_TOOLS_ENABLED"] = "1" if self.tools_enabled else "0"
        run = AgentRun(argv, child_env, self.workdir)
        recorded_session: str | None = self.session_id
        while run.poll() is None:
            if run.session_id and run.session_id != recorded_session:
                recorded_session = run.session_id
                self.session_id = run.session_id
                self.progress(
                    "in-progress",
                    checkpoint="session started",
                    session_id=run.session_id,
                )
            if self.files.pause_signal.exists():
                signal = read_json(self.files.pause_signal) or {}
                run.terminate()
                run.finish()
                self.files.pause_signal.unlink(missing_ok=True)
                self.session_id = run.session_id or self.session_id
                return 0, str(signal.get("message", "")), run.output_seen
            time.sleep(PAUSE_POLL_SECONDS)
        exit_code = run.finish()
        self.session_id = run.session_id or self.session_id
        return exit_code, None, run.output_seen


def main() -> int:
    return Supervisor(dict(os.environ)).run()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
