"""Subprocess-based execution collaborator for stream-json CLI agents."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
from dataclasses import dataclass
from typing import Any

from taskplane.runtime.base import ExecutionError
from taskplane.runtime.execution import (
    AssistantText,
    Checkpointed,
    ChildLimitError,
    ExecutionContext,
    ExecutionRequest,
    SessionStarted,
    TurnCompleted,
)
from taskplane.runtime.failure_classifier import classify_failure

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 4_000
_TERMINATE_GRACE_SECONDS = 2.0
_STREAM_LIMIT_BYTES = 16 * 1024 * 1024
SUBAGENT_TOOLS = frozenset({"Task", "Agent"})


@dataclass(frozen=True, slots=True)
class SubagentStarted:
    tool_use_id: str
    description: str = ""


@dataclass(frozen=True, slots=True)
class SubagentText:
    tool_use_id: str
    text: str


@dataclass(frozen=True, slots=True)
class SubagentFinished:
    tool_use_id: str
    ok: bool
    output: str = ""


class SubagentTracker:
    """Mirror the agent's sub-agent calls as child contexts of the turn's root context.

    Each child resolves when the matching tool result arrives, so its outcome
    reaches the root channel as a :class:`ChildResult`.
    """

    def __init__(self, context: ExecutionContext) -> None:
        self.context = context
        self._pending: dict[str, asyncio.Future[str]] = {}
        self._texts: dict[str, list[str]] = {}

    def handle(self, message: object) -> bool:
        """Consume sub-agent messages; returns ``False`` for anything else."""

        if isinstance(message, SubagentStarted):
            self._started(message)
        elif isinstance(message, SubagentText):
            if message.tool_use_id in self._texts:
                self._texts[message.tool_use_id].append(message.text)
        elif isinstance(message, SubagentFinished):
            self._finished(message)
        else:
            return False
        return True

    def abandon(self, reason: str | None) -> None:
        """Settle children whose result never arrived; ``None`` cancels them."""

        for future in self._pending.values():
            if future.done():
                continue
            if reason is None:
                future.cancel()
            else:
                future.set_exception(ExecutionError(reason, transient=False))
        self._pending.clear()
        self._texts.clear()

    def _started(self, message: SubagentStarted) -> None:
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()

        async def work(_: ExecutionContext) -> str:
            return await future

        try:
            self.context.spawn_child(message.tool_use_id, work)
        except ChildLimitError as error:
            logger.warning("Sub-agent %s not tracked: %s", message.tool_use_id, error)
            return
        logger.debug("Sub-agent %s started: %s", message.tool_use_id, message.description)
        self._pending[message.tool_use_id] = future
        self._texts[message.tool_use_id] = []

    def _finished(self, message: SubagentFinished) -> None:
        future = self._pending.pop(message.tool_use_id, None)
        texts = self._texts.pop(message.tool_use_id, [])
        if future is None or future.done():
            return
        output = message.output or "\n".join(texts)
        if message.ok:
            future.set_result(output)
        else:
            future.set_exception(ExecutionError(output or "sub-agent failed", transient=False))


class CliExecutionCollaborator:
    """Run one agent CLI turn per request and translate its output into typed messages.

    The command template must contain ``{prompt}`` and may contain
    ``{resume_args}``, rendered as ``--resume <session>`` when a session exists.
    """

    def __init__(
        self,
        *,
        command_template: str,
        env: dict[str, str] | None = None,
        resume_flag: str = "--resume",
    ) -> None:
        self.command_template = command_template
        self.env = env or {}
        self.resume_flag = resume_flag

    async def run(self, context: ExecutionContext, request: ExecutionRequest) -> TurnCompleted:
        argv = build_run_args(
            command_template=self.command_template,
            prompt=request.prompt,
            session_id=request.session_id,
            resume_flag=self.resume_flag,
        )
        env = os.environ.copy()
        env.update(self.env)
        env["TASK_ID"] = request.task_id
        request.workdir.mkdir(parents=True, exist_ok=True)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(request.workdir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as error:
            raise ExecutionError(f"Agent command not found: {argv[0]}", transient=False) from error
        except OSError as error:
            raise ExecutionError(
                f"Agent command failed to start: {error}",
                transient=True,
            ) from error

        stdout = process.stdout
        if stdout is None:
            await terminate_process(process)
            raise ExecutionError("Agent stdout is not captured.", transient=False)
        stderr_task = asyncio.create_task(_read_all(process.stderr))
        subagents = SubagentTracker(context)
        session_id = request.session_id
        final: TurnCompleted | None = None
        text_parts: list[str] = []
        try:
            async for raw_line in stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                for message in parse_stream_line(line, session_id=session_id):
                    if subagents.handle(message):
                        continue
                    if isinstance(message, SessionStarted):
                        session_id = message.session_id
                    elif isinstance(message, AssistantText):
                        text_parts.append(message.text)
                    if isinstance(message, TurnCompleted):
                        final = message
                        continue
                    await context.emit(message)
            exit_code = await process.wait()
        except asyncio.CancelledError:
            subagents.abandon(None)
            await terminate_process(process)
            stderr_task.cancel()
            raise
        subagents.abandon("agent turn ended before the sub-agent reported back")
        stderr = await stderr_task

        if exit_code != 0:
            classification = classify_failure(text=stderr, exit_code=exit_code)
            raise ExecutionError(
                f"Agent exited with code {exit_code}",
                transient=classification.transient,
                diagnostics=stderr[-_STDERR_TAIL_CHARS:],
            )
        if final is not None:
            return TurnCompleted(
                ok=final.ok,
                output=final.output or "\n".join(text_parts),
                session_id=final.session_id or session_id,
            )
        return TurnCompleted(ok=True, output="\n".join(text_parts), session_id=session_id)


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    session_id: str | None,
    resume_flag: str = "--resume",
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutionError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise ExecutionError("Agent command template must include {prompt}.", transient=False)

    resume_args = f"{resume_flag} {shlex.quote(session_id)}" if session_id else ""
    try:
        rendered = stripped.format(prompt=shlex.quote(prompt), resume_args=resume_args)
    except KeyError as error:
        raise ExecutionError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutionError("Agent command template rendered empty command.", transient=False)
    return argv


def parse_stream_line(line: str, *, session_id: str | None = None) -> list[Any]:
    """Translate one stream-json line into execution messages.

    Non-JSON lines are passed through as plain assistant text.
    """

    try:
        payload = json.loads(line)
    except ValueError:
        return [AssistantText(text=line)]
    if not isinstance(payload, dict):
        return [AssistantText(text=line)]

    event_type = payload.get("type")
    line_session = payload.get("session_id") or session_id
    if event_type == "system" and payload.get("subtype") == "init" and line_session:
        return [SessionStarted(session_id=str(line_session))]
    parent_tool = payload.get("parent_tool_use_id")
    if event_type == "assistant":
        text = _assistant_text(payload)
        if parent_tool:
            return [SubagentText(tool_use_id=str(parent_tool), text=text)] if text else []
        messages: list[Any] = []
        if text:
            messages.append(AssistantText(text=text))
        messages.extend(_subagent_calls(payload))
        if line_session:
            messages.append(
                Checkpointed(session_id=str(line_session), description="assistant turn"),
            )
        return messages
    if event_type == "user" and not parent_tool:
        return _tool_results(payload)
    if event_type == "result":
        return [
            TurnCompleted(
                ok=not bool(payload.get("is_error")),
                output=str(payload.get("result") or ""),
                session_id=str(line_session) if line_session else None,
            ),
        ]
    return []


def _assistant_text(payload: dict[str, Any]) -> str:
    return "".join(
        str(block.get("text", ""))
        for block in _content_blocks(payload)
        if block.get("type") == "text"
    )


def _content_blocks(payload: dict[str, Any]) -> list[dict[str, Any]]:
    message = payload.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _subagent_calls(payload: dict[str, Any]) -> list[SubagentStarted]:
    calls: list[SubagentStarted] = []
    for block in _content_blocks(payload):
        if block.get("type") != "tool_use" or block.get("name") not in SUBAGENT_TOOLS:
            continue
        tool_input = block.get("input")
        description = tool_input.get("description", "") if isinstance(tool_input, dict) else ""
        calls.append(SubagentStarted(tool_use_id=str(block.get("id")), description=description))
    return calls


def _tool_results(payload: dict[str, Any]) -> list[SubagentFinished]:
    results: list[SubagentFinished] = []
    for block in _content_blocks(payload):
        if block.get("type") != "tool_result" or not block.get("tool_use_id"):
            continue
        content = block.get("content")
        if isinstance(content, list):
            output = "".join(
                str(part.get("text", ""))
                for part in content
                if isinstance(part, dict) and part.get("type") == "text"
            )
        else:
            output = str(content or "")
        results.append(
            SubagentFinished(
                tool_use_id=str(block["tool_use_id"]),
                ok=not bool(block.get("is_error")),
                output=output,
            ),
        )
    return results


async def _read_all(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    data = await stream.read()
    return data.decode("utf-8", errors="replace")


async def terminate_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE_SECONDS)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
    logger.info("Agent process %s terminated", process.pid)
