"""Thin async wrapper around the ``docker`` CLI."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class DockerCommandError(RuntimeError):
    """A docker CLI invocation failed."""

    def __init__(self, message: str, *, exit_code: int, stderr: str) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


@dataclass(frozen=True, slots=True)
class Mount:
    host: Path
    container: str
    read_only: bool = False
    is_file: bool = False

    def to_arg(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.host.resolve()}:{self.container}{suffix}"


@dataclass(slots=True)
class DockerResult:
    exit_code: int
    stdout: str
    stderr: str


class DockerClient(Protocol):
    """Container operations the sandboxed adapter relies on."""

    async def run_detached(  # noqa: PLR0913
        self,
        *,
        name: str,
        image: str,
        mounts: list[Mount],
        env: dict[str, str],
        command: list[str],
        workdir: str | None = None,
    ) -> str: ...

    async def wait(self, container: str) -> int: ...

    async def logs(self, container: str, *, tail: int = 200) -> str: ...

    async def pause(self, container: str) -> None: ...

    async def unpause(self, container: str) -> None: ...

    async def stop(self, container: str, *, timeout_seconds: int = 10) -> None: ...

    async def remove(self, container: str) -> None: ...


class DockerCli:
    """Docker client implemented with ``asyncio.create_subprocess_exec``."""

    def __init__(self, binary: str = "docker") -> None:
        self.binary = binary

    async def run_detached(  # noqa: PLR0913
        self,
        *,
        name: str,
        image: str,
        mounts: list[Mount],
        env: dict[str, str],
        command: list[str],
        workdir: str | None = None,
    ) -> str:
        args = ["run", "-d", "--name", name]
        for mount in mounts:
            args += ["-v", mount.to_arg()]
        for key, value in env.items():
            args += ["-e", f"{key}={value}"]
        if workdir:
            args += ["-w", workdir]
        args += [image, *command]
        result = await self._exec(args)
        return result.stdout.strip()

    async def wait(self, container: str) -> int:
        result = await self._exec(["wait", container])
        try:
            return int(result.stdout.strip().splitlines()[-1])
        except (IndexError, ValueError) as error:
            raise DockerCommandError(
                f"Unexpected docker wait output: {result.stdout!r}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            ) from error

    async def logs(self, container: str, *, tail: int = 200) -> str:
        result = await self._exec(["logs", "--tail", str(tail), container])
        return "\n".join(part for part in (result.stdout, result.stderr) if part)

    async def pause(self, container: str) -> None:
        await self._exec(["pause", container])

    async def unpause(self, container: str) -> None:
        await self._exec(["unpause", container])

    async def stop(self, container: str, *, timeout_seconds: int = 10) -> None:
        await self._exec(["stop", "-t", str(timeout_seconds), container])

    async def remove(self, container: str) -> None:
        await self._exec(["rm", "-f", container])

    async def _exec(self, args: list[str]) -> DockerResult:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise DockerCommandError(
                f"docker binary not found: {self.binary}",
                exit_code=127,
                stderr=str(error),
            ) from error
        stdout, stderr = await process.communicate()
        result = DockerResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if result.exit_code != 0:
            raise DockerCommandError(
                f"docker {args[0]} failed with exit code {result.exit_code}: "
                f"{result.stderr.strip()[:500]}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        logger.debug("docker %s ok", args[0])
        return result
