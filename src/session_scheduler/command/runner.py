"""Async runner for the scheduled external command."""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from .utils import command_environment

logger = logging.getLogger(__name__)

EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127


class CommandRunnerError(RuntimeError):
    """Base class for command runner errors."""


class CommandNotFoundError(CommandRunnerError):
    """Raised when the command executable cannot be located."""


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of one command invocation."""

    args: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    duration: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0

    @property
    def failure_reason(self) -> str | None:
        if self.ok:
            return None
        if self.timed_out:
            return f"timed out after {self.duration:.1f}s"
        detail = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else ""
        if detail:
            return f"exit code {self.returncode}: {detail}"
        return f"exit code {self.returncode}"


class CommandRunnerProtocol(Protocol):
    """What the scheduler engine needs from a command runner."""

    async def invoke(self, command: str, *, timeout: float) -> CommandResult:
        ...


def split_command(command: str) -> list[str]:
    """Split a shell-style command line into argv, rejecting empty input."""

    argv = shlex.split(command)
    if not argv:
        raise CommandRunnerError("Command line is empty")
    return argv


class CommandRunner:
    """Execute the scheduled command asynchronously with a bounded timeout."""

    def __init__(self, executable_dirs: Sequence[Path] | None = None) -> None:
        self._search_path = (
            None if not executable_dirs else ":".join(str(path) for path in executable_dirs)
        )

    def resolve_executable(self, command: str) -> Path:
        program = split_command(command)[0]
        candidate = Path(program)
        if candidate.parent != Path("."):
            if candidate.exists() and candidate.is_file():
                return candidate
            raise CommandNotFoundError(f"Command executable not found at {candidate}")

        binary = shutil.which(program, path=self._search_path)
        if binary is None:
            raise CommandNotFoundError(f"Command '{program}' not found on PATH")
        return Path(binary)

    async def invoke(self, command: str, *, timeout: float) -> CommandResult:
        argv = split_command(command)
        executable = self.resolve_executable(command)
        cmd = [str(executable), *argv[1:]]

        started = time.monotonic()
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=command_environment(),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            await _terminate(process)
            duration = time.monotonic() - started
            logger.warning(
                "Command timed out",
                extra={"command": cmd[0], "timeout": timeout, "duration": duration},
            )
            return CommandResult(
                args=tuple(cmd),
                returncode=process.returncode,
                stdout="",
                stderr="",
                duration=duration,
                timed_out=True,
            )
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        return CommandResult(
            args=tuple(cmd),
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            duration=time.monotonic() - started,
        )


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


class FakeCommandRunner:
    """Test double that replays scripted outcomes.

    Each scripted item is either a ``CommandResult`` or an exception instance to
    raise. When ``gate`` is provided every invocation waits on it first, which is
    how tests model a hung command.
    """

    def __init__(
        self,
        responses: Iterable[CommandResult | BaseException] | None = None,
        *,
        default: CommandResult | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._default = default
        self._gate = gate
        self._invocations: list[tuple[str, float]] = []

    async def invoke(self, command: str, *, timeout: float) -> CommandResult:
        self._invocations.append((command, timeout))
        if self._gate is not None:
            await self._gate.wait()
        if self._responses:
            response = self._responses.pop(0)
        elif self._default is not None:
            response = self._default
        else:
            response = CommandResult(args=(command,), returncode=0, stdout="", stderr="")
        if isinstance(response, BaseException):
            raise response
        return response

    @property
    def invocations(self) -> list[tuple[str, float]]:
        return self._invocations


def serialize_result(result: CommandResult) -> str:
    """Serialize a command result for logs and diagnostics."""

    return json.dumps(
        {
            "args": list(result.args),
            "returncode": result.returncode,
            "timed_out": result.timed_out,
            "duration": round(result.duration, 3),
            "stdout": result.stdout[:2000],
            "stderr": result.stderr[:2000],
        }
    )


__all__ = [
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "CommandRunnerError",
    "CommandRunnerProtocol",
    "EXIT_NOT_EXECUTABLE",
    "EXIT_NOT_FOUND",
    "FakeCommandRunner",
    "serialize_result",
    "split_command",
]
