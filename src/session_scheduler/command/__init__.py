"""External command execution for scheduled sessions."""

from .runner import (
    CommandNotFoundError,
    CommandResult,
    CommandRunner,
    CommandRunnerError,
    CommandRunnerProtocol,
    FakeCommandRunner,
)

__all__ = [
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "CommandRunnerError",
    "CommandRunnerProtocol",
    "FakeCommandRunner",
]
