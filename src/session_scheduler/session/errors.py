"""Error kinds, their fixed recovery policy, and failure classification."""

from __future__ import annotations

import errno
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from ..command.runner import (
    EXIT_NOT_EXECUTABLE,
    EXIT_NOT_FOUND,
    CommandNotFoundError,
    CommandResult,
    CommandRunnerError,
)


class ErrorSeverity(str, Enum):
    WARNING = "warning"
    RECOVERABLE = "recoverable"
    CRITICAL = "critical"


class ErrorKind(str, Enum):
    CONFIGURATION_INVALID = "configuration_invalid"
    COMMAND_NOT_FOUND = "command_not_found"
    COMMAND_EXECUTION_FAILED = "command_execution_failed"
    TIMING_PRECISION_LOST = "timing_precision_lost"
    BACKGROUND_TASK_FAILED = "background_task_failed"
    MEMORY_PRESSURE = "memory_pressure"
    PERSISTENCE_CORRUPTED = "persistence_corrupted"
    RECOVERY_FAILED = "recovery_failed"
    SYSTEM_RESOURCE_UNAVAILABLE = "system_resource_unavailable"

    @property
    def policy(self) -> "ErrorPolicy":
        return _POLICIES[self]

    @property
    def auto_recoverable(self) -> bool:
        return self.policy.auto_recoverable

    @property
    def severity(self) -> ErrorSeverity:
        return self.policy.severity


@dataclass(frozen=True, slots=True)
class ErrorPolicy:
    auto_recoverable: bool
    severity: ErrorSeverity
    max_retry_attempts: int
    retry_delay: float
    message: str
    suggestion_key: str


_POLICIES: dict[ErrorKind, ErrorPolicy] = {
    ErrorKind.CONFIGURATION_INVALID: ErrorPolicy(
        False, ErrorSeverity.CRITICAL, 0, 0.0,
        "Invalid configuration", "check_settings",
    ),
    ErrorKind.COMMAND_NOT_FOUND: ErrorPolicy(
        False, ErrorSeverity.CRITICAL, 0, 0.0,
        "Command executable not found", "install_command",
    ),
    ErrorKind.COMMAND_EXECUTION_FAILED: ErrorPolicy(
        True, ErrorSeverity.RECOVERABLE, 5, 30.0,
        "Command execution failed", "check_command_credentials",
    ),
    ErrorKind.TIMING_PRECISION_LOST: ErrorPolicy(
        True, ErrorSeverity.WARNING, 3, 10.0,
        "Timing precision lost", "reduce_system_load",
    ),
    ErrorKind.BACKGROUND_TASK_FAILED: ErrorPolicy(
        True, ErrorSeverity.RECOVERABLE, 3, 60.0,
        "Background task execution failed", "check_background_execution",
    ),
    ErrorKind.MEMORY_PRESSURE: ErrorPolicy(
        True, ErrorSeverity.WARNING, 1, 10.0,
        "System memory pressure detected", "free_memory",
    ),
    ErrorKind.PERSISTENCE_CORRUPTED: ErrorPolicy(
        False, ErrorSeverity.CRITICAL, 0, 0.0,
        "Session persistence data corrupted", "session_reset",
    ),
    ErrorKind.RECOVERY_FAILED: ErrorPolicy(
        False, ErrorSeverity.CRITICAL, 0, 0.0,
        "Recovery failed", "manual_intervention",
    ),
    ErrorKind.SYSTEM_RESOURCE_UNAVAILABLE: ErrorPolicy(
        False, ErrorSeverity.CRITICAL, 0, 0.0,
        "Required system resources unavailable", "check_system_resources",
    ),
}


class ErrorInfo(BaseModel):
    """A recorded error, as stored on the session and shown to observers."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    suggestion_key: str
    detail: str | None = None
    attempts: int | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_kind(
        cls,
        kind: ErrorKind,
        detail: str | None = None,
        *,
        attempts: int | None = None,
        occurred_at: datetime | None = None,
    ) -> "ErrorInfo":
        policy = kind.policy
        message = policy.message
        if kind is ErrorKind.RECOVERY_FAILED and attempts is not None:
            message = f"{message} after {attempts} attempts"
        elif detail:
            message = f"{message}: {detail}"
        payload: dict[str, object] = {
            "kind": kind,
            "message": message,
            "suggestion_key": policy.suggestion_key,
            "detail": detail,
            "attempts": attempts,
        }
        if occurred_at is not None:
            payload["occurred_at"] = occurred_at
        return cls(**payload)

    @property
    def severity(self) -> ErrorSeverity:
        return self.kind.severity

    @property
    def auto_recoverable(self) -> bool:
        return self.kind.auto_recoverable

    @property
    def is_critical(self) -> bool:
        return self.kind.severity is ErrorSeverity.CRITICAL


def classify_result(result: CommandResult) -> ErrorKind:
    """Map a failed command result onto an error kind."""

    if result.timed_out:
        return ErrorKind.COMMAND_EXECUTION_FAILED
    if result.returncode == EXIT_NOT_FOUND:
        return ErrorKind.COMMAND_NOT_FOUND
    if result.returncode == EXIT_NOT_EXECUTABLE:
        return ErrorKind.SYSTEM_RESOURCE_UNAVAILABLE
    if "permission denied" in result.stderr.lower():
        return ErrorKind.SYSTEM_RESOURCE_UNAVAILABLE
    return ErrorKind.COMMAND_EXECUTION_FAILED


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map an exception raised while invoking the command onto an error kind."""

    if isinstance(exc, (CommandNotFoundError, FileNotFoundError)):
        return ErrorKind.COMMAND_NOT_FOUND
    if isinstance(exc, CommandRunnerError):
        return ErrorKind.CONFIGURATION_INVALID
    if isinstance(exc, PermissionError):
        return ErrorKind.SYSTEM_RESOURCE_UNAVAILABLE
    if isinstance(exc, OSError):
        # ENOEXEC means the configured file exists but is not runnable
        if exc.errno == errno.ENOEXEC:
            return ErrorKind.CONFIGURATION_INVALID
        return ErrorKind.SYSTEM_RESOURCE_UNAVAILABLE
    if isinstance(exc, ValueError):
        return ErrorKind.CONFIGURATION_INVALID
    return ErrorKind.COMMAND_EXECUTION_FAILED


__all__ = [
    "ErrorInfo",
    "ErrorKind",
    "ErrorPolicy",
    "ErrorSeverity",
    "classify_exception",
    "classify_result",
]
