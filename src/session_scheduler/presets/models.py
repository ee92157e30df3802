"""Scheduler settings and named preset models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_SESSION_DURATION = 5 * 60 * 60.0
DEFAULT_COMMAND = "claude -p 'hello'"
LOW_POWER_TICK_FACTOR = 6


class SchedulerSettings(BaseModel):
    """Configuration snapshot consumed by the scheduler engine."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    session_duration: float = Field(
        default=DEFAULT_SESSION_DURATION,
        gt=0,
        description="Planned length of a session in seconds.",
    )
    tick_interval: float = Field(
        default=5.0,
        gt=0,
        description="Seconds between two ticks of the scheduling loop.",
    )
    execution_interval: float = Field(
        default=3600.0,
        gt=0,
        description="Elapsed seconds between two scheduled command invocations.",
    )
    command: str = Field(
        default=DEFAULT_COMMAND,
        description="Command line invoked at every execution boundary.",
    )
    command_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds a single invocation may run before it is killed.",
    )
    auto_restart: bool = Field(
        default=False,
        description="Start a fresh session shortly after one completes.",
    )
    max_retry_attempts: int = Field(
        default=3,
        ge=0,
        description="Upper bound on consecutive failed invocations before giving up.",
    )
    retry_delay: float = Field(
        default=30.0,
        gt=0,
        description="Fallback retry delay for error kinds without their own delay.",
    )
    adaptive_tick_when_low_power: bool = Field(
        default=True,
        description="Widen the tick interval while the host reports low power mode.",
    )

    @field_validator("command")
    @classmethod
    def _normalize_command(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Command must not be empty")
        return normalized

    def adapted_tick_interval(self, *, low_power: bool = False) -> float:
        if low_power and self.adaptive_tick_when_low_power:
            return self.tick_interval * LOW_POWER_TICK_FACTOR
        return self.tick_interval


class SchedulerPreset(BaseModel):
    """A named set of setting overrides loaded from YAML.

    Only the keys a preset names are applied. Everything else, including a
    configured command, is kept from the settings it is layered over.
    """

    id: str = Field(..., description="Unique identifier for the preset.")
    title: str = Field(..., description="Display title for the preset.")
    description: str = Field(default="", description="What the preset is meant for.")
    settings: dict[str, Any] = Field(
        default_factory=dict,
        description="Setting overrides applied when the preset is selected.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata for filtering or display.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Preset id must not be empty")
        return normalized

    @field_validator("settings")
    @classmethod
    def _known_settings(cls, value: dict[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(value) - set(SchedulerSettings.model_fields))
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(unknown)}")
        return value

    def apply_to(self, base: SchedulerSettings) -> SchedulerSettings:
        return SchedulerSettings.model_validate({**base.model_dump(), **self.settings})


__all__ = [
    "DEFAULT_COMMAND",
    "DEFAULT_SESSION_DURATION",
    "LOW_POWER_TICK_FACTOR",
    "SchedulerPreset",
    "SchedulerSettings",
]
