"""Configuration management for the session scheduler."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .presets import PresetLoader, SchedulerPreset, SchedulerSettings


class SchedulerAppSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    command: str | None = Field(default=None, validation_alias="SCHEDULER_COMMAND")
    state_path: Path = Field(
        default=Path("./storage/session.json"), validation_alias="SCHEDULER_STATE_PATH"
    )
    # NoDecode: the env value is a path list, not JSON
    preset_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("presets"),), validation_alias="SCHEDULER_PRESET_PATHS"
    )
    preset: str | None = Field(default=None, validation_alias="SCHEDULER_PRESET")
    log_level: str = Field(default="INFO", validation_alias="SCHEDULER_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "SCHEDULER_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("command", "preset")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("preset_paths", mode="before")
    @classmethod
    def _parse_preset_paths(cls, value):
        if value is None or value == "":
            return (Path("presets"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("presets"),)
        raise TypeError("SCHEDULER_PRESET_PATHS must be a list of paths or a path-separated string")

    def scheduler_settings(self, loader: PresetLoader | None = None) -> SchedulerSettings:
        """Build engine settings from the selected preset plus the command override.

        Raises ``PresetLoadError`` when the configured preset cannot be found.
        """

        base = SchedulerSettings()
        if self.preset:
            loader = loader or PresetLoader(self.preset_paths)
            preset: SchedulerPreset = loader.get(self.preset)
            base = preset.apply_to(base)
        if self.command:
            base = SchedulerSettings.model_validate({**base.model_dump(), "command": self.command})
        return base


@lru_cache(maxsize=1)
def get_settings() -> SchedulerAppSettings:
    """Return cached settings instance."""

    settings = SchedulerAppSettings()
    settings.state_path = settings.state_path.expanduser().resolve()
    settings.preset_paths = tuple(path.expanduser().resolve() for path in settings.preset_paths)
    return settings


__all__ = ["SchedulerAppSettings", "get_settings"]
