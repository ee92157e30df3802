"""Discovery of scheduler presets on disk."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import SchedulerPreset, SchedulerSettings


class PresetLoadError(RuntimeError):
    """Raised when presets cannot be read, validated or found."""


class PresetLoader:
    """Finds scheduler presets in YAML files on the configured search paths.

    Presets in one directory must have distinct ids. A later directory replaces
    presets with the same id from an earlier one, which is how a user preset
    directory overrides the bundled presets.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.is_dir()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, SchedulerPreset]:
        presets: dict[str, SchedulerPreset] = {}
        errors: list[str] = []
        for directory in self._search_paths:
            presets.update(self._load_directory(directory, errors))
        if errors:
            raise PresetLoadError("; ".join(errors))
        return presets

    def get(self, preset_id: str) -> SchedulerPreset:
        presets = self.load_all()
        try:
            return presets[preset_id]
        except KeyError as exc:
            raise PresetLoadError(f"Preset '{preset_id}' not found in search paths") from exc

    def _load_directory(self, directory: Path, errors: list[str]) -> dict[str, SchedulerPreset]:
        found: dict[str, SchedulerPreset] = {}
        sources: dict[str, Path] = {}
        for path in sorted([*directory.glob("*.yml"), *directory.glob("*.yaml")]):
            preset = self._load_file(path, errors)
            if preset is None:
                continue
            if preset.id in sources:
                errors.append(
                    f"Duplicate preset id '{preset.id}' in {sources[preset.id].name} and {path.name}"
                )
                continue
            sources[preset.id] = path
            found[preset.id] = preset
        return found

    def _load_file(self, path: Path, errors: list[str]) -> SchedulerPreset | None:
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            errors.append(f"Failed to read preset {path}: {exc}")
            return None
        if document is None:
            return None

        try:
            preset = SchedulerPreset.model_validate(document)
            # overrides must produce valid settings on their own
            preset.apply_to(SchedulerSettings())
        except ValidationError as exc:
            errors.append(f"Invalid preset {path}: {exc}")
            return None
        return preset


__all__ = ["PresetLoadError", "PresetLoader"]
