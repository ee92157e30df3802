"""Scheduler settings and preset loading."""

from .loader import PresetLoadError, PresetLoader
from .models import SchedulerPreset, SchedulerSettings

__all__ = [
    "PresetLoadError",
    "PresetLoader",
    "SchedulerPreset",
    "SchedulerSettings",
]
