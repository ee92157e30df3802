"""Environment handling for scheduled commands."""

from __future__ import annotations

import os

# the scheduler's own interpreter setup must not leak into the user's command
_INTERPRETER_VARS = ("PYTHONHOME", "PYTHONPATH", "VIRTUAL_ENV")
_SCHEDULER_PREFIX = "SCHEDULER_"


def command_environment() -> dict[str, str]:
    """Return the environment a scheduled command runs with."""

    return {
        key: value
        for key, value in os.environ.items()
        if key not in _INTERPRETER_VARS and not key.startswith(_SCHEDULER_PREFIX)
    }
