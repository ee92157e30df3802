"""Tool registration for the session scheduler MCP server."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from fastmcp import Context, FastMCP

from ..engine import SchedulerEngine
from ..presets import PresetLoadError, PresetLoader, SchedulerPreset
from ..session.sleepwake import ClockJumpSleepMonitor
from ..session.state import TransitionResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    start_session: Any
    pause_session: Any
    resume_session: Any
    stop_session: Any
    reset_session: Any
    retry_session: Any
    update_settings: Any
    session_status: Any
    list_presets: Any
    apply_preset: Any
    background_tasks: dict[str, asyncio.Task[None]] = field(default_factory=dict)


def status_payload(engine: SchedulerEngine) -> dict[str, Any]:
    """Snapshot of the engine plus the settings it runs with, JSON-ready."""

    payload = engine.snapshot().model_dump(mode="json")
    session = engine.session
    payload["settings"] = engine.settings.model_dump(mode="json")
    payload["effective_tick_interval"] = engine.effective_tick_interval
    payload["session"] = (
        {
            "created_at": session.created_at.isoformat(),
            "planned_duration": session.planned_duration,
            "accumulated_paused_time": session.accumulated_paused_time,
            "last_execution_at": session.last_execution_at.isoformat()
            if session.last_execution_at
            else None,
            "sleep_wake_events": len(session.sleep_wake_log),
        }
        if session is not None
        else None
    )
    return payload


def _preset_summary(preset: SchedulerPreset) -> dict[str, Any]:
    return {
        "id": preset.id,
        "title": preset.title,
        "description": preset.description,
        "settings": dict(preset.settings),
        "metadata": preset.metadata,
    }


def register_tools(
    server: FastMCP,
    *,
    engine: SchedulerEngine,
    presets: PresetLoader,
    sleep_monitor: ClockJumpSleepMonitor | None = None,
) -> ToolHandles:
    """Register the scheduler's MCP tools on the server."""

    background: dict[str, asyncio.Task[None]] = {}

    def _ensure_background() -> None:
        # tools run on the server's loop; the tick loop and monitor live there too
        background["engine"] = engine.ensure_running()
        monitor_task = background.get("sleep_monitor")
        if sleep_monitor is not None and (monitor_task is None or monitor_task.done()):
            background["sleep_monitor"] = asyncio.get_running_loop().create_task(
                sleep_monitor.watch()
            )

    def _transition_response(
        context: Context | None,
        operation: str,
        result: TransitionResult,
    ) -> dict[str, Any]:
        _emit_log(
            context,
            "info" if result.accepted else "warning",
            f"{operation} {'accepted' if result.accepted else 'rejected'}",
            extra={"state": result.state.value, "session_id": result.session_id, "reason": result.reason},
        )
        return {"result": result.as_dict(), "status": status_payload(engine)}

    async def _start_session(context: Context | None = None) -> dict[str, Any]:
        """Start a new session, or report the running one."""

        _ensure_background()
        return _transition_response(context, "start_session", engine.start_session())

    async def _pause_session(context: Context | None = None) -> dict[str, Any]:
        """Pause the running session; paused time does not count toward progress."""

        _ensure_background()
        return _transition_response(context, "pause_session", engine.pause_session())

    async def _resume_session(context: Context | None = None) -> dict[str, Any]:
        """Resume a paused session."""

        _ensure_background()
        return _transition_response(context, "resume_session", engine.resume_session())

    async def _stop_session(context: Context | None = None) -> dict[str, Any]:
        """Stop the live session and discard its checkpoint."""

        _ensure_background()
        return _transition_response(context, "stop_session", engine.stop_session())

    async def _reset_session(context: Context | None = None) -> dict[str, Any]:
        """Return to idle from any state, clearing errors and the checkpoint."""

        _ensure_background()
        return _transition_response(context, "reset_session", engine.reset_session())

    async def _retry_session(context: Context | None = None) -> dict[str, Any]:
        """Retry the command for a session in the error state."""

        _ensure_background()
        return _transition_response(context, "retry_session", engine.retry_session())

    async def _update_settings(
        changes: dict[str, Any],
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Validate and apply new scheduler settings (partial updates allowed)."""

        _ensure_background()
        outcome = engine.update_settings(changes)
        _emit_log(
            context,
            "info" if outcome.accepted else "warning",
            "Settings update " + ("applied" if outcome.accepted else "rejected"),
            extra={"fields": sorted(changes), "errors": outcome.errors},
        )
        return {
            "accepted": outcome.accepted,
            "settings": outcome.settings.model_dump(mode="json"),
            "errors": outcome.errors,
        }

    async def _session_status(context: Context | None = None) -> dict[str, Any]:
        """Return the current scheduler snapshot and settings."""

        return status_payload(engine)

    async def _list_presets(context: Context | None = None) -> dict[str, Any]:
        """List the settings presets available on the configured search paths."""

        try:
            preset_map = presets.load_all()
        except PresetLoadError as exc:
            _emit_log(context, "error", "Failed to load presets", extra={"error": str(exc)})
            raise RuntimeError(str(exc)) from exc
        return {
            "count": len(preset_map),
            "presets": [_preset_summary(preset_map[key]) for key in sorted(preset_map)],
        }

    async def _apply_preset(preset_id: str, context: Context | None = None) -> dict[str, Any]:
        """Apply a named preset's settings to the scheduler."""

        try:
            preset = presets.get(preset_id)
        except PresetLoadError as exc:
            raise ValueError(f"Unknown preset '{preset_id}'") from exc

        _ensure_background()
        outcome = engine.update_settings(preset.settings)
        _emit_log(
            context,
            "info" if outcome.accepted else "warning",
            "Preset applied" if outcome.accepted else "Preset rejected",
            extra={"preset_id": preset.id, "errors": outcome.errors},
        )
        return {
            "preset": preset.id,
            "accepted": outcome.accepted,
            "settings": outcome.settings.model_dump(mode="json"),
            "errors": outcome.errors,
        }

    tool_start = server.tool(
        name="start_session",
        description="Start a scheduled session; idempotent while a session is running.",
    )(_start_session)

    tool_pause = server.tool(
        name="pause_session",
        description="Pause the running session.",
    )(_pause_session)

    tool_resume = server.tool(
        name="resume_session",
        description="Resume a paused session.",
    )(_resume_session)

    tool_stop = server.tool(
        name="stop_session",
        description="Stop the live session and return to idle.",
    )(_stop_session)

    tool_reset = server.tool(
        name="reset_session",
        description="Reset the scheduler to idle from any state.",
    )(_reset_session)

    tool_retry = server.tool(
        name="retry_session",
        description="Retry the scheduled command after the session entered the error state.",
    )(_retry_session)

    tool_update = server.tool(
        name="update_settings",
        description="Validate and apply scheduler settings; invalid values are rejected.",
    )(_update_settings)

    tool_status = server.tool(
        name="session_status",
        description="Report scheduler state, progress, timing accuracy, and last error.",
    )(_session_status)

    tool_list_presets = server.tool(
        name="list_presets",
        description="List available scheduler presets.",
    )(_list_presets)

    tool_apply_preset = server.tool(
        name="apply_preset",
        description="Apply the settings of a named preset.",
    )(_apply_preset)

    return ToolHandles(
        start_session=tool_start,
        pause_session=tool_pause,
        resume_session=tool_resume,
        stop_session=tool_stop,
        reset_session=tool_reset,
        retry_session=tool_retry,
        update_settings=tool_update,
        session_status=tool_status,
        list_presets=tool_list_presets,
        apply_preset=tool_apply_preset,
        background_tasks=background,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when one is attached."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "register_tools", "status_payload"]
