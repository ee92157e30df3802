"""FastMCP server bootstrap for the session scheduler."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .command import CommandRunner, CommandRunnerError
from .config import SchedulerAppSettings, get_settings
from .engine import SchedulerEngine
from .presets import PresetLoadError, PresetLoader, SchedulerSettings
from .session.sleepwake import ClockJumpSleepMonitor
from .storage import CheckpointStore
from .tools import register_tools, status_payload


def configure_logging(level: str) -> None:
    """Configure root logging for the scheduler server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[SchedulerAppSettings] = None,
    engine: SchedulerEngine | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server around a restored scheduler engine."""

    settings = settings or get_settings()
    log = logging.getLogger(__name__)

    preset_loader = PresetLoader(settings.preset_paths)
    preset_metadata: dict[str, Any] = {"selected": settings.preset, "error": None}

    if engine is None:
        try:
            scheduler_settings = settings.scheduler_settings(preset_loader)
        except PresetLoadError as exc:
            log.warning("Falling back to default scheduler settings", extra={"error": str(exc)})
            preset_metadata["error"] = str(exc)
            scheduler_settings = SchedulerSettings()

        engine = SchedulerEngine(
            runner=CommandRunner(),
            store=CheckpointStore(settings.state_path),
            settings=scheduler_settings,
        )
        engine.restore()

    command_metadata: dict[str, Any] = {
        "command": engine.settings.command,
        "available": False,
        "executable": None,
        "error": None,
    }
    try:
        executable = CommandRunner().resolve_executable(engine.settings.command)
        command_metadata["available"] = True
        command_metadata["executable"] = str(executable)
    except (CommandRunnerError, ValueError) as exc:
        command_metadata["error"] = str(exc)

    server = FastMCP(
        name="Session Scheduler",
        version=__version__,
        instructions=(
            "Runs long-lived timed sessions that invoke a command on a fixed cadence. "
            "Use the tools to start, pause, resume, stop, or retry the session and to "
            "inspect progress and timing accuracy."
        ),
    )

    sleep_monitor = ClockJumpSleepMonitor(engine)
    handles = register_tools(
        server,
        engine=engine,
        presets=preset_loader,
        sleep_monitor=sleep_monitor,
    )

    @server.resource(
        "resource://scheduler/status",
        name="scheduler_status",
        title="Session Scheduler Status",
        description="Current scheduler state, session progress, and runtime configuration.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing scheduler state."""

        try:
            preset_ids = sorted(preset_loader.load_all())
            preset_error = preset_metadata["error"]
        except PresetLoadError as exc:
            preset_ids = []
            preset_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "state_path": str(settings.state_path),
            "presets": {
                "count": len(preset_ids),
                "ids": preset_ids,
                "selected": preset_metadata["selected"],
                "error": preset_error,
            },
            "command": command_metadata,
            "scheduler": status_payload(engine),
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "engine", engine)
    setattr(server, "preset_loader", preset_loader)
    setattr(server, "command_metadata", command_metadata)
    setattr(server, "preset_metadata", preset_metadata)
    setattr(server, "sleep_monitor", sleep_monitor)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the scheduler MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    engine: SchedulerEngine = getattr(server, "engine")
    logging.getLogger(__name__).info(
        "Launching session scheduler MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "state": engine.state.value,
            "command_available": getattr(server, "command_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
