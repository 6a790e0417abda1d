"""FastMCP server bootstrap for the AI orchestrator session store."""

import json
import logging
import shutil
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import OrchestratorSettings, configure_logging, get_settings
from .errors import OrchestratorError
from .lifecycle import SessionLifecycleManager
from .tools import register_tools
from .workflows import Orchestrator


def _model_cli_metadata(settings: OrchestratorSettings) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    for command in ("claude", "gemini"):
        explicit = settings.executable_for(command)
        if explicit is not None:
            path = str(explicit) if explicit.is_file() else None
        else:
            path = shutil.which(command)
        metadata[command] = {"available": path is not None, "path": path}
    return metadata


def create_server(
    settings: Optional[OrchestratorSettings] = None,
    orchestrator: Orchestrator | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the session tools and a status resource."""

    settings = settings or get_settings()
    orchestrator = orchestrator or Orchestrator.from_settings(settings)
    store = orchestrator.store
    lifecycle = SessionLifecycleManager(
        store, active_days=settings.active_days, analytics=orchestrator.analytics
    )
    model_clis = _model_cli_metadata(settings)

    server = FastMCP(
        name="AI Orchestrator",
        version=__version__,
        instructions=(
            "Session store for plan/implement/verify workflows. Use the provided tools "
            "to create sessions, inspect their state and history, and report usage and cost."
        ),
    )

    handles = register_tools(server, store=store, lifecycle=lifecycle)

    def status_payload(request_id: str | None = None) -> dict[str, Any]:
        storage_error = None
        stats: dict[str, Any] = {}
        active_features: list[str] = []
        try:
            stats = lifecycle.stats().to_dict()
            active_features = store.registry.feature_ids()
        except OrchestratorError as exc:
            storage_error = str(exc)

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "storage": {
                "session_root": str(store.root),
                "lock_timeout": store.lock_timeout,
                "active_features": active_features,
                "error": storage_error,
            },
            "models": {
                "plan": settings.plan_model,
                "plan_fallback": settings.plan_fallback_model,
                "implement": settings.implement_model,
                "verify": settings.verify_model,
                "review": settings.review_model,
                "clis": model_clis,
            },
            "stats": stats,
            "request_id": request_id,
        }

    @server.resource(
        "resource://ai-orchestrator/status",
        name="orchestrator_status",
        title="AI Orchestrator Status",
        description="Provides the current runtime status of the session store.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing the store and model CLIs."""

        return json.dumps(status_payload(getattr(context, "request_id", None)))

    setattr(server, "orchestrator", orchestrator)
    setattr(server, "lifecycle", lifecycle)
    setattr(server, "model_clis", model_clis)
    setattr(server, "status_payload", status_payload)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the orchestrator MCP server."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching AI Orchestrator MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "session_root": str(settings.session_root),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
