"""Tool registration for the orchestrator MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from fastmcp import Context, FastMCP

from ..lifecycle import SessionLifecycleManager
from ..storage.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    init_session: Any
    list_sessions: Any
    show_session: Any
    session_stats: Any
    export_sessions: Any
    session_history: Any


def register_tools(
    server: FastMCP,
    *,
    store: SessionStore,
    lifecycle: SessionLifecycleManager,
) -> ToolHandles:
    """Register the session store's MCP tools on the server."""

    def _init_session(
        feature_id: str,
        description: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a new feature session; fails if the id is taken or invalid."""

        handle = store.init(feature_id, description)
        _emit_log(context, "info", "Initialized session", extra={"feature_id": feature_id})
        return {"feature_id": handle.feature_id, "path": str(handle.path)}

    def _list_sessions(
        active_only: bool = False,
        sort: Literal["name", "date", "tokens", "cost"] = "date",
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        summaries = lifecycle.list(active_only=active_only, sort=sort)
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(summaries)})
        return [summary.to_dict() for summary in summaries]

    def _show_session(name: str, context: Context | None = None) -> dict[str, Any]:
        return lifecycle.show(name).to_dict()

    def _session_stats(
        session: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        return lifecycle.stats(session).to_dict()

    def _export_sessions(
        output_path: str | None = None,
        active_only: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = lifecycle.export(output_path, active_only=active_only)
        _emit_log(
            context,
            "info",
            "Exported sessions",
            extra={"path": str(result.path), "count": result.count},
        )
        return {"path": str(result.path), "count": result.count, "sessions": result.sessions}

    def _session_history(
        feature_id: str,
        command: str | None = None,
        model: str | None = None,
        status: Literal["success", "failure", "timeout"] | None = None,
        limit: int | None = 20,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """Return the latest history records of a session, oldest first."""

        records = store.history(feature_id).filter(
            command=command, model=model, status=status, limit=limit
        )
        return [record.model_dump(mode="json", exclude_none=True) for record in records]

    tool_init = server.tool(
        name="init_session",
        description=(
            "Initialize a feature session. Feature ids are lowercase letters, digits "
            "and hyphens, starting with a letter."
        ),
    )(_init_session)

    tool_list = server.tool(
        name="list_sessions",
        description="List stored sessions with usage totals; optionally only recently used ones.",
    )(_list_sessions)

    tool_show = server.tool(
        name="show_session",
        description="Show one session's state, health, task counts and recent interactions.",
    )(_show_session)

    tool_stats = server.tool(
        name="session_stats",
        description="Aggregate token and cost statistics, or a per-model breakdown for one session.",
    )(_session_stats)

    tool_export = server.tool(
        name="export_sessions",
        description="Export sessions with their full history to a JSON file.",
    )(_export_sessions)

    tool_history = server.tool(
        name="session_history",
        description="Read a session's audit history, filtered by command, model or status.",
    )(_session_history)

    return ToolHandles(
        init_session=tool_init,
        list_sessions=tool_list,
        show_session=tool_show,
        session_stats=tool_stats,
        export_sessions=tool_export,
        session_history=tool_history,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Prefer the MCP context logger when the request carries one."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        log_method = getattr(ctx_logger, level, None) if ctx_logger is not None else None
        if callable(log_method):
            log_method(message, extra=payload)
            return

    getattr(logger, level, logger.info)(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
