from __future__ import annotations

import json
from pathlib import Path

import pytest

from ai_orchestrator.errors import AlreadyExists, InvalidIdentifier
from ai_orchestrator.lifecycle import SessionLifecycleManager
from ai_orchestrator.tools import register_tools


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubLogger:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, dict]] = []

    def info(self, message, extra=None):
        self.messages.append(("info", message, extra or {}))

    def debug(self, message, extra=None):
        self.messages.append(("debug", message, extra or {}))


class StubContext:
    def __init__(self) -> None:
        self.logger = StubLogger()


@pytest.fixture
def server(store, analytics, clock):
    stub = StubServer()
    lifecycle = SessionLifecycleManager(store, clock=clock, analytics=analytics)
    handles = register_tools(stub, store=store, lifecycle=lifecycle)
    return stub, handles


def test_registers_named_tools(server) -> None:
    stub, handles = server

    assert set(stub._tools) == {
        "init_session",
        "list_sessions",
        "show_session",
        "session_stats",
        "export_sessions",
        "session_history",
    }
    assert handles.init_session is stub._tools["init_session"]


def test_init_session_logs_through_context(server, store) -> None:
    stub, handles = server
    context = StubContext()

    payload = handles.init_session.fn("auth-feature", "Login", context=context)

    assert payload["feature_id"] == "auth-feature"
    assert Path(payload["path"]).is_dir()
    assert context.logger.messages[0][:2] == ("info", "Initialized session")
    assert store.read_plan("auth-feature").feature.description == "Login"

    with pytest.raises(AlreadyExists):
        handles.init_session.fn("auth-feature")
    with pytest.raises(InvalidIdentifier):
        handles.init_session.fn("-bad")


def test_list_show_and_stats(server, store, analytics) -> None:
    _, handles = server
    handles.init_session.fn("auth-feature")
    analytics.record("auth-feature", model="opus", prompt="p" * 40, response="r" * 4, duration_ms=3)

    (summary,) = handles.list_sessions.fn(sort="name")
    assert summary["name"] == "auth-feature"
    assert summary["interactions"] == 1

    detail = handles.show_session.fn("auth-feature")
    assert detail["health"] == "Active"
    assert detail["recent_interactions"][0]["model"] == "opus"

    assert handles.session_stats.fn()["total_sessions"] == 1
    assert handles.session_stats.fn("auth-feature")["by_model"]["opus"]["interactions"] == 1


def test_export_sessions(server, tmp_path: Path) -> None:
    _, handles = server
    handles.init_session.fn("auth-feature")
    target = tmp_path / "export.json"

    result = handles.export_sessions.fn(str(target))

    assert result == {"path": str(target), "count": 1, "sessions": ["auth-feature"]}
    assert json.loads(target.read_text())[0]["session_name"] == "auth-feature"


def test_session_history_filters(server, store) -> None:
    _, handles = server
    handles.init_session.fn("auth-feature")
    store.append_history("auth-feature", {"command": "plan", "model": "gemini", "status": "failure"})
    store.append_history("auth-feature", {"command": "plan", "model": "opus"})
    store.append_history("auth-feature", {"command": "implement", "model": "sonnet", "task_id": "t1"})

    plans = handles.session_history.fn("auth-feature", command="plan")
    assert [record["model"] for record in plans] == ["gemini", "opus"]

    failures = handles.session_history.fn("auth-feature", status="failure")
    assert [record["model"] for record in failures] == ["gemini"]

    (latest,) = handles.session_history.fn("auth-feature", limit=1)
    assert latest["task_id"] == "t1"
    assert "error" not in latest
