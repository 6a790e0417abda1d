from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from ai_orchestrator.config import OrchestratorSettings, get_settings


def test_environment_aliases(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AI_SESSION_DIR", str(tmp_path / "store"))
    monkeypatch.setenv("AI_LOCK_TIMEOUT", "1.5")
    monkeypatch.setenv("AI_LOG_LEVEL", "debug")
    monkeypatch.setenv("AI_PRICING", "opus:0.01:0.02")
    monkeypatch.setenv("AI_PLAN_MODEL", "gemini-2.5-pro")

    settings = OrchestratorSettings()

    assert settings.session_root == tmp_path / "store"
    assert settings.lock_timeout == 1.5
    assert settings.log_level == "DEBUG"
    assert settings.pricing == "opus:0.01:0.02"
    assert settings.plan_model == "gemini-2.5-pro"


def test_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("AI_SESSION_DIR", "SESSION_DIR", "SESSION_ROOT", "AI_LOG_LEVEL", "AI_ACTIVE_DAYS"):
        monkeypatch.delenv(name, raising=False)

    settings = OrchestratorSettings()

    assert settings.session_root == Path("~/.ai-sessions")
    assert settings.lock_timeout == 5.0
    assert settings.active_days == 30
    assert settings.default_timeout == 180


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AI_LOG_LEVEL", "chatty")
    with pytest.raises(ValidationError):
        OrchestratorSettings()

    monkeypatch.setenv("AI_LOG_LEVEL", "INFO")
    monkeypatch.setenv("AI_LOCK_TIMEOUT", "0")
    with pytest.raises(ValidationError):
        OrchestratorSettings()


def test_executable_for(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDE_PATH", "~/bin/claude")
    monkeypatch.delenv("GEMINI_PATH", raising=False)

    settings = OrchestratorSettings()

    assert settings.executable_for("claude") == Path("~/bin/claude").expanduser()
    assert settings.executable_for("gemini") is None
    assert settings.executable_for("aider") is None


def test_get_settings_resolves_root(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SESSION_DIR", str(tmp_path / "legacy"))
    monkeypatch.delenv("AI_SESSION_DIR", raising=False)
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.session_root == (tmp_path / "legacy").resolve()
        assert settings.session_root.is_absolute()
    finally:
        get_settings.cache_clear()


def test_runner_env_and_review_model(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AI_RUNNER_ENV", '{"ANTHROPIC_BASE_URL": "http://proxy.local"}')
    monkeypatch.setenv("AI_REVIEW_MODEL", "sonnet")

    settings = OrchestratorSettings()

    assert settings.runner_env == {"ANTHROPIC_BASE_URL": "http://proxy.local"}
    assert settings.review_model == "sonnet"
