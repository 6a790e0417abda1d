"""Configuration management for the AI orchestrator."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    session_root: Path = Field(
        default=Path("~/.ai-sessions"),
        validation_alias=AliasChoices("AI_SESSION_DIR", "SESSION_DIR", "SESSION_ROOT"),
    )
    lock_timeout: float = Field(default=5.0, validation_alias="AI_LOCK_TIMEOUT")
    default_timeout: int = Field(default=180, validation_alias="AI_DEFAULT_TIMEOUT")
    plan_timeout: int = Field(default=300, validation_alias="AI_PLAN_TIMEOUT")
    log_level: str = Field(default="INFO", validation_alias="AI_LOG_LEVEL")
    active_days: int = Field(default=30, validation_alias="AI_ACTIVE_DAYS")
    pricing: str = Field(default="", validation_alias="AI_PRICING")
    claude_path: str | None = Field(default=None, validation_alias="CLAUDE_PATH")
    gemini_path: str | None = Field(default=None, validation_alias="GEMINI_PATH")
    plan_model: str = Field(default="gemini", validation_alias="AI_PLAN_MODEL")
    plan_fallback_model: str = Field(default="opus", validation_alias="AI_PLAN_FALLBACK_MODEL")
    implement_model: str = Field(default="sonnet", validation_alias="AI_IMPLEMENT_MODEL")
    verify_model: str = Field(default="sonnet", validation_alias="AI_VERIFY_MODEL")
    review_model: str = Field(default="opus", validation_alias="AI_REVIEW_MODEL")
    runner_env: dict[str, str] = Field(
        default_factory=dict,
        validation_alias="AI_RUNNER_ENV",
        description="Extra environment variables for model CLIs, as a JSON object.",
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("AI_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG")
        return normalized

    @field_validator("lock_timeout")
    @classmethod
    def _validate_lock_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("AI_LOCK_TIMEOUT must be > 0")
        return value

    @field_validator("default_timeout", "plan_timeout", "active_days")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("timeouts and AI_ACTIVE_DAYS must be >= 1")
        return value

    def executable_for(self, command: str) -> Path | None:
        """Return the configured executable override for a CLI command, if any."""

        explicit = {"claude": self.claude_path, "gemini": self.gemini_path}.get(command)
        return Path(explicit).expanduser() if explicit else None


@lru_cache(maxsize=1)
def get_settings() -> OrchestratorSettings:
    """Return cached settings instance."""

    settings = OrchestratorSettings()
    settings.session_root = settings.session_root.expanduser().resolve()
    return settings


LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


__all__ = ["LOG_FORMAT", "OrchestratorSettings", "configure_logging", "get_settings"]
