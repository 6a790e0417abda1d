"""Data models for the files kept in a session directory."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

TASK_STATUSES = ("pending", "in_progress", "completed")
HISTORY_COMMANDS = frozenset({"plan", "implement", "verify", "review", "escalate", "invoke"})
HISTORY_STATUSES = frozenset({"success", "failure", "timeout"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Render a datetime as a second-precision UTC ISO-8601 string."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored timestamp; return None for empty or unparseable values."""

    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SessionState(BaseModel):
    """Mutable snapshot of what a session is currently doing."""

    model_config = ConfigDict(protected_namespaces=())

    active_task: str | None = None
    model_in_use: str = "sonnet"
    started_at: str
    last_updated: str


class StateRecord(BaseModel):
    """Contents of ``state.yaml``."""

    version: str = "1.0"
    feature_id: str
    current_state: SessionState


class PlanTask(BaseModel):
    """One unit of work in an implementation plan."""

    task_id: str = Field(..., description="Identifier unique within the plan.")
    description: str = ""
    status: str = Field(default="pending", description="pending, in_progress or completed.")
    agent: str = Field(default="unassigned", description="Worker identity assigned to the task.")
    dependencies: list[str] = Field(
        default_factory=list,
        description="Task ids that must be completed before this task may start.",
    )
    test_requirements: list[str] = Field(default_factory=list)

    @field_validator("task_id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Task id must not be empty")
        return normalized

    @field_validator("status")
    @classmethod
    def _validate_status(cls, value: str) -> str:
        if value not in TASK_STATUSES:
            raise ValueError(f"Task status must be one of {', '.join(TASK_STATUSES)}")
        return value

    @field_validator("dependencies", "test_requirements", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple, set)):
            return list(value)
        raise TypeError("Dependencies and test requirements must be sequences of strings")


class PlanPhase(BaseModel):
    phase_id: str
    name: str = ""
    tasks: list[PlanTask] = Field(default_factory=list)


class FeatureInfo(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    created_at: str = ""


class ImplementationPlan(BaseModel):
    """Contents of ``implementation-plan.yaml``."""

    feature: FeatureInfo
    phases: list[PlanPhase] = Field(default_factory=list)

    @field_validator("phases", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any):
        return [] if value is None else value

    @model_validator(mode="after")
    def _unique_task_ids(self) -> "ImplementationPlan":
        seen: set[str] = set()
        for task in self.iter_tasks():
            if task.task_id in seen:
                raise ValueError(f"Duplicate task id in plan: {task.task_id}")
            seen.add(task.task_id)
        return self

    def iter_tasks(self) -> Iterator[PlanTask]:
        for phase in self.phases:
            yield from phase.tasks

    def find_task(self, task_id: str) -> PlanTask | None:
        for task in self.iter_tasks():
            if task.task_id == task_id:
                return task
        return None

    def status_counts(self) -> dict[str, int]:
        counts = {status: 0 for status in TASK_STATUSES}
        for task in self.iter_tasks():
            counts[task.status] += 1
        return counts


class TokenCounts(BaseModel):
    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.input + self.output


class InteractionRecord(BaseModel):
    """Accounting entry for one external model call."""

    model_config = ConfigDict(extra="allow")

    timestamp: str
    model: str = ""
    prompt_preview: str = ""
    tokens: TokenCounts = Field(default_factory=TokenCounts)
    usage_source: str = "estimated"
    cost: float = 0.0
    duration_ms: int = 0


class SessionMetadata(BaseModel):
    """Contents of ``metadata.json``."""

    model_config = ConfigDict(extra="allow")

    created_at: str
    last_used: str
    session_id: str = ""
    session_name: str = ""
    command: str = ""
    total_cost: float = 0.0
    interactions: list[InteractionRecord] = Field(default_factory=list)

    @field_validator("session_id", "command", mode="before")
    @classmethod
    def _none_is_blank(cls, value: Any):
        return "" if value is None else value


class HistoryRecord(BaseModel):
    """One line of ``history.jsonl``."""

    model_config = ConfigDict(extra="allow")

    timestamp: str
    command: str
    model: str = ""
    status: str = "success"
    duration_ms: int = 0
    feature_id: str = ""
    task_id: str | None = None
    task_status: str | None = None
    agent: str | None = None
    error: str | None = None
    fresh_context: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("command")
    @classmethod
    def _validate_command(cls, value: str) -> str:
        if value not in HISTORY_COMMANDS:
            raise ValueError(f"Unknown history command '{value}'")
        return value

    @field_validator("status")
    @classmethod
    def _validate_status(cls, value: str) -> str:
        if value not in HISTORY_STATUSES:
            raise ValueError(f"History status must be one of {sorted(HISTORY_STATUSES)}")
        return value

    @property
    def success(self) -> bool:
        return self.status == "success"


class ActiveFeature(BaseModel):
    feature_id: str
    started_at: str
    last_active: str
    status: str = "active"


class ActiveFeatures(BaseModel):
    """Contents of the store-wide ``active-features.yaml`` ledger."""

    active_features: list[ActiveFeature] = Field(default_factory=list)

    @field_validator("active_features", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any):
        return [] if value is None else value


__all__ = [
    "ActiveFeature",
    "ActiveFeatures",
    "FeatureInfo",
    "HISTORY_COMMANDS",
    "HISTORY_STATUSES",
    "HistoryRecord",
    "ImplementationPlan",
    "InteractionRecord",
    "PlanPhase",
    "PlanTask",
    "SessionMetadata",
    "SessionState",
    "StateRecord",
    "TASK_STATUSES",
    "TIMESTAMP_FORMAT",
    "TokenCounts",
    "format_timestamp",
    "parse_timestamp",
    "utc_now",
]
