"""Cross-session operations: list, show, clean, stats and export."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Sequence

from .analytics import AnalyticsEngine, UsageSummary
from .errors import LockTimeout, MalformedRecord, NotFound
from .identifiers import validate_identifier
from .storage.atomic import atomic_write_json
from .storage.models import (
    InteractionRecord,
    SessionMetadata,
    StateRecord,
    parse_timestamp,
    utc_now,
)
from .storage.session_store import SessionStore

DEFAULT_ACTIVE_DAYS = 30
SORT_KEYS = ("name", "date", "tokens", "cost")
RECENT_INTERACTIONS = 3
MOST_ACTIVE_LIMIT = 5
EXPORT_FILENAME_FORMAT = "sessions-export-%Y%m%d-%H%M%S.json"

HEALTH_ACTIVE = "Active"
HEALTH_IDLE = "Idle"
HEALTH_STALE = "Stale"

logger = logging.getLogger(__name__)


def session_health(last_updated: str | None, now: datetime) -> str:
    """Active if updated within the hour, Idle within the day, otherwise Stale."""

    moment = parse_timestamp(last_updated)
    if moment is None:
        return HEALTH_STALE
    age = now - moment
    if age < timedelta(hours=1):
        return HEALTH_ACTIVE
    if age < timedelta(hours=24):
        return HEALTH_IDLE
    return HEALTH_STALE


@dataclass(slots=True)
class SessionSummary:
    name: str
    created_at: str
    last_used: str
    session_id: str
    command: str
    interactions: int
    input_tokens: int
    output_tokens: int
    total_cost: float
    active: bool

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "created_at": self.created_at,
            "last_used": self.last_used,
            "session_id": self.session_id,
            "command": self.command,
            "interactions": self.interactions,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "total_cost": round(self.total_cost, 6),
            "active": self.active,
        }


@dataclass(slots=True)
class SessionDetail:
    summary: SessionSummary
    state: StateRecord
    health: str
    task_counts: dict[str, int]
    recent_interactions: list[InteractionRecord]
    history_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.summary.to_dict(),
            "state": self.state.model_dump(mode="json"),
            "health": self.health,
            "task_counts": dict(self.task_counts),
            "recent_interactions": [
                interaction.model_dump(mode="json") for interaction in self.recent_interactions
            ],
            "history_count": self.history_count,
        }


@dataclass(slots=True)
class CleanResult:
    older_than_days: int
    candidates: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False


@dataclass(slots=True)
class AggregateStats:
    total_sessions: int = 0
    active_sessions: int = 0
    interactions: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0
    most_active: list[SessionSummary] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_sessions": self.total_sessions,
            "active_sessions": self.active_sessions,
            "interactions": self.interactions,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "total_cost": round(self.total_cost, 6),
            "most_active": [
                {"name": summary.name, "interactions": summary.interactions}
                for summary in self.most_active
            ],
        }


@dataclass(slots=True)
class SessionStats:
    name: str
    usage: UsageSummary

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, **self.usage.to_dict()}


@dataclass(slots=True)
class ExportResult:
    path: Path
    sessions: list[str]

    @property
    def count(self) -> int:
        return len(self.sessions)


class SessionLifecycleManager:
    """Operations spanning every session in a store."""

    def __init__(
        self,
        store: SessionStore,
        *,
        active_days: int = DEFAULT_ACTIVE_DAYS,
        clock: Callable[[], datetime] | None = None,
        analytics: AnalyticsEngine | None = None,
    ) -> None:
        self._store = store
        self._active_days = active_days
        self._clock = clock or utc_now
        self._analytics = analytics or AnalyticsEngine(store)

    @property
    def store(self) -> SessionStore:
        return self._store

    def _age(self, metadata: SessionMetadata) -> timedelta | None:
        last_used = parse_timestamp(metadata.last_used)
        if last_used is None:
            return None
        return self._clock() - last_used

    def _is_active(self, metadata: SessionMetadata) -> bool:
        age = self._age(metadata)
        return age is not None and age <= timedelta(days=self._active_days)

    def _summarize(self, name: str, metadata: SessionMetadata) -> SessionSummary:
        usage = self._analytics.summarize(metadata)
        return SessionSummary(
            name=name,
            created_at=metadata.created_at,
            last_used=metadata.last_used,
            session_id=metadata.session_id,
            command=metadata.command,
            interactions=usage.interactions,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_cost=metadata.total_cost,
            active=self._is_active(metadata),
        )

    def _load_all(self) -> list[tuple[str, SessionMetadata]]:
        loaded = []
        for name in self._store.session_names():
            try:
                loaded.append((name, self._store.read_metadata(name)))
            except NotFound:
                # Removed between the directory scan and the read.
                continue
            except MalformedRecord as exc:
                logger.warning(
                    "Skipping unreadable session", extra={"session_name": name, "error": str(exc)}
                )
        return loaded

    def list(self, *, active_only: bool = False, sort: str = "date") -> list[SessionSummary]:
        if sort not in SORT_KEYS:
            raise ValueError(f"Unknown sort key '{sort}'; expected one of {', '.join(SORT_KEYS)}")

        summaries = [self._summarize(name, metadata) for name, metadata in self._load_all()]
        if active_only:
            summaries = [summary for summary in summaries if summary.active]

        if sort == "name":
            summaries.sort(key=lambda summary: summary.name)
        elif sort == "date":
            summaries.sort(key=lambda summary: summary.last_used, reverse=True)
        elif sort == "tokens":
            summaries.sort(key=lambda summary: summary.total_tokens, reverse=True)
        else:
            summaries.sort(key=lambda summary: summary.total_cost, reverse=True)
        return summaries

    def show(self, name: str) -> SessionDetail:
        validate_identifier(name, kind="session name")
        handle = self._store.get(name)
        metadata = self._store.read_metadata(handle)
        state = self._store.read_state(handle)
        plan = self._store.read_plan(handle)
        return SessionDetail(
            summary=self._summarize(name, metadata),
            state=state,
            health=session_health(state.current_state.last_updated, self._clock()),
            task_counts=plan.status_counts(),
            recent_interactions=list(metadata.interactions[-RECENT_INTERACTIONS:]),
            history_count=self._store.history(handle).count(),
        )

    def clean(
        self,
        older_than_days: int,
        *,
        dry_run: bool = False,
        force: bool = False,
        confirm: Callable[[Sequence[str]], bool] | None = None,
    ) -> CleanResult:
        """Delete sessions whose ``last_used`` is more than ``older_than_days`` ago.

        Without ``force`` the ``confirm`` callback must approve the candidate
        list; a missing callback cancels the operation.
        """

        if older_than_days < 0:
            raise ValueError("older_than_days must be >= 0")

        threshold = timedelta(days=older_than_days)
        result = CleanResult(older_than_days=older_than_days, dry_run=dry_run)
        for name, metadata in self._load_all():
            age = self._age(metadata)
            if age is None or age > threshold:
                result.candidates.append(name)

        if dry_run or not result.candidates:
            return result

        if not force and (confirm is None or not confirm(list(result.candidates))):
            result.cancelled = True
            logger.info("Session cleanup cancelled", extra={"candidates": len(result.candidates)})
            return result

        for name in result.candidates:
            try:
                self._store.remove(name)
            except NotFound:
                continue
            except LockTimeout as exc:
                logger.warning(
                    "Session busy; not removed",
                    extra={"session_name": name, "error": str(exc)},
                )
                result.skipped.append(name)
                continue
            result.removed.append(name)

        logger.info(
            "Cleaned sessions",
            extra={
                "removed": len(result.removed),
                "skipped": len(result.skipped),
                "older_than_days": older_than_days,
            },
        )
        return result

    def stats(self, session: str | None = None) -> AggregateStats | SessionStats:
        if session is not None:
            validate_identifier(session, kind="session name")
            return SessionStats(name=session, usage=self._analytics.session_summary(session))

        stats = AggregateStats()
        summaries = [self._summarize(name, metadata) for name, metadata in self._load_all()]
        for summary in summaries:
            stats.total_sessions += 1
            stats.active_sessions += int(summary.active)
            stats.interactions += summary.interactions
            stats.input_tokens += summary.input_tokens
            stats.output_tokens += summary.output_tokens
            stats.total_cost += summary.total_cost
        stats.most_active = sorted(
            (summary for summary in summaries if summary.interactions),
            key=lambda summary: (-summary.interactions, summary.name),
        )[:MOST_ACTIVE_LIMIT]
        return stats

    def export(
        self, output_path: Path | str | None = None, *, active_only: bool = False
    ) -> ExportResult:
        """Write the selected sessions, with full history, as one JSON array."""

        if output_path is None:
            output_path = Path.cwd() / self._clock().strftime(EXPORT_FILENAME_FORMAT)
        target = Path(output_path).expanduser()

        documents = []
        names = []
        for name, metadata in self._load_all():
            if active_only and not self._is_active(metadata):
                continue
            try:
                state = self._store.read_state(name)
                history = self._store.read_history(name)
            except NotFound:
                continue
            except MalformedRecord as exc:
                logger.warning(
                    "Skipping unreadable session", extra={"session_name": name, "error": str(exc)}
                )
                continue
            document = metadata.model_dump(mode="json")
            document["session_name"] = name
            document["state"] = state.model_dump(mode="json")
            document["history"] = [
                record.model_dump(mode="json", exclude_none=True) for record in history
            ]
            documents.append(document)
            names.append(name)

        target.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_json(target, documents)
        logger.info("Exported sessions", extra={"path": str(target), "sessions": len(names)})
        return ExportResult(path=target, sessions=names)


__all__ = [
    "AggregateStats",
    "CleanResult",
    "DEFAULT_ACTIVE_DAYS",
    "ExportResult",
    "HEALTH_ACTIVE",
    "HEALTH_IDLE",
    "HEALTH_STALE",
    "SORT_KEYS",
    "SessionDetail",
    "SessionLifecycleManager",
    "SessionStats",
    "SessionSummary",
    "session_health",
]
