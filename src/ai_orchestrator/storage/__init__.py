"""Storage layer for orchestrator sessions."""

from .history import HistoryLog
from .locking import DEFAULT_LOCK_TIMEOUT, FileLock, with_lock
from .models import (
    HistoryRecord,
    ImplementationPlan,
    InteractionRecord,
    PlanPhase,
    PlanTask,
    SessionMetadata,
    StateRecord,
)
from .registry import ActiveFeatureRegistry
from .session_store import SessionHandle, SessionStore, SessionTransaction

__all__ = [
    "ActiveFeatureRegistry",
    "DEFAULT_LOCK_TIMEOUT",
    "FileLock",
    "HistoryLog",
    "HistoryRecord",
    "ImplementationPlan",
    "InteractionRecord",
    "PlanPhase",
    "PlanTask",
    "SessionHandle",
    "SessionMetadata",
    "SessionStore",
    "SessionTransaction",
    "StateRecord",
    "with_lock",
]
