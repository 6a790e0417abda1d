"""Filesystem-backed session store.

Layout of one session (``<root>/<feature_id>/``)::

    state.yaml                 current snapshot (active task, model, timestamps)
    implementation-plan.yaml   phases and tasks
    history.jsonl              append-only audit log
    metadata.json              analytics: interactions, total cost, session token
    artifacts/                 generated files
    .lock                      per-session lock file

A session directory is built in a hidden staging directory and renamed into
place in one step, so a session either exists completely or not at all.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar
from uuid import uuid4

import yaml
from pydantic import BaseModel, ValidationError

from ..errors import AlreadyExists, MalformedRecord, NotFound
from ..identifiers import is_valid_identifier, validate_identifier
from .atomic import atomic_write_json, atomic_write_text, atomic_write_yaml
from .history import HistoryLog
from .locking import DEFAULT_LOCK_TIMEOUT, FileLock
from .models import (
    FeatureInfo,
    HistoryRecord,
    ImplementationPlan,
    SessionMetadata,
    SessionState,
    StateRecord,
    format_timestamp,
    utc_now,
)
from .registry import ActiveFeatureRegistry

STATE_FILENAME = "state.yaml"
PLAN_FILENAME = "implementation-plan.yaml"
HISTORY_FILENAME = "history.jsonl"
METADATA_FILENAME = "metadata.json"
ARTIFACTS_DIRNAME = "artifacts"
LOCK_FILENAME = ".lock"

STAGING_PREFIX = ".init-"
TRASH_PREFIX = ".trash-"
SESSION_DIR_MODE = 0o700
DEFAULT_DESCRIPTION = "AI Orchestrator Feature"

REQUIRED_FILES = (STATE_FILENAME, PLAN_FILENAME, HISTORY_FILENAME, METADATA_FILENAME)

_UNSET = object()

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SessionHandle:
    """Resolved location of an initialized session."""

    feature_id: str
    path: Path

    @property
    def state_path(self) -> Path:
        return self.path / STATE_FILENAME

    @property
    def plan_path(self) -> Path:
        return self.path / PLAN_FILENAME

    @property
    def history_path(self) -> Path:
        return self.path / HISTORY_FILENAME

    @property
    def metadata_path(self) -> Path:
        return self.path / METADATA_FILENAME

    @property
    def artifacts_path(self) -> Path:
        return self.path / ARTIFACTS_DIRNAME

    @property
    def lock_path(self) -> Path:
        return self.path / LOCK_FILENAME


def _load_yaml_model(path: Path, model: type[M]) -> M:
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise MalformedRecord(path, "file is missing") from exc
    except yaml.YAMLError as exc:
        raise MalformedRecord(path, str(exc)) from exc
    if not isinstance(document, dict):
        raise MalformedRecord(path, "expected a mapping")
    try:
        return model.model_validate(document)
    except ValidationError as exc:
        raise MalformedRecord(path, str(exc)) from exc


def _load_json_model(path: Path, model: type[M]) -> M:
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise MalformedRecord(path, "file is missing") from exc
    except json.JSONDecodeError as exc:
        raise MalformedRecord(path, str(exc)) from exc
    if not isinstance(document, dict):
        raise MalformedRecord(path, "expected a JSON object")
    try:
        return model.model_validate(document)
    except ValidationError as exc:
        raise MalformedRecord(path, str(exc)) from exc


class SessionTransaction:
    """Records of one session loaded under its lock.

    Records are read lazily; on commit only those whose content changed are
    written back.
    """

    def __init__(self, store: "SessionStore", handle: SessionHandle) -> None:
        self._store = store
        self.handle = handle
        self._loaded: dict[str, tuple[BaseModel, str]] = {}

    def _get(self, key: str, loader: Callable[[], M]) -> M:
        if key not in self._loaded:
            record = loader()
            self._loaded[key] = (record, record.model_dump_json())
        return self._loaded[key][0]  # type: ignore[return-value]

    @property
    def state(self) -> StateRecord:
        return self._get("state", lambda: _load_yaml_model(self.handle.state_path, StateRecord))

    @property
    def plan(self) -> ImplementationPlan:
        return self._get(
            "plan", lambda: _load_yaml_model(self.handle.plan_path, ImplementationPlan)
        )

    @property
    def metadata(self) -> SessionMetadata:
        return self._get(
            "metadata", lambda: _load_json_model(self.handle.metadata_path, SessionMetadata)
        )

    def touch_state(self) -> None:
        """Force the state record to be written so ``last_updated`` advances."""

        record = self.state
        self._loaded["state"] = (record, "")

    def replace_plan(self, plan: ImplementationPlan) -> None:
        original = self._loaded.get("plan", (None, ""))[1]
        self._loaded["plan"] = (plan, original)

    def _changed(self, key: str) -> BaseModel | None:
        entry = self._loaded.get(key)
        if entry is None:
            return None
        record, snapshot = entry
        return record if record.model_dump_json() != snapshot else None

    def commit(self) -> bool:
        """Write changed records; return True when the state record was touched."""

        plan = self._changed("plan")
        if plan is not None:
            ImplementationPlan.model_validate(plan.model_dump())
            atomic_write_yaml(self.handle.plan_path, plan.model_dump(mode="json"))

        metadata = self._changed("metadata")
        if metadata is not None:
            atomic_write_json(self.handle.metadata_path, metadata.model_dump(mode="json"))

        if self._changed("state") is None:
            return False
        state = self.state
        state.current_state.last_updated = format_timestamp(self._store.now())
        atomic_write_yaml(self.handle.state_path, state.model_dump(mode="json"))
        return True


class SessionStore:
    """Owns every session directory under ``root`` and the active-features registry."""

    def __init__(
        self,
        root: Path | str,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        clock: Callable[[], datetime] | None = None,
        default_model: str = "sonnet",
    ) -> None:
        self._root = Path(root).expanduser()
        self._lock_timeout = lock_timeout
        self._clock = clock or utc_now
        self._default_model = default_model
        self.registry = ActiveFeatureRegistry(
            self._root, lock_timeout=lock_timeout, clock=self._clock
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def lock_timeout(self) -> float:
        return self._lock_timeout

    def now(self) -> datetime:
        return self._clock()

    def _ensure_root(self) -> None:
        if not self._root.exists():
            self._root.mkdir(parents=True, exist_ok=True)
            os.chmod(self._root, SESSION_DIR_MODE)

    def _session_path(self, feature_id: str) -> Path:
        return self._root / validate_identifier(feature_id)

    # -- lifecycle -----------------------------------------------------------

    def exists(self, feature_id: str) -> bool:
        return self._session_path(feature_id).exists()

    def init(self, feature_id: str, description: str | None = None) -> SessionHandle:
        """Create a new session, or raise without leaving anything behind."""

        target = self._session_path(feature_id)
        if os.path.lexists(target):
            raise AlreadyExists(feature_id)

        self._ensure_root()
        with self.registry.lock():
            if os.path.lexists(target):
                raise AlreadyExists(feature_id)

            staging = Path(
                tempfile.mkdtemp(prefix=f"{STAGING_PREFIX}{feature_id}-", dir=str(self._root))
            )
            try:
                self._populate(staging, feature_id, description)
                os.rename(staging, target)
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise

            try:
                self.registry.register_unlocked(feature_id)
            except BaseException:
                shutil.rmtree(target, ignore_errors=True)
                raise

        logger.info("Initialized session", extra={"feature_id": feature_id, "path": str(target)})
        return SessionHandle(feature_id=feature_id, path=target)

    def _populate(self, directory: Path, feature_id: str, description: str | None) -> None:
        os.chmod(directory, SESSION_DIR_MODE)
        stamp = format_timestamp(self.now())
        title = description or DEFAULT_DESCRIPTION

        (directory / ARTIFACTS_DIRNAME).mkdir(mode=SESSION_DIR_MODE)
        atomic_write_text(directory / LOCK_FILENAME, "")
        atomic_write_text(directory / HISTORY_FILENAME, "")

        state = StateRecord(
            feature_id=feature_id,
            current_state=SessionState(
                active_task=None,
                model_in_use=self._default_model,
                started_at=stamp,
                last_updated=stamp,
            ),
        )
        atomic_write_yaml(directory / STATE_FILENAME, state.model_dump(mode="json"))

        plan = ImplementationPlan(
            feature=FeatureInfo(id=feature_id, name=title, description=title, created_at=stamp)
        )
        atomic_write_yaml(directory / PLAN_FILENAME, plan.model_dump(mode="json"))

        metadata = SessionMetadata(created_at=stamp, last_used=stamp, session_name=feature_id)
        atomic_write_json(directory / METADATA_FILENAME, metadata.model_dump(mode="json"))

    def get(self, feature_id: str) -> SessionHandle:
        path = self._session_path(feature_id)
        if not path.is_dir():
            raise NotFound(feature_id)
        missing = [name for name in REQUIRED_FILES if not (path / name).is_file()]
        if missing:
            raise MalformedRecord(path, f"incomplete session, missing {', '.join(missing)}")
        return SessionHandle(feature_id=feature_id, path=path)

    def ensure(self, feature_id: str, description: str | None = None) -> SessionHandle:
        """Return the session, initializing it first if it does not exist yet."""

        try:
            return self.get(feature_id)
        except NotFound:
            pass
        try:
            return self.init(feature_id, description)
        except AlreadyExists:
            return self.get(feature_id)

    def session_names(self) -> list[str]:
        """Names of session directories; staging and trash entries are skipped."""

        if not self._root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self._root.iterdir()
            if entry.is_dir() and is_valid_identifier(entry.name)
        )

    def remove(self, feature_id: str) -> None:
        """Delete a session all-or-nothing: it disappears in a single rename."""

        path = self._session_path(feature_id)
        if not path.is_dir():
            raise NotFound(feature_id)

        trash = self._root / f"{TRASH_PREFIX}{feature_id}-{uuid4().hex[:8]}"
        with FileLock(path / LOCK_FILENAME, timeout=self._lock_timeout):
            os.rename(path, trash)

        try:
            shutil.rmtree(trash)
        except OSError as exc:
            logger.warning(
                "Removed session left debris behind",
                extra={"feature_id": feature_id, "trash": str(trash), "error": str(exc)},
            )
        self.registry.retire(feature_id)
        logger.info("Removed session", extra={"feature_id": feature_id})

    # -- locked access ---------------------------------------------------------

    def _handle(self, session: SessionHandle | str) -> SessionHandle:
        return session if isinstance(session, SessionHandle) else self.get(session)

    def lock(self, session: SessionHandle | str) -> FileLock:
        return FileLock(self._handle(session).lock_path, timeout=self._lock_timeout)

    @contextmanager
    def transaction(self, session: SessionHandle | str) -> Iterator[SessionTransaction]:
        """Hold the session lock; write back changed records if the block succeeds."""

        handle = self._handle(session)
        with FileLock(handle.lock_path, timeout=self._lock_timeout):
            txn = SessionTransaction(self, handle)
            yield txn
            state_touched = txn.commit()
        if state_touched:
            self.registry.touch(handle.feature_id)

    def read_state(self, session: SessionHandle | str) -> StateRecord:
        with self.transaction(session) as txn:
            return txn.state.model_copy(deep=True)

    def update_state(
        self,
        session: SessionHandle | str,
        *,
        active_task: str | None | object = _UNSET,
        model_in_use: str | None = None,
    ) -> StateRecord:
        """Update selected state fields; ``active_task=None`` clears the task."""

        with self.transaction(session) as txn:
            current = txn.state.current_state
            if active_task is not _UNSET:
                current.active_task = active_task  # type: ignore[assignment]
            if model_in_use is not None:
                current.model_in_use = model_in_use
            txn.touch_state()
            state = txn.state
        return state.model_copy(deep=True)

    def read_plan(self, session: SessionHandle | str) -> ImplementationPlan:
        with self.transaction(session) as txn:
            return txn.plan.model_copy(deep=True)

    def write_plan(self, session: SessionHandle | str, plan: ImplementationPlan) -> None:
        with self.transaction(session) as txn:
            txn.replace_plan(plan)

    def update_plan(
        self, session: SessionHandle | str, fn: Callable[[ImplementationPlan], T]
    ) -> T:
        with self.transaction(session) as txn:
            return fn(txn.plan)

    def read_metadata(self, session: SessionHandle | str) -> SessionMetadata:
        with self.transaction(session) as txn:
            return txn.metadata.model_copy(deep=True)

    def update_metadata(
        self, session: SessionHandle | str, fn: Callable[[SessionMetadata], T]
    ) -> T:
        with self.transaction(session) as txn:
            return fn(txn.metadata)

    def history(self, session: SessionHandle | str) -> HistoryLog:
        handle = self._handle(session)
        return HistoryLog(handle.history_path, handle.lock_path, lock_timeout=self._lock_timeout)

    def append_history(
        self, session: SessionHandle | str, record: HistoryRecord | dict[str, Any]
    ) -> HistoryRecord:
        handle = self._handle(session)
        if isinstance(record, dict):
            payload = {"timestamp": format_timestamp(self.now()), "feature_id": handle.feature_id}
            payload.update(record)
            record = HistoryRecord.model_validate(payload)
        return self.history(handle).append(record)

    def read_history(
        self, session: SessionHandle | str, *, strict: bool = False
    ) -> list[HistoryRecord]:
        return self.history(session).read(strict=strict)


__all__ = [
    "ARTIFACTS_DIRNAME",
    "HISTORY_FILENAME",
    "LOCK_FILENAME",
    "METADATA_FILENAME",
    "PLAN_FILENAME",
    "STATE_FILENAME",
    "SessionHandle",
    "SessionStore",
    "SessionTransaction",
]
