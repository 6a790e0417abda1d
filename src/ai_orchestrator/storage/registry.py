"""Store-wide ledger of known feature ids (``active-features.yaml``)."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable

import yaml
from pydantic import ValidationError

from ..errors import MalformedRecord
from .atomic import atomic_write_yaml
from .locking import DEFAULT_LOCK_TIMEOUT, FileLock
from .models import ActiveFeature, ActiveFeatures, format_timestamp, utc_now

REGISTRY_FILENAME = "active-features.yaml"
REGISTRY_LOCK_FILENAME = "active-features.lock"

logger = logging.getLogger(__name__)


class ActiveFeatureRegistry:
    """Append-mostly registry owned by the session store.

    It has a lock of its own, distinct from every per-session lock. Session
    initialization also holds it while claiming a new directory name.
    """

    def __init__(
        self,
        root: Path | str,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._root = Path(root)
        self._path = self._root / REGISTRY_FILENAME
        self._lock_path = self._root / REGISTRY_LOCK_FILENAME
        self._lock_timeout = lock_timeout
        self._clock = clock or utc_now

    @property
    def path(self) -> Path:
        return self._path

    def lock(self) -> FileLock:
        return FileLock(self._lock_path, timeout=self._lock_timeout)

    def _load(self) -> ActiveFeatures:
        if not self._path.exists():
            return ActiveFeatures()
        try:
            document = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise MalformedRecord(self._path, str(exc)) from exc
        if document is None:
            return ActiveFeatures()
        try:
            return ActiveFeatures.model_validate(document)
        except ValidationError as exc:
            raise MalformedRecord(self._path, str(exc)) from exc

    def _save(self, ledger: ActiveFeatures) -> None:
        atomic_write_yaml(self._path, ledger.model_dump(mode="json"))

    def entries(self) -> list[ActiveFeature]:
        if not self._root.is_dir():
            # Nothing was ever initialized; there is no lock file to take yet.
            return []
        with self.lock():
            return list(self._load().active_features)

    def feature_ids(self, *, status: str | None = "active") -> list[str]:
        return [
            entry.feature_id
            for entry in self.entries()
            if status is None or entry.status == status
        ]

    def register_unlocked(self, feature_id: str) -> ActiveFeature:
        """Append ``feature_id``; the caller must already hold :meth:`lock`."""

        ledger = self._load()
        stamp = format_timestamp(self._clock())
        for entry in ledger.active_features:
            if entry.feature_id == feature_id:
                entry.status = "active"
                entry.last_active = stamp
                self._save(ledger)
                return entry
        entry = ActiveFeature(feature_id=feature_id, started_at=stamp, last_active=stamp)
        ledger.active_features.append(entry)
        self._save(ledger)
        logger.debug("Registered feature", extra={"feature_id": feature_id})
        return entry

    def register(self, feature_id: str) -> ActiveFeature:
        with self.lock():
            return self.register_unlocked(feature_id)

    def touch(self, feature_id: str) -> None:
        """Bump ``last_active`` for a known feature; unknown ids are ignored."""

        with self.lock():
            ledger = self._load()
            for entry in ledger.active_features:
                if entry.feature_id == feature_id:
                    entry.last_active = format_timestamp(self._clock())
                    self._save(ledger)
                    return

    def retire(self, feature_id: str) -> None:
        with self.lock():
            ledger = self._load()
            for entry in ledger.active_features:
                if entry.feature_id == feature_id:
                    entry.status = "removed"
                    entry.last_active = format_timestamp(self._clock())
                    self._save(ledger)
                    return


__all__ = ["ActiveFeatureRegistry", "REGISTRY_FILENAME", "REGISTRY_LOCK_FILENAME"]
