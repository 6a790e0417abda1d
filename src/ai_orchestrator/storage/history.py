"""Append-only JSON-Lines audit log for a session."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping

from pydantic import ValidationError

from ..errors import MalformedRecord
from .locking import DEFAULT_LOCK_TIMEOUT, FileLock
from .models import HistoryRecord

logger = logging.getLogger(__name__)


class HistoryLog:
    """Single-writer-at-a-time ledger of orchestrator actions.

    Records are only ever appended. A line left truncated by a crash
    mid-write is tolerated on read and terminated before the next append,
    so one torn write never poisons the rest of the file.
    """

    def __init__(
        self,
        path: Path | str,
        lock_path: Path | str,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        self._path = Path(path)
        self._lock_path = Path(lock_path)
        self._lock_timeout = lock_timeout

    @property
    def path(self) -> Path:
        return self._path

    def append(self, record: HistoryRecord | Mapping[str, Any]) -> HistoryRecord:
        """Validate and append one record as a single JSON line."""

        if not isinstance(record, HistoryRecord):
            record = HistoryRecord.model_validate(dict(record))
        line = json.dumps(record.model_dump(mode="json", exclude_none=True), ensure_ascii=False)
        payload = (line + "\n").encode("utf-8")

        with FileLock(self._lock_path, timeout=self._lock_timeout):
            with self._path.open("ab+") as handle:
                handle.seek(0, os.SEEK_END)
                if handle.tell() > 0:
                    handle.seek(-1, os.SEEK_END)
                    if handle.read(1) != b"\n":
                        logger.warning(
                            "Terminating truncated history line before append",
                            extra={"path": str(self._path)},
                        )
                        payload = b"\n" + payload
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
        return record

    def read(self, *, strict: bool = False) -> list[HistoryRecord]:
        """Return all committed records in insertion order.

        A malformed final line is skipped silently. Malformed lines elsewhere
        are skipped with a warning, or raise MalformedRecord when ``strict``.
        """

        with FileLock(self._lock_path, timeout=self._lock_timeout):
            if not self._path.exists():
                return []
            raw = self._path.read_bytes()

        lines = raw.decode("utf-8", errors="replace").split("\n")
        if lines and lines[-1] == "":
            lines.pop()

        records: list[HistoryRecord] = []
        last_index = len(lines) - 1
        for index, line in enumerate(lines):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
                if not isinstance(data, dict):
                    raise ValueError("history line is not a JSON object")
                records.append(HistoryRecord.model_validate(data))
            except (ValueError, ValidationError) as exc:
                if index == last_index:
                    logger.debug(
                        "Ignoring malformed trailing history line",
                        extra={"path": str(self._path)},
                    )
                    continue
                if strict:
                    raise MalformedRecord(self._path, f"line {index + 1}: {exc}") from exc
                logger.warning(
                    "Skipping malformed history line",
                    extra={"path": str(self._path), "line": index + 1},
                )
        return records

    def tail(self, count: int) -> list[HistoryRecord]:
        if count <= 0:
            return []
        return self.read()[-count:]

    def filter(
        self,
        *,
        command: str | None = None,
        model: str | None = None,
        status: str | None = None,
        task_id: str | None = None,
        limit: int | None = None,
    ) -> list[HistoryRecord]:
        """Return records matching every provided field, keeping the latest ``limit``."""

        records = [
            record
            for record in self.read()
            if (command is None or record.command == command)
            and (model is None or record.model == model)
            and (status is None or record.status == status)
            and (task_id is None or record.task_id == task_id)
        ]
        if limit is not None and limit > 0:
            records = records[-limit:]
        return records

    def count(self) -> int:
        return len(self.read())


__all__ = ["HistoryLog"]
