"""Atomic file replacement helpers (temp file + rename)."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

PRIVATE_FILE_MODE = 0o600


def atomic_write_text(path: Path, text: str, *, mode: int = PRIVATE_FILE_MODE) -> None:
    """Write ``text`` to ``path`` so readers see either the old or the new file."""

    target = Path(path)
    fd, temp_name = tempfile.mkstemp(
        dir=str(target.parent),
        prefix=f".tmp_{target.name}_",
        text=True,
    )
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp_path, mode)
        os.replace(temp_path, target)
    except BaseException:
        try:
            temp_path.unlink()
        except OSError:
            pass
        raise


def atomic_write_json(path: Path, payload: Any, *, mode: int = PRIVATE_FILE_MODE) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2) + "\n", mode=mode)


def atomic_write_yaml(path: Path, payload: Any, *, mode: int = PRIVATE_FILE_MODE) -> None:
    atomic_write_text(path, yaml.safe_dump(payload, sort_keys=False), mode=mode)


__all__ = ["PRIVATE_FILE_MODE", "atomic_write_json", "atomic_write_text", "atomic_write_yaml"]
