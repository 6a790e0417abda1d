"""Error taxonomy shared by the session store and the workflows built on it."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable


class OrchestratorError(RuntimeError):
    """Base class for all orchestrator errors."""


class InvalidIdentifier(OrchestratorError, ValueError):
    """Raised when a feature id or session name fails validation."""

    def __init__(self, value: str, kind: str = "feature id") -> None:
        self.value = value
        self.kind = kind
        super().__init__(
            f"Invalid {kind} {value!r}: must start with a lowercase letter and contain "
            "only lowercase letters, digits, and hyphens"
        )


class AlreadyExists(OrchestratorError):
    """Raised when initializing a session that already exists."""

    def __init__(self, feature_id: str) -> None:
        self.feature_id = feature_id
        super().__init__(f"Session already exists: {feature_id}")


class NotFound(OrchestratorError):
    """Raised when an operation targets an unknown session or task."""

    def __init__(self, name: str, kind: str = "Session") -> None:
        self.name = name
        self.kind = kind
        super().__init__(f"{kind} not found: {name}")


class LockTimeout(OrchestratorError):
    """Raised when a resource lock cannot be acquired in time. Retryable."""

    def __init__(self, resource: Path | str, timeout: float, elapsed: float) -> None:
        self.resource = str(resource)
        self.timeout = timeout
        self.elapsed = elapsed
        super().__init__(
            f"Unable to acquire lock on {self.resource} after {elapsed:.2f}s (timeout {timeout:.2f}s)"
        )


class ExternalCallFailure(OrchestratorError):
    """Raised when the external model command fails, times out, or returns nothing."""

    def __init__(
        self,
        command: str,
        *,
        returncode: int | None,
        stderr: str = "",
        duration_ms: int = 0,
        timed_out: bool = False,
        reason: str | None = None,
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.duration_ms = duration_ms
        self.timed_out = timed_out
        if reason is None:
            if timed_out:
                reason = "timed out"
            else:
                reason = f"failed with exit code {returncode}"
        self.reason = reason
        message = f"Command '{command}' {reason} after {duration_ms}ms"
        if stderr.strip():
            message = f"{message}: {stderr.strip()[:500]}"
        super().__init__(message)


class MalformedRecord(OrchestratorError):
    """Raised when a metadata, state, plan, or history file fails validation."""

    def __init__(self, path: Path | str, detail: str) -> None:
        self.path = str(path)
        self.detail = detail
        super().__init__(f"Malformed record in {self.path}: {detail}")


class DependencyOrderError(OrchestratorError):
    """Raised when a task is advanced before its dependencies are completed."""

    def __init__(self, task_id: str, pending: Iterable[str]) -> None:
        self.task_id = task_id
        self.pending = sorted(pending)
        super().__init__(
            f"Task '{task_id}' has incomplete dependencies: {', '.join(self.pending)}"
        )


class InvalidTransition(OrchestratorError):
    """Raised when a task status change would move backwards."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Task '{task_id}' cannot move from {current} to {target}")


__all__ = [
    "AlreadyExists",
    "DependencyOrderError",
    "ExternalCallFailure",
    "InvalidIdentifier",
    "InvalidTransition",
    "LockTimeout",
    "MalformedRecord",
    "NotFound",
    "OrchestratorError",
]
