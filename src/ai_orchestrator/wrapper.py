"""Run a model CLI against a named session with accounting and an audit trail."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from .analytics import AnalyticsEngine
from .errors import ExternalCallFailure, OrchestratorError
from .identifiers import validate_identifier
from .runner.runner import (
    ModelExecutionResult,
    ModelResponse,
    ModelRunner,
    ModelRunnerError,
    parse_model_output,
    serialize_result,
)
from .storage.models import InteractionRecord, format_timestamp, utc_now
from .storage.session_store import SessionHandle, SessionStore

NOT_FOUND_EXIT_CODE = 127

RunnerFactory = Callable[[str], ModelRunner]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InvocationResult:
    command: str
    model: str
    response: ModelResponse
    execution: ModelExecutionResult
    session: SessionHandle | None = None
    interaction: InteractionRecord | None = None

    @property
    def text(self) -> str:
        return self.response.text

    @property
    def duration_ms(self) -> int:
        return self.execution.duration_ms

    @property
    def session_name(self) -> str | None:
        return self.session.feature_id if self.session else None


def format_json_output(result: InvocationResult, *, timestamp: str | None = None) -> str:
    """Pass JSON output through untouched; wrap plain text in a JSON envelope."""

    if result.response.is_json:
        return result.execution.stdout.strip()
    payload = {
        "response": result.response.text,
        "timestamp": timestamp or format_timestamp(utc_now()),
        "duration": f"{result.duration_ms}ms",
        "session_name": result.session_name or "",
    }
    return json.dumps(payload, indent=2)


class CommandWrapper:
    """Invoke a model command and keep the session's books.

    The model call itself runs outside every lock; only the bookkeeping
    before and after it touches the session store.
    """

    def __init__(
        self,
        store: SessionStore,
        analytics: AnalyticsEngine,
        runner_factory: RunnerFactory,
    ) -> None:
        self._store = store
        self._analytics = analytics
        self._runner_factory = runner_factory

    @property
    def store(self) -> SessionStore:
        return self._store

    async def invoke(
        self,
        command: str,
        prompt: str,
        *,
        timeout: float,
        session_name: str | None = None,
        model: str | None = None,
        continue_session: bool = False,
        resume_id: str | None = None,
        fresh_context: bool = False,
        history_command: str = "invoke",
        task_id: str | None = None,
        agent: str | None = None,
        task_status: str | None = None,
        extra_flags: Sequence[str] = (),
        history_metadata: Mapping[str, Any] | None = None,
    ) -> InvocationResult:
        """Run ``command`` once; raise ExternalCallFailure on failure, timeout or empty output."""

        handle: SessionHandle | None = None
        if session_name is not None:
            validate_identifier(session_name, kind="session name")
            handle = self._store.ensure(session_name)

        if fresh_context:
            continue_session = False
            resume_id = None
        elif handle is not None and not continue_session and not resume_id:
            if self._store.read_metadata(handle).session_id:
                logger.debug(
                    "Continuing stored model session", extra={"session_name": handle.feature_id}
                )
                continue_session = True

        audit = _AuditContext(
            command=history_command,
            task_id=task_id,
            agent=agent,
            task_status=task_status,
            fresh_context=fresh_context,
            metadata=dict(history_metadata or {}),
        )

        try:
            runner = self._runner_factory(command)
        except ModelRunnerError as exc:
            failure = ExternalCallFailure(
                command, returncode=NOT_FOUND_EXIT_CODE, stderr=str(exc), reason="could not be started"
            )
            self._audit_failure(handle, audit, model or command, failure)
            raise failure from exc

        execution = await runner.run(
            prompt,
            model=model,
            timeout=timeout,
            continue_session=continue_session,
            resume_id=resume_id,
            extra_flags=extra_flags,
        )
        logger.debug("Model command finished", extra={"result": serialize_result(execution)})

        response = parse_model_output(execution.stdout)
        model_name = model or response.model or command

        if not execution.ok or not response.text.strip():
            reason = None
            if execution.ok:
                reason = "produced empty output"
            failure = ExternalCallFailure(
                command,
                returncode=execution.returncode,
                stderr=execution.stderr,
                duration_ms=execution.duration_ms,
                timed_out=execution.timed_out,
                reason=reason,
            )
            if handle is not None and response.usage:
                self._analytics.record(
                    handle,
                    model=model_name,
                    prompt=prompt,
                    response=response.text,
                    duration_ms=execution.duration_ms,
                    usage=response.usage,
                    session_id=None if fresh_context else response.session_id,
                    command=command,
                )
            self._audit_failure(handle, audit, model_name, failure)
            raise failure

        interaction = None
        if handle is not None:
            interaction = self._analytics.record(
                handle,
                model=model_name,
                prompt=prompt,
                response=response.text,
                duration_ms=execution.duration_ms,
                usage=response.usage,
                session_id=None if fresh_context else response.session_id,
                command=command,
            )
            audit.metadata.setdefault("cost", interaction.cost)
            self._store.append_history(
                handle,
                audit.record(model_name, "success", execution.duration_ms),
            )

        logger.info(
            "Model command succeeded",
            extra={"command": command, "model": model_name, "duration_ms": execution.duration_ms},
        )
        return InvocationResult(
            command=command,
            model=model_name,
            response=response,
            execution=execution,
            session=handle,
            interaction=interaction,
        )

    def _audit_failure(
        self,
        handle: SessionHandle | None,
        audit: "_AuditContext",
        model: str,
        failure: ExternalCallFailure,
    ) -> None:
        if handle is None:
            return
        status = "timeout" if failure.timed_out else "failure"
        record = audit.record(model, status, failure.duration_ms, error=str(failure))
        record["metadata"]["returncode"] = failure.returncode
        try:
            self._store.append_history(handle, record)
        except (OrchestratorError, OSError) as exc:
            logger.warning(
                "Could not record failure in history",
                extra={"session_name": handle.feature_id, "error": str(exc)},
            )


@dataclass(slots=True)
class _AuditContext:
    command: str
    task_id: str | None
    agent: str | None
    task_status: str | None
    fresh_context: bool
    metadata: dict[str, Any]

    def record(
        self, model: str, status: str, duration_ms: int, *, error: str | None = None
    ) -> dict[str, Any]:
        return {
            "command": self.command,
            "model": model,
            "status": status,
            "duration_ms": duration_ms,
            "task_id": self.task_id,
            "agent": self.agent,
            "task_status": self.task_status,
            "error": error,
            "fresh_context": self.fresh_context,
            "metadata": dict(self.metadata),
        }


__all__ = ["CommandWrapper", "InvocationResult", "RunnerFactory", "format_json_output"]
