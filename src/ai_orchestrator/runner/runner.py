"""Async runner for external model CLIs (``claude``, ``gemini``)."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from ..errors import OrchestratorError

TIMEOUT_EXIT_CODE = 124

# Interpreter and virtualenv settings of the orchestrator must not leak into
# model CLIs that may spawn their own Python tooling.
INTERPRETER_VARIABLES = frozenset({"PYTHONHOME", "PYTHONPATH", "VIRTUAL_ENV", "PIP_RESPECT_VIRTUALENV"})

logger = logging.getLogger(__name__)


class ModelRunnerError(OrchestratorError):
    """Base class for model runner errors."""


class ModelNotFoundError(ModelRunnerError):
    """Raised when a model CLI executable cannot be located."""


@dataclass(slots=True)
class ModelExecutionResult:
    """Holds the outcome of one model CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


@dataclass(slots=True)
class ModelResponse:
    """Model output normalized from plain text or the CLI's JSON envelope."""

    text: str
    session_id: str | None = None
    model: str | None = None
    usage: dict[str, Any] | None = None
    is_json: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


def parse_model_output(stdout: str) -> ModelResponse:
    """Interpret CLI output as ``{response, session_id, model, usage}`` JSON or plain text."""

    stripped = stdout.strip()
    if stripped.startswith("{"):
        try:
            document = json.loads(stripped)
        except json.JSONDecodeError:
            document = None
        # Only the CLI envelope is unwrapped; any other JSON is the answer itself.
        if isinstance(document, dict) and ("response" in document or "result" in document):
            text = document.get("response")
            if text is None:
                text = document.get("result") or ""
            usage = document.get("usage")
            return ModelResponse(
                text=text if isinstance(text, str) else json.dumps(text),
                session_id=document.get("session_id") or None,
                model=document.get("model") or None,
                usage=usage if isinstance(usage, dict) else None,
                is_json=True,
                raw=document,
            )
    return ModelResponse(text=stdout)


def model_environment(overrides: Mapping[str, str] | None = None) -> dict[str, str]:
    """The caller's environment without interpreter settings, plus ``overrides``."""

    env = {key: value for key, value in os.environ.items() if key not in INTERPRETER_VARIABLES}
    env.update(overrides or {})
    return env


def build_arguments(
    prompt: str,
    *,
    model: str | None = None,
    continue_session: bool = False,
    resume_id: str | None = None,
    extra_flags: Sequence[str] = (),
) -> list[str]:
    args: list[str] = list(extra_flags)
    if model:
        args.extend(["--model", model])
    if resume_id:
        args.extend(["-r", resume_id])
    elif continue_session:
        args.append("-c")
    args.extend(["-p", prompt])
    return args


class ModelRunner:
    """Execute a model CLI asynchronously with a hard timeout."""

    def __init__(
        self,
        command: str,
        executable: Path | str | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._command = command
        self._env = dict(env or {})
        self._executable_path = self._resolve_executable(command, executable)

    @staticmethod
    def _resolve_executable(command: str, explicit: Path | str | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit).expanduser()
            if candidate.exists() and candidate.is_file():
                return candidate
            raise ModelNotFoundError(f"{command} executable not found at {candidate}")

        binary = shutil.which(command)
        if binary is None:
            raise ModelNotFoundError(f"Command '{command}' not found on PATH")
        return Path(binary)

    @property
    def command(self) -> str:
        return self._command

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(
        self,
        prompt: str,
        *,
        model: str | None = None,
        timeout: float,
        continue_session: bool = False,
        resume_id: str | None = None,
        extra_flags: Sequence[str] = (),
    ) -> ModelExecutionResult:
        args = build_arguments(
            prompt,
            model=model,
            continue_session=continue_session,
            resume_id=resume_id,
            extra_flags=extra_flags,
        )
        return await self._invoke(*args, timeout=timeout)

    async def _invoke(self, *args: str, timeout: float) -> ModelExecutionResult:
        cmd = [str(self._executable_path), *args]
        started = time.monotonic()
        # stdin is closed: some model CLIs wait on an open stdin forever.
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=model_environment(self._env),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning(
                "Model command timed out",
                extra={"command": self._command, "timeout": timeout, "duration_ms": duration_ms},
            )
            return ModelExecutionResult(
                args=tuple(cmd),
                returncode=TIMEOUT_EXIT_CODE,
                stdout="",
                stderr=f"timed out after {timeout}s",
                duration_ms=duration_ms,
                timed_out=True,
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        return ModelExecutionResult(
            args=tuple(cmd),
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            duration_ms=duration_ms,
        )


class FakeModelRunner(ModelRunner):
    """Test double that replays canned results and records every call."""

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[ModelExecutionResult | str] | None = None,
        *,
        command: str = "claude",
    ) -> None:
        self._command = command
        self._responses = list(responses or [])
        self._invocations: list[dict[str, Any]] = []
        self._env: dict[str, str] = {}
        self._executable_path = Path(f"/tmp/fake-{command}")

    async def run(  # type: ignore[override]
        self,
        prompt: str,
        *,
        model: str | None = None,
        timeout: float,
        continue_session: bool = False,
        resume_id: str | None = None,
        extra_flags: Sequence[str] = (),
    ) -> ModelExecutionResult:
        args = build_arguments(
            prompt,
            model=model,
            continue_session=continue_session,
            resume_id=resume_id,
            extra_flags=extra_flags,
        )
        self._invocations.append(
            {
                "prompt": prompt,
                "model": model,
                "timeout": timeout,
                "continue_session": continue_session,
                "resume_id": resume_id,
                "args": tuple(args),
            }
        )
        if self._responses:
            response = self._responses.pop(0)
            if isinstance(response, str):
                return ModelExecutionResult(args=tuple(args), returncode=0, stdout=response, stderr="")
            return response
        return ModelExecutionResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[dict[str, Any]]:
        return self._invocations


def serialize_result(result: ModelExecutionResult) -> str:
    """Serialize a result for logs and ``--json`` debugging output."""

    return json.dumps(
        {
            "args": list(result.args),
            "returncode": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "duration_ms": result.duration_ms,
            "timed_out": result.timed_out,
        }
    )


__all__ = [
    "FakeModelRunner",
    "ModelExecutionResult",
    "ModelNotFoundError",
    "ModelResponse",
    "ModelRunner",
    "ModelRunnerError",
    "INTERPRETER_VARIABLES",
    "TIMEOUT_EXIT_CODE",
    "build_arguments",
    "model_environment",
    "parse_model_output",
    "serialize_result",
]
