from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import pytest

from ai_orchestrator.runner import (
    FakeModelRunner,
    ModelExecutionResult,
    ModelNotFoundError,
    ModelRunner,
    TIMEOUT_EXIT_CODE,
    build_arguments,
    model_environment,
    parse_model_output,
    serialize_result,
)


def _script(tmp_path: Path, name: str, body: str) -> Path:
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(0o755)
    return path


def test_build_arguments_orders_flags() -> None:
    assert build_arguments("hello") == ["-p", "hello"]
    assert build_arguments("hello", model="opus", continue_session=True) == [
        "--model",
        "opus",
        "-c",
        "-p",
        "hello",
    ]
    # An explicit resume id wins over plain continuation.
    assert build_arguments(
        "hello", continue_session=True, resume_id="abc", extra_flags=["--output-format", "json"]
    ) == ["--output-format", "json", "-r", "abc", "-p", "hello"]


def test_run_passes_arguments(tmp_path: Path) -> None:
    executable = _script(tmp_path, "claude", "printf '%s\\n' \"$@\"")
    runner = ModelRunner("claude", executable=executable)

    result = asyncio.run(runner.run("do the thing", model="sonnet", timeout=10, continue_session=True))

    assert result.ok
    assert result.stdout.splitlines() == ["--model", "sonnet", "-c", "-p", "do the thing"]
    assert result.args[0] == str(executable)
    assert result.duration_ms >= 0


def test_run_closes_stdin(tmp_path: Path) -> None:
    executable = _script(tmp_path, "claude", "cat\necho done")
    runner = ModelRunner("claude", executable=executable)

    result = asyncio.run(runner.run("prompt", timeout=5))

    assert result.ok
    assert result.stdout.strip() == "done"


def test_run_passes_extra_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "/leaky")
    executable = _script(tmp_path, "claude", "echo \"$ANTHROPIC_BASE_URL|${PYTHONPATH:-unset}\"")
    runner = ModelRunner("claude", executable=executable, env={"ANTHROPIC_BASE_URL": "http://proxy.local"})

    result = asyncio.run(runner.run("prompt", timeout=5))

    assert result.ok
    assert result.stdout.strip() == "http://proxy.local|unset"


def test_run_reports_nonzero_exit(tmp_path: Path) -> None:
    executable = _script(tmp_path, "gemini", "echo 'quota exceeded' >&2\nexit 3")
    runner = ModelRunner("gemini", executable=executable)

    result = asyncio.run(runner.run("prompt", timeout=5))

    assert not result.ok
    assert result.returncode == 3
    assert "quota exceeded" in result.stderr


def test_run_kills_process_on_timeout(tmp_path: Path) -> None:
    executable = _script(tmp_path, "claude", "exec sleep 5")
    runner = ModelRunner("claude", executable=executable)

    result = asyncio.run(runner.run("prompt", timeout=0.3))

    assert result.timed_out
    assert result.returncode == TIMEOUT_EXIT_CODE
    assert not result.ok
    assert result.duration_ms < 4000


def test_missing_explicit_executable(tmp_path: Path) -> None:
    with pytest.raises(ModelNotFoundError):
        ModelRunner("claude", executable=tmp_path / "does-not-exist")


def test_missing_command_on_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PATH", str(tmp_path))

    with pytest.raises(ModelNotFoundError):
        ModelRunner("claude")


def test_command_found_on_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    executable = _script(tmp_path, "gemini", "echo ok")
    monkeypatch.setenv("PATH", str(tmp_path))

    runner = ModelRunner("gemini")

    assert runner.executable == executable
    assert runner.command == "gemini"


def test_parse_envelope() -> None:
    stdout = json.dumps(
        {
            "response": "All done",
            "session_id": "sess-1",
            "model": "sonnet",
            "usage": {"input_tokens": 10, "output_tokens": 4},
        }
    )

    response = parse_model_output(stdout)

    assert response.is_json
    assert response.text == "All done"
    assert response.session_id == "sess-1"
    assert response.model == "sonnet"
    assert response.usage == {"input_tokens": 10, "output_tokens": 4}


def test_parse_result_envelope() -> None:
    response = parse_model_output('{"result": "text", "session_id": ""}')

    assert response.text == "text"
    assert response.session_id is None


def test_parse_plain_text_and_raw_json() -> None:
    plain = parse_model_output("just words\n")
    assert not plain.is_json
    assert plain.text == "just words\n"

    raw = parse_model_output('{"phases": []}')
    assert not raw.is_json
    assert raw.text == '{"phases": []}'

    broken = parse_model_output('{"response": ')
    assert broken.text == '{"response": '


def test_fake_runner_replays_and_records() -> None:
    failure = ModelExecutionResult(args=("x",), returncode=2, stdout="", stderr="boom")
    runner = FakeModelRunner(["first", failure], command="gemini")

    first = asyncio.run(runner.run("one", model="gemini-pro", timeout=1))
    second = asyncio.run(runner.run("two", timeout=1, resume_id="abc"))
    third = asyncio.run(runner.run("three", timeout=1))

    assert first.stdout == "first"
    assert second is failure
    assert third.stdout == ""
    assert [call["prompt"] for call in runner.invocations] == ["one", "two", "three"]
    assert runner.invocations[1]["args"] == ("-r", "abc", "-p", "two")
    assert runner.command == "gemini"


def test_serialize_result() -> None:
    result = ModelExecutionResult(
        args=("claude", "-p", "x"), returncode=124, stdout="", stderr="late", timed_out=True
    )

    payload = json.loads(serialize_result(result))

    assert payload["args"] == ["claude", "-p", "x"]
    assert payload["timed_out"] is True
    assert payload["returncode"] == 124


def test_model_environment_drops_interpreter_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "/somewhere")
    monkeypatch.setenv("VIRTUAL_ENV", "/venv")
    monkeypatch.setenv("KEEP_ME", "1")

    env = model_environment({"EXTRA": "yes"})

    assert "PYTHONPATH" not in env
    assert "VIRTUAL_ENV" not in env
    assert env["KEEP_ME"] == "1"
    assert env["EXTRA"] == "yes"
    assert os.environ["PYTHONPATH"] == "/somewhere"
