"""Model CLI invocation."""

from .runner import (
    INTERPRETER_VARIABLES,
    TIMEOUT_EXIT_CODE,
    FakeModelRunner,
    ModelExecutionResult,
    ModelNotFoundError,
    ModelResponse,
    ModelRunner,
    ModelRunnerError,
    build_arguments,
    model_environment,
    parse_model_output,
    serialize_result,
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
