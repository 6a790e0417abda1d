from __future__ import annotations

import pytest

from ai_orchestrator.errors import InvalidIdentifier
from ai_orchestrator.identifiers import is_valid_identifier, validate_identifier


@pytest.mark.parametrize("value", ["auth-feature", "a", "login-api-2", "x1-y2"])
def test_valid_identifiers(value: str) -> None:
    assert validate_identifier(value) == value
    assert is_valid_identifier(value)


@pytest.mark.parametrize(
    "value",
    ["", "Auth", "with space", "a/b", "..", "../escape", "1abc", "-lead", "under_score", "dot.name"],
)
def test_invalid_identifiers_rejected(value: str) -> None:
    assert not is_valid_identifier(value)
    with pytest.raises(InvalidIdentifier) as excinfo:
        validate_identifier(value)
    assert excinfo.value.value == value


def test_invalid_identifier_is_value_error() -> None:
    with pytest.raises(ValueError):
        validate_identifier("Nope", kind="session name")


def test_non_string_is_invalid() -> None:
    assert not is_valid_identifier(None)  # type: ignore[arg-type]
