"""Validation for feature ids and session names.

Identifiers become directory names under the session root, so every id is
checked here before it touches the filesystem.
"""

from __future__ import annotations

import re

from .errors import InvalidIdentifier

IDENTIFIER_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")


def is_valid_identifier(value: object) -> bool:
    if not isinstance(value, str) or not value:
        return False
    return IDENTIFIER_PATTERN.fullmatch(value) is not None


def validate_identifier(value: object, kind: str = "feature id") -> str:
    """Return ``value`` unchanged or raise :class:`InvalidIdentifier`."""

    if not is_valid_identifier(value):
        raise InvalidIdentifier(str(value) if value is not None else "", kind)
    return value  # type: ignore[return-value]


__all__ = ["IDENTIFIER_PATTERN", "is_valid_identifier", "validate_identifier"]
