"""Errors raised by the abuse engine to its callers."""

from __future__ import annotations


class InvalidIdentifier(ValueError):
    """Raised when a caller passes an empty or malformed subject identifier."""

    def __init__(self, field: str, value: object = None) -> None:
        super().__init__(f"invalid identifier for {field}: {value!r}")
        self.field = field
        self.value = value


def require_identifier(field: str, value: object) -> str:
    """Return the stripped identifier or raise InvalidIdentifier."""

    if not isinstance(value, str):
        raise InvalidIdentifier(field, value)
    cleaned = value.strip()
    if not cleaned:
        raise InvalidIdentifier(field, value)
    return cleaned
