"""Canonical identifier handling.

User and group references reach the core as bare strings or ints, as objects
carrying an ``id``/``user_id`` attribute, or as mappings from upstream payloads
(``{"_id": ...}``, ``{"userId": {"_id": ...}}``). Everything is normalized to a
plain stripped string before any comparison or storage.
"""

from collections.abc import Mapping
from typing import Annotated, Any

from pydantic import BeforeValidator

from .exceptions import InvalidIdentifierError

_MAPPING_KEYS = ("id", "_id", "user_id", "userId")
_ATTRIBUTE_KEYS = ("id", "user_id")


def normalize_id(value: Any) -> str:
    """
    Normalize a user or group reference to its canonical string id.

    Args:
        value: Bare id, wrapped reference object, or populated record

    Returns:
        Canonical identifier string

    Raises:
        InvalidIdentifierError: If no usable identifier can be extracted
    """
    # bool is an int subclass but never a valid id
    if value is None or isinstance(value, bool):
        raise InvalidIdentifierError(f"Invalid identifier: {value!r}")

    if isinstance(value, str):
        normalized = value.strip()
        if not normalized:
            raise InvalidIdentifierError("Identifier cannot be blank")
        return normalized

    if isinstance(value, int):
        return str(value)

    if isinstance(value, Mapping):
        for key in _MAPPING_KEYS:
            if key in value and value[key] is not None:
                return normalize_id(value[key])
        raise InvalidIdentifierError(f"No identifier found in {dict(value)!r}")

    for attr in _ATTRIBUTE_KEYS:
        inner = getattr(value, attr, None)
        if inner is not None:
            return normalize_id(inner)

    raise InvalidIdentifierError(f"Invalid identifier: {value!r}")


def normalize_ids(values: list[Any]) -> list[str]:
    """Normalize a list of references, preserving order."""
    return [normalize_id(value) for value in values]


def user_channel(user_id: str) -> str:
    """Realtime channel name for a user's private stream."""
    return f"user:{user_id}"


def group_channel(group_id: str) -> str:
    """Realtime channel name for a group's shared stream."""
    return f"group:{group_id}"


UserId = Annotated[str, BeforeValidator(normalize_id)]
GroupId = Annotated[str, BeforeValidator(normalize_id)]
