from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def _to_json_value(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Reduce models, enums and timestamps to the JSON primitives rfc8785 accepts.

    Raises:
        TypeError: If ``value`` holds a type with no JSON form.
    """
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_json_value(value.model_dump(mode="json", exclude_none=True))
    if isinstance(value, dict):
        return {str(key): _to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_value(item) for item in value]
    if isinstance(value, Enum):
        return _to_json_value(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize ``value`` to RFC 8785 canonical JSON.

    Prompts embed requirements and plans in this form so the same session
    state always renders the same prompt text.
    """
    return rfc8785.dumps(_to_json_value(value)).decode("utf-8")


def fingerprint(value: Any) -> str:
    """Return the SHA-256 hex digest of the canonical JSON form of ``value``."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
