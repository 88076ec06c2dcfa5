from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def _to_json_primitive(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Reduce state payloads and models to the types rfc8785 accepts.

    Raises:
        TypeError: If value holds something with no JSON representation.
    """
    if isinstance(value, Enum):
        return _to_json_primitive(value.value)
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitive(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _to_json_primitive(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_primitive(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to RFC 8785 canonical JSON.

    Two payloads that differ only in key order produce the same text, which is
    what makes checkpoint digests and payload comparisons stable.
    """
    return rfc8785.dumps(_to_json_primitive(value)).decode("utf-8")


def content_digest(value: Any) -> str:
    """Return the hex sha256 of the canonical JSON form of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()


def same_content(left: Any, right: Any) -> bool:
    return to_canonical_json(left) == to_canonical_json(right)
