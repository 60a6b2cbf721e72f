"""Canonical serialization of callback results.

The stored bytes are what every replay returns, so serialization must be
deterministic: sorted keys, no extra whitespace, UTF-8.
"""

from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel


def _default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Decimal | UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, set | frozenset):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(value: Any) -> str:
    """Serialize to canonical JSON text.

    Raises:
        TypeError: If the value contains an unsupported type.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_default)


def serialize_response(value: Any) -> bytes:
    """Serialize a callback result to the bytes stored on the record."""
    return canonical_json(value).encode("utf-8")


def deserialize_response(data: bytes) -> Any:
    """Decode stored response bytes for a replay."""
    return json.loads(data.decode("utf-8"))
