"""JSON conversion for tool results returned to the agent."""

from __future__ import annotations

import json
import math
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any


class ToolJsonTypeError(TypeError):
    """Raised when a value has no JSON representation for the agent."""


def _iso(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def to_jsonable(obj: Any, path: str = "$") -> Any:
    """Convert store values (datetimes, decimals, UUIDs, tuples) to JSON primitives.

    Rules:
    - Dict keys must be strings.
    - Non-finite floats are rejected.
    - Decimals become floats when exact enough, strings otherwise.
    """
    if obj is None or isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite float at {path}: {obj!r}")
        return obj
    if isinstance(obj, dict):
        out = {}
        for key, value in obj.items():
            if not isinstance(key, str):
                raise ToolJsonTypeError(f"Unsupported key type at {path}: {type(key).__name__}")
            out[key] = to_jsonable(value, f"{path}.{key}")
        return out
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(item, f"{path}[{idx}]") for idx, item in enumerate(obj)]
    if isinstance(obj, datetime):
        return _iso(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        as_float = float(obj)
        return as_float if Decimal(str(as_float)) == obj else str(obj)
    if isinstance(obj, uuid.UUID):
        return str(obj)
    raise ToolJsonTypeError(f"Unsupported type at {path}: {type(obj).__name__}")


def dumps_text(obj: Any) -> str:
    return json.dumps(to_jsonable(obj), ensure_ascii=False, indent=2, allow_nan=False)
