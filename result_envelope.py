"""Uniform result envelopes for tool handlers."""

from __future__ import annotations

from typing import Any, Dict

from claimsmcp.tool_json import dumps_text, to_jsonable


Envelope = Dict[str, Any]


def to_result_payload(result: Any, metadata: dict | None = None) -> Envelope:
    metadata = dict(metadata or {})
    if isinstance(result, (list, tuple)):
        rows = list(result)
        return {"rows": rows, "rowCount": len(rows), "metadata": metadata}
    if result is None:
        return {"rows": [], "rowCount": 0, "metadata": metadata}
    if isinstance(result, bool):
        return {"rows": [], "rowCount": 1 if result else 0, "metadata": metadata}
    if isinstance(result, int):
        return {"rows": [], "rowCount": result, "metadata": metadata}
    return {"result": result, "metadata": metadata}


def count_affected(value: Any) -> int:
    """Collapse a store's update outcome (number, rows, record) into a count."""
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, (list, tuple)):
        return len(value)
    return 1 if value else 0


def to_call_tool_result(payload: Any, is_error: bool = False) -> dict:
    text = payload if isinstance(payload, str) else dumps_text(to_jsonable(payload))
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def error_payload(issues: list[dict]) -> dict:
    return {"ok": False, "errors": issues, "warnings": []}
