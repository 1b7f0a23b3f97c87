"""Claims MCP kernel utilities."""

from .tool_json import ToolJsonTypeError, dumps_text, to_jsonable

__all__ = [
    "ToolJsonTypeError",
    "dumps_text",
    "to_jsonable",
]
