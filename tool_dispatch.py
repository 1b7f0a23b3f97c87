"""Tool dispatcher: name lookup, call-scoped context and uniform result text."""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from draft_tools import DraftTools
from record_store import RecordStoreError
from request_context import call_scope, run_with_context as _run_with_context
from result_envelope import error_payload, to_call_tool_result
from tool_errors import InvalidArguments, ToolError, UnknownTool, UnsupportedOperation
from tool_manifest import TOOL_NAMES, list_tool_definitions, normalize_tool_name


T = TypeVar("T")

logger = logging.getLogger("claimsmcp.tools")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


class ToolDispatcher:
    """Routes ``{name, arguments}`` calls to handlers; never lets an error escape."""

    def __init__(self, tools: DraftTools) -> None:
        self.tools = tools
        self._handlers = tools.handlers()

    def list_tools(self) -> dict:
        return {"tools": list_tool_definitions()}

    async def call_tool(self, request: Any, context: Any = None) -> dict:
        start = time.perf_counter()
        raw_name = request.get("name") if isinstance(request, dict) else None
        name = normalize_tool_name(raw_name)
        arguments = request.get("arguments") if isinstance(request, dict) else None
        if not isinstance(arguments, dict):
            arguments = {}
        ok = False
        try:
            with call_scope(context):
                if not name:
                    raise InvalidArguments("Tool name is required", path="name")
                handler = self._handlers.get(name)
                if handler is None:
                    raise UnknownTool(
                        f'Unknown tool "{raw_name}". Supported tools: {", ".join(TOOL_NAMES)}',
                        path="name",
                        detail={"supported": list(TOOL_NAMES)},
                    )
                payload = await handler(arguments)
                result = to_call_tool_result(payload)
            ok = True
            return result
        except ToolError as exc:
            logger.warning("tool_call_failed name=%s code=%s message=%s", name or raw_name, exc.code, exc.message)
            return to_call_tool_result(error_payload([exc.to_issue()]), is_error=True)
        except RecordStoreError as exc:
            logger.warning("tool_call_failed name=%s code=%s message=%s", name, exc.code, exc.message)
            return to_call_tool_result(error_payload([exc.to_issue()]), is_error=True)
        except Exception as exc:
            logger.warning("tool_call_failed name=%s code=TOOL_ERROR error=%s", name, exc, exc_info=True)
            message = str(exc) or type(exc).__name__
            return to_call_tool_result(error_payload([_issue("TOOL_ERROR", message)]), is_error=True)
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.info("tool_call name=%s ms=%s ok=%s", name or raw_name, round(elapsed_ms, 2), ok)

    async def run_with_context(self, context: Any, fn: Callable[[], Awaitable[T]]) -> T:
        return await _run_with_context(context, fn)

    async def read_resource(self, uri: Any = None) -> dict:
        raise UnsupportedOperation("Resources are not supported by the claims tool server.", path="uri", detail={"uri": uri})

    async def close(self) -> None:
        self.tools.cache.clear()
        logger.info("tool_dispatcher closed")
