import asyncio
import json
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.claims_model import build_model
from app.stores import MemoryRecordStore
from draft_tools import DraftTools
from request_context import current_user_id
from tool_dispatch import ToolDispatcher
from tool_errors import UnsupportedOperation
from tool_manifest import TOOL_NAMES, normalize_tool_name


class BrokenStore(MemoryRecordStore):
    async def select(self, query):
        raise RuntimeError("connection reset")


def _payload(result: dict) -> dict:
    return json.loads(result["content"][0]["text"])


class TestToolManifest(unittest.TestCase):
    def test_nine_tools_with_required_fields(self) -> None:
        dispatcher = ToolDispatcher(DraftTools(build_model(), MemoryRecordStore()))
        tools = dispatcher.list_tools()["tools"]
        self.assertEqual(
            [t["name"] for t in tools],
            [
                "execute-raw",
                "read",
                "draft.new",
                "draft.edit",
                "draft.patch",
                "draft.save",
                "draft.cancel",
                "draft.getAdminData",
                "draft.addChild",
            ],
        )
        required = {t["name"]: t["inputSchema"]["required"] for t in tools}
        self.assertEqual(required["execute-raw"], ["sql"])
        self.assertEqual(required["draft.addChild"], ["entity", "child"])
        self.assertEqual(required["draft.patch"], ["entity"])
        self.assertFalse(tools[3]["inputSchema"]["additionalProperties"])

    def test_listing_is_a_copy(self) -> None:
        dispatcher = ToolDispatcher(DraftTools(build_model(), MemoryRecordStore()))
        dispatcher.list_tools()["tools"][0]["name"] = "changed"
        self.assertEqual(dispatcher.list_tools()["tools"][0]["name"], "execute-raw")

    def test_name_normalization(self) -> None:
        self.assertEqual(normalize_tool_name(" draft.new "), "draft.new")
        self.assertEqual(normalize_tool_name("cap.draft.patch"), "draft.patch")
        self.assertEqual(normalize_tool_name("mcp__cap__draft__addChild"), "draft.addChild")
        self.assertEqual(normalize_tool_name("sql.execute"), "execute-raw")
        self.assertEqual(normalize_tool_name(None), "")
        self.assertIn("draft.getAdminData", TOOL_NAMES)


class TestToolDispatcher(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.tools = DraftTools(build_model(), MemoryRecordStore())
        self.dispatcher = ToolDispatcher(self.tools)

    async def test_successful_call_returns_one_text_block(self) -> None:
        result = await self.dispatcher.call_tool({"name": "read", "arguments": {"entity": "Claims"}})
        self.assertFalse(result["isError"])
        self.assertEqual(len(result["content"]), 1)
        self.assertEqual(
            _payload(result),
            {"rows": [], "rowCount": 0, "metadata": {"entity": "kfz.claims.Claims", "draft": "merged"}},
        )

    async def test_unknown_tool_lists_supported_names(self) -> None:
        result = await self.dispatcher.call_tool({"name": "draft.publish", "arguments": {}})
        self.assertTrue(result["isError"])
        error = _payload(result)["errors"][0]
        self.assertEqual(error["code"], "UnknownTool")
        self.assertIn("draft.addChild", error["message"])
        self.assertEqual(error["detail"]["supported"], TOOL_NAMES)

    async def test_missing_name(self) -> None:
        result = await self.dispatcher.call_tool({"arguments": {}})
        self.assertEqual(_payload(result)["errors"][0]["code"], "InvalidArguments")

    async def test_aliases_route_to_handlers(self) -> None:
        created = await self.dispatcher.call_tool({"name": "cap.draft.new", "arguments": {"entity": "Claims"}})
        self.assertFalse(created["isError"])
        cancelled = await self.dispatcher.call_tool({"name": "mcp__draft__cancel", "arguments": {"entity": "Claims"}})
        self.assertEqual(_payload(cancelled)["rowCount"], 1)

    async def test_tool_errors_become_error_text(self) -> None:
        result = await self.dispatcher.call_tool({"name": "draft.patch", "arguments": {"entity": "Claims"}})
        self.assertTrue(result["isError"])
        payload = _payload(result)
        self.assertFalse(payload["ok"])
        self.assertEqual(payload["errors"][0]["code"], "EmptyPatch")
        self.assertEqual(payload["warnings"], [])

    async def test_store_errors_become_error_text(self) -> None:
        result = await self.dispatcher.call_tool({"name": "execute-raw", "arguments": {"sql": "SELECT 1"}})
        self.assertTrue(result["isError"])
        self.assertEqual(_payload(result)["errors"][0]["code"], "RECORD_STORE_ERROR")

    async def test_unexpected_errors_are_contained(self) -> None:
        dispatcher = ToolDispatcher(DraftTools(build_model(), BrokenStore()))
        with self.assertLogs("claimsmcp.tools", level="WARNING"):
            result = await dispatcher.call_tool({"name": "read", "arguments": {"entity": "Claims"}})
        self.assertTrue(result["isError"])
        error = _payload(result)["errors"][0]
        self.assertEqual(error["code"], "TOOL_ERROR")
        self.assertEqual(error["message"], "connection reset")

    async def test_non_object_arguments_are_ignored(self) -> None:
        result = await self.dispatcher.call_tool({"name": "read", "arguments": ["Claims"]})
        self.assertEqual(_payload(result)["errors"][0]["code"], "UnknownEntity")

    async def test_concurrent_calls_use_their_own_user(self) -> None:
        results = await asyncio.gather(
            *[
                self.dispatcher.call_tool(
                    {"name": "draft.new", "arguments": {"entity": "Claims"}},
                    {"user": f"adjuster-{i}"},
                )
                for i in range(4)
            ]
        )
        self.assertEqual(
            [_payload(r)["result"]["createdBy"] for r in results],
            [f"adjuster-{i}" for i in range(4)],
        )

    async def test_run_with_context(self) -> None:
        async def whoami() -> str:
            return current_user_id()

        self.assertEqual(await self.dispatcher.run_with_context({"user": "agent-7"}, whoami), "agent-7")

    async def test_resources_and_close(self) -> None:
        with self.assertRaises(UnsupportedOperation):
            await self.dispatcher.read_resource("claims://anything")
        await self.dispatcher.call_tool({"name": "draft.new", "arguments": {"entity": "Claims"}})
        self.assertEqual(self.tools.cache.size("kfz.claims.Claims"), 1)
        await self.dispatcher.close()
        self.assertEqual(self.tools.cache.size("kfz.claims.Claims"), 0)


if __name__ == "__main__":
    unittest.main()
