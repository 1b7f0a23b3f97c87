import os
import sys
import unittest
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

os.environ["USE_DB"] = "0"
os.environ["CLAIMS_DISABLE_AUTH"] = "1"

from fastapi.testclient import TestClient

import app.main as main
from app.stores import MemoryRecordStore


class TestClaimsApi(unittest.TestCase):
    def setUp(self) -> None:
        main.dispatcher = main.build_dispatcher(store=MemoryRecordStore())
        self.client = TestClient(main.app)

    def _call(self, name: str, arguments: dict, headers: dict | None = None) -> dict:
        res = self.client.post("/tools/call", json={"name": name, "arguments": arguments}, headers=headers or {})
        self.assertEqual(res.status_code, 200)
        return res.json()

    def test_health(self) -> None:
        res = self.client.get("/health")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {"ok": True})

    def test_list_tools(self) -> None:
        res = self.client.get("/tools")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(len(res.json()["tools"]), 9)

    def test_call_tool_round_trip(self) -> None:
        created = self._call("draft.new", {"entity": "Claims", "data": {"claim_number": "KFZ-1"}})
        self.assertFalse(created["isError"])
        saved = self._call("draft.save", {"entity": "Claims"})
        self.assertFalse(saved["isError"])
        read = self._call("read", {"entity": "Claims", "draft": "active"})
        self.assertIn("KFZ-1", read["content"][0]["text"])

    def test_tenant_header_partitions_data(self) -> None:
        self._call("draft.new", {"entity": "Claims", "data": {"claim_number": "KFZ-9"}}, {"X-Tenant-Id": "zurich"})
        other = self._call("read", {"entity": "Claims"}, {"X-Tenant-Id": "bern"})
        self.assertNotIn("KFZ-9", other["content"][0]["text"])
        same = self._call("read", {"entity": "Claims"}, {"X-Tenant-Id": "zurich"})
        self.assertIn("KFZ-9", same["content"][0]["text"])

    def test_tool_failure_is_still_200(self) -> None:
        result = self._call("draft.save", {"entity": "Claims"})
        self.assertTrue(result["isError"])
        self.assertIn("NoMatchingDraft", result["content"][0]["text"])

    def test_invalid_bodies(self) -> None:
        res = self.client.post("/tools/call", content=b"{broken", headers={"Content-Type": "application/json"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "INVALID_JSON")
        res = self.client.post("/tools/call", json=["read"])
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "INVALID_REQUEST")

    def test_resources_are_unsupported(self) -> None:
        res = self.client.post("/resources/read", json={"uri": "claims://x"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "UnsupportedOperation")

    def test_locale_header(self) -> None:
        self.assertEqual(main._locale_from("de-CH,de;q=0.9"), "de-CH")
        self.assertIsNone(main._locale_from(None))

    def test_shutdown_closes_pool_and_cache(self) -> None:
        with mock.patch.object(main, "close_pool") as close:
            with TestClient(main.app) as client:
                self.assertFalse(client.post("/tools/call", json={"name": "draft.new", "arguments": {"entity": "Claims"}}).json()["isError"])
                self.assertIsNotNone(main.dispatcher.tools.cache.last("kfz.claims.Claims"))
                close.assert_not_called()
        close.assert_called_once_with()
        self.assertIsNone(main.dispatcher.tools.cache.last("kfz.claims.Claims"))


if __name__ == "__main__":
    unittest.main()
