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

from result_envelope import count_affected, error_payload, to_call_tool_result, to_result_payload


class TestResultPayload(unittest.TestCase):
    def test_rows(self) -> None:
        payload = to_result_payload([{"ID": "1"}, {"ID": "2"}], {"entity": "kfz.claims.Claims"})
        self.assertEqual(payload["rowCount"], 2)
        self.assertEqual(payload["rows"][1], {"ID": "2"})
        self.assertEqual(payload["metadata"], {"entity": "kfz.claims.Claims"})

    def test_count_and_none(self) -> None:
        self.assertEqual(to_result_payload(3), {"rows": [], "rowCount": 3, "metadata": {}})
        self.assertEqual(to_result_payload(None), {"rows": [], "rowCount": 0, "metadata": {}})
        self.assertEqual(to_result_payload(True)["rowCount"], 1)

    def test_single_record(self) -> None:
        payload = to_result_payload({"ID": "1"}, {"action": "NEW"})
        self.assertEqual(payload, {"result": {"ID": "1"}, "metadata": {"action": "NEW"}})
        self.assertNotIn("rows", payload)

    def test_count_affected(self) -> None:
        self.assertEqual(count_affected(2), 2)
        self.assertEqual(count_affected([{}, {}]), 2)
        self.assertEqual(count_affected({"ID": "1"}), 1)
        self.assertEqual(count_affected(None), 0)
        self.assertEqual(count_affected(False), 0)


class TestCallToolResult(unittest.TestCase):
    def test_single_text_block(self) -> None:
        result = to_call_tool_result({"rows": [], "rowCount": 0, "metadata": {}})
        self.assertFalse(result["isError"])
        self.assertEqual(len(result["content"]), 1)
        self.assertEqual(result["content"][0]["type"], "text")
        self.assertEqual(json.loads(result["content"][0]["text"])["rowCount"], 0)

    def test_string_passes_through(self) -> None:
        result = to_call_tool_result("done", is_error=True)
        self.assertEqual(result["content"][0]["text"], "done")
        self.assertTrue(result["isError"])

    def test_error_payload_shape(self) -> None:
        issue = {"code": "EmptyPatch", "message": "No fields", "path": "data", "detail": None}
        self.assertEqual(error_payload([issue]), {"ok": False, "errors": [issue], "warnings": []})


if __name__ == "__main__":
    unittest.main()
