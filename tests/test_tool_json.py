import os
import sys
import unittest
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from claimsmcp.tool_json import ToolJsonTypeError, dumps_text, to_jsonable


class TestToolJson(unittest.TestCase):
    def test_non_ascii_preserved(self) -> None:
        out = dumps_text({"status": "In Prüfung"})
        self.assertIn("Prüfung", out)
        self.assertNotIn("\\u", out)

    def test_text_is_indented(self) -> None:
        self.assertEqual(dumps_text({"a": 1}), '{\n  "a": 1\n}')

    def test_datetimes_become_utc_iso(self) -> None:
        value = datetime(2024, 5, 1, 12, 30, 0, 123000, tzinfo=timezone.utc)
        self.assertEqual(to_jsonable(value), "2024-05-01T12:30:00.123Z")
        self.assertEqual(to_jsonable(date(2024, 5, 1)), "2024-05-01")

    def test_decimal_and_uuid(self) -> None:
        self.assertEqual(to_jsonable(Decimal("1250.5")), 1250.5)
        ident = uuid.UUID("12345678-1234-5678-1234-567812345678")
        self.assertEqual(to_jsonable({"ID": ident}), {"ID": str(ident)})

    def test_tuples_become_lists(self) -> None:
        self.assertEqual(to_jsonable({"rows": ({"a": 1},)}), {"rows": [{"a": 1}]})

    def test_unsupported_type_raises(self) -> None:
        with self.assertRaises(ToolJsonTypeError):
            to_jsonable({"bad": {1, 2, 3}})

    def test_non_string_key_raises(self) -> None:
        with self.assertRaises(ToolJsonTypeError):
            to_jsonable({1: "x"})

    def test_reject_nan(self) -> None:
        with self.assertRaises(ValueError):
            dumps_text({"bad": float("nan")})

    def test_reject_inf(self) -> None:
        with self.assertRaises(ValueError):
            to_jsonable([float("-inf")])


if __name__ == "__main__":
    unittest.main()
