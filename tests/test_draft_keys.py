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
from draft_cache import DraftCache
from draft_keys import (
    MUTATION_VIRTUALS,
    DraftKeyResolver,
    normalize_patch_data,
    parse_draft_arguments,
    sanitize_keys,
    strip_key_fields,
)
from tool_errors import InvalidArguments, NoMatchingDraft


class TestParseDraftArguments(unittest.TestCase):
    def test_classifies_keys_convenience_and_data(self) -> None:
        request = parse_draft_arguments(
            {
                "entity": "Claims",
                "keys": {"ID": "1", "DraftAdministrativeData_DraftUUID": "u1"},
                "DraftUUID": "u9",
                "status": "Eingegangen",
                "data": {"status": "In Prüfung", "fraud_score": 3},
                "columns": ["a"],
            }
        )
        self.assertEqual(request.keys, {"ID": "1", "DraftUUID": "u1"})
        self.assertEqual(request.convenience, {"DraftUUID": "u9"})
        self.assertEqual(request.flat_data, {"status": "Eingegangen"})
        self.assertEqual(request.effective_data(), {"status": "In Prüfung", "fraud_score": 3})
        self.assertTrue(request.has_explicit_keys)
        self.assertEqual(request.provided_keys, {"ID": "1", "DraftUUID": "u1"})

    def test_flat_alias_becomes_convenience_uuid(self) -> None:
        request = parse_draft_arguments({"entity": "Claims", "ID": "1", "DraftAdministrativeData_DraftUUID": "u1"})
        self.assertEqual(request.convenience, {"ID": "1", "DraftUUID": "u1"})
        self.assertEqual(request.provided_keys, {"ID": "1", "DraftUUID": "u1"})

    def test_no_keys_at_all(self) -> None:
        request = parse_draft_arguments({"entity": "Claims", "status": "Freigegeben"})
        self.assertFalse(request.has_explicit_keys)
        self.assertEqual(request.provided_keys, {})

    def test_data_accepts_json_string(self) -> None:
        request = parse_draft_arguments({"entity": "Claims", "data": '{"fraud_score": 7}'})
        self.assertEqual(request.data, {"fraud_score": 7})

    def test_malformed_data_string_rejected(self) -> None:
        with self.assertRaises(InvalidArguments):
            normalize_patch_data("{not json")
        with self.assertRaises(InvalidArguments):
            normalize_patch_data("[1, 2]")
        with self.assertRaises(InvalidArguments):
            normalize_patch_data(42)
        self.assertIsNone(normalize_patch_data("   "))

    def test_strip_key_fields(self) -> None:
        data = {"ID": "1", "DraftUUID": "u", "IsActiveEntity": False, "DraftAdministrativeData_DraftUUID": "u", "ort": "Zug"}
        self.assertEqual(strip_key_fields(data), {"ort": "Zug"})
        self.assertEqual(strip_key_fields({"HasDraftEntity": True, "HasActiveEntity": False}), {})


class TestSanitizeKeys(unittest.TestCase):
    def setUp(self) -> None:
        self.drafts = build_model().resolve("Claims").drafts

    def test_keeps_primary_keys_and_allow_listed_virtuals(self) -> None:
        raw = {"ID": "1", "DraftUUID": "u1", "IsActiveEntity": False, "HasDraftEntity": True, "status": "x", "1=1": True}
        cleaned = sanitize_keys(self.drafts, raw, allow_virtual=MUTATION_VIRTUALS)
        self.assertEqual(cleaned, {"ID": "1", "DraftUUID": "u1", "IsActiveEntity": False})

    def test_drop_list_and_none_values(self) -> None:
        raw = {"ID": "1", "DraftUUID": None, "IsActiveEntity": False}
        cleaned = sanitize_keys(self.drafts, raw, allow_virtual=MUTATION_VIRTUALS, drop=("IsActiveEntity",))
        self.assertEqual(cleaned, {"ID": "1"})

    def test_virtuals_need_allow_list(self) -> None:
        self.assertEqual(sanitize_keys(self.drafts, {"ID": "1", "DraftUUID": "u1"}), {"ID": "1"})

    def test_non_mapping_input(self) -> None:
        self.assertEqual(sanitize_keys(self.drafts, ["ID"]), {})
        self.assertEqual(sanitize_keys(None, {"ID": "1"}), {})


class TestDraftKeyResolver(unittest.TestCase):
    def setUp(self) -> None:
        self.claims = build_model().resolve("Claims")
        self.cache = DraftCache()
        self.resolver = DraftKeyResolver(self.cache)

    def _resolve(self, arguments: dict) -> dict:
        return self.resolver.resolve(self.claims, parse_draft_arguments(arguments))

    def test_explicit_uuid_is_trusted(self) -> None:
        keys = self._resolve({"keys": {"ID": "1", "DraftUUID": "u1"}})
        self.assertEqual(keys, {"ID": "1", "DraftUUID": "u1", "IsActiveEntity": False})

    def test_cached_id_fills_uuid_and_caller_fields_win(self) -> None:
        self.cache.remember(self.claims.name, {"ID": "1", "DraftUUID": "u1"})
        keys = self._resolve({"keys": {"ID": "1", "IsActiveEntity": True}})
        self.assertEqual(keys, {"ID": "1", "DraftUUID": "u1", "IsActiveEntity": True})

    def test_uncached_id_is_synthesized(self) -> None:
        keys = self._resolve({"keys": {"ID": "7"}})
        self.assertEqual(keys, {"ID": "7", "IsActiveEntity": False})

    def test_uuid_only_scans_cache(self) -> None:
        self.cache.remember(self.claims.name, {"ID": "1", "DraftUUID": "u1"})
        self.cache.remember(self.claims.name, {"ID": "2", "DraftUUID": "u2"})
        keys = self._resolve({"keys": {"DraftUUID": "u1"}})
        self.assertEqual(keys["ID"], "1")
        self.assertFalse(keys["IsActiveEntity"])

    def test_convenience_id_uses_cache(self) -> None:
        self.cache.remember(self.claims.name, {"ID": "1", "DraftUUID": "u1"})
        keys = self._resolve({"ID": "1"})
        self.assertEqual(keys, {"ID": "1", "DraftUUID": "u1", "IsActiveEntity": False})

    def test_last_touched_when_no_keys(self) -> None:
        self.cache.remember(self.claims.name, {"ID": "1", "DraftUUID": "u1"})
        self.cache.remember(self.claims.name, {"ID": "2", "DraftUUID": "u2"})
        self.assertEqual(self._resolve({})["ID"], "2")

    def test_nothing_to_resolve(self) -> None:
        with self.assertRaises(NoMatchingDraft) as ctx:
            self._resolve({})
        self.assertIn("draft.new", ctx.exception.message)


if __name__ == "__main__":
    unittest.main()
