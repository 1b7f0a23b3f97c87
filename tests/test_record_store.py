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
from entity_model import DRAFT_ADMIN, EntityModel
from record_store import DraftLocked, RecordNotFound, RecordStoreError, SelectQuery, sort_rows
from request_context import call_scope, service_context


class TestMemoryRecordStore(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.model = build_model()
        self.claims = self.model.resolve("Claims")
        self.drafts = self.claims.drafts
        self.store = MemoryRecordStore()

    async def _new(self, **data) -> dict:
        return await self.store.new(self.drafts, {"claim_number": "C-1", **data})

    async def test_new_creates_shadow_draft_with_admin_data(self) -> None:
        with service_context("NEW", user={"id": "adjuster-1"}):
            draft = await self._new()
        self.assertTrue(draft["ID"])
        self.assertTrue(draft["DraftUUID"])
        self.assertFalse(draft["IsActiveEntity"])
        self.assertFalse(draft["HasActiveEntity"])
        self.assertEqual(draft["createdBy"], "adjuster-1")

        row = await self.store.select(
            SelectQuery(
                entity=self.drafts,
                columns=["DraftUUID", {"ref": DRAFT_ADMIN, "expand": ["InProcessByUser", "DraftUUID"]}],
                where={"ID": draft["ID"]},
                one=True,
            )
        )
        self.assertEqual(row[DRAFT_ADMIN], {"InProcessByUser": "adjuster-1", "DraftUUID": draft["DraftUUID"]})

    async def test_merged_view_shows_new_drafts_until_saved(self) -> None:
        draft = await self._new()
        rows = await self.store.select(SelectQuery(entity=self.claims))
        self.assertEqual(len(rows), 1)
        self.assertFalse(rows[0]["IsActiveEntity"])

        saved = await self.store.save(self.drafts, {"ID": draft["ID"], "DraftUUID": draft["DraftUUID"]})
        self.assertTrue(saved["IsActiveEntity"])
        self.assertFalse(saved["HasDraftEntity"])
        self.assertNotIn("DraftUUID", saved)

        rows = await self.store.select(SelectQuery(entity=self.claims))
        self.assertEqual([r["ID"] for r in rows], [draft["ID"]])
        self.assertTrue(rows[0]["IsActiveEntity"])
        self.assertEqual(await self.store.select(SelectQuery(entity=self.drafts)), [])

    async def test_edit_copies_active_row_and_locks_it(self) -> None:
        draft = await self._new(fraud_score=2)
        await self.store.save(self.drafts, {"ID": draft["ID"]})

        edited = await self.store.edit(self.claims, {"ID": draft["ID"]})
        self.assertTrue(edited["HasActiveEntity"])
        self.assertEqual(edited["fraud_score"], 2)
        self.assertNotEqual(edited["DraftUUID"], draft["DraftUUID"])

        merged = await self.store.select(SelectQuery(entity=self.claims))
        self.assertEqual(len(merged), 1)
        self.assertTrue(merged[0]["HasDraftEntity"])

        with self.assertRaises(DraftLocked):
            await self.store.edit(self.claims, {"ID": draft["ID"]})
        with self.assertRaises(RecordNotFound):
            await self.store.edit(self.claims, {"ID": "missing"})

    async def test_update_and_discard_leave_active_row_alone(self) -> None:
        draft = await self._new(fraud_score=1)
        await self.store.save(self.drafts, {"ID": draft["ID"]})
        edited = await self.store.edit(self.claims, {"ID": draft["ID"]})

        affected = await self.store.update(
            self.drafts, {"fraud_score": 9}, {"ID": edited["ID"], "DraftUUID": edited["DraftUUID"]}
        )
        self.assertEqual(affected, 1)
        self.assertEqual(await self.store.discard(self.drafts, {"ID": edited["ID"]}), 1)

        active = await self.store.select(SelectQuery(entity=self.claims, where={"ID": draft["ID"]}, one=True))
        self.assertEqual(active["fraud_score"], 1)
        self.assertFalse(active["HasDraftEntity"])
        self.assertEqual(await self.store.discard(self.drafts, {"ID": edited["ID"]}), 0)

    async def test_update_with_wrong_uuid_matches_nothing(self) -> None:
        draft = await self._new()
        affected = await self.store.update(self.drafts, {"fraud_score": 3}, {"ID": draft["ID"], "DraftUUID": "other"})
        self.assertEqual(affected, 0)

    async def test_unknown_field_and_enum_value_are_rejected(self) -> None:
        draft = await self._new()
        with self.assertRaises(RecordStoreError) as ctx:
            await self.store.update(self.drafts, {"colour": "red"}, {"ID": draft["ID"]})
        self.assertIn("colour", ctx.exception.message)
        with self.assertRaises(RecordStoreError):
            await self.store.update(self.drafts, {"status": "Verloren"}, {"ID": draft["ID"]})
        self.assertEqual(await self.store.update(self.drafts, {"status": "Freigegeben"}, {"ID": draft["ID"]}), 1)

    async def test_composition_children_follow_the_root(self) -> None:
        draft = await self._new(documents=[{"ID": "d1", "fileName": "photo.jpg"}])
        child = draft["documents"][0]
        self.assertFalse(child["IsActiveEntity"])
        self.assertEqual(child["DraftUUID"], draft["DraftUUID"])

        saved = await self.store.save(self.drafts, {"ID": draft["ID"]})
        child = saved["documents"][0]
        self.assertTrue(child["IsActiveEntity"])
        self.assertNotIn("DraftUUID", child)

    async def test_new_with_existing_id_is_locked(self) -> None:
        draft = await self._new(ID="c-1")
        self.assertEqual(draft["ID"], "c-1")
        with self.assertRaises(DraftLocked):
            await self._new(ID="c-1")

    async def test_integer_keys_are_numbered(self) -> None:
        model = EntityModel(
            {
                "entities": [
                    {
                        "id": "shop.Orders",
                        "draft_enabled": True,
                        "fields": [{"id": "ID", "type": "integer", "key": True}, {"id": "note"}],
                    }
                ]
            }
        )
        drafts = model.resolve("Orders").drafts
        first = await self.store.new(drafts, {"note": "a"})
        second = await self.store.new(drafts, {"note": "b"})
        self.assertEqual((first["ID"], second["ID"]), (1, 2))

    async def test_tenants_are_isolated(self) -> None:
        with call_scope({"tenant": "zurich"}):
            await self._new()
        with call_scope({"tenant": "bern"}):
            self.assertEqual(await self.store.select(SelectQuery(entity=self.drafts)), [])
        with call_scope({"tenant": "zurich"}):
            self.assertEqual(len(await self.store.select(SelectQuery(entity=self.drafts))), 1)

    async def test_order_limit_offset(self) -> None:
        self.store.load_active(self.claims, [{"ID": str(i), "severity_score": i} for i in range(10)])
        rows = await self.store.select(
            SelectQuery(entity=self.claims, columns=["ID"], order_by=[("severity_score", "desc")], limit=3, offset=2)
        )
        self.assertEqual(rows, [{"ID": "7"}, {"ID": "6"}, {"ID": "5"}])

    async def test_raw_sql_needs_database(self) -> None:
        with self.assertRaises(RecordStoreError):
            await self.store.execute("SELECT 1")


class TestSortRows(unittest.TestCase):
    def test_missing_values_sort_last(self) -> None:
        rows = [{"n": None}, {"n": 2}, {"n": 10}]
        self.assertEqual([r["n"] for r in sort_rows(rows, [("n", "asc")])], [2, 10, None])
        self.assertEqual([r["n"] for r in sort_rows(rows, [("n", "desc")])], [10, 2, None])


if __name__ == "__main__":
    unittest.main()
