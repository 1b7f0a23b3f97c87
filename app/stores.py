"""In-memory record store with active rows, shadow drafts and draft admin data."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from entity_model import DRAFT_ADMIN, DRAFT_UUID, EntityRef
from record_store import (
    ACTIVE_CHILD_FLAGS,
    EDIT_CHILD_FLAGS,
    FLAG_FIELDS,
    NEW_CHILD_FLAGS,
    DraftLocked,
    RecordNotFound,
    RecordStoreError,
    RecordStore,
    SelectQuery,
    apply_child_flags,
    base_of,
    check_fields,
    column_name,
    key_name,
    matches_where,
    project_row,
    sort_rows,
    stamp_managed,
)
from request_context import current_tenant, current_user_id


def _iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class MemoryRecordStore(RecordStore):
    def __init__(self) -> None:
        self._active: Dict[str, Dict[str, Dict[str, dict]]] = {}
        self._drafts: Dict[str, Dict[str, Dict[str, dict]]] = {}
        self._admin: Dict[str, Dict[str, dict]] = {}
        self._last_ts: datetime | None = None

    def _now(self) -> str:
        # strictly increasing so "most recently modified" is never a tie
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return _iso(now)

    def _bucket(self, tables: Dict[str, Dict[str, Dict[str, dict]]], entity: EntityRef) -> Dict[str, dict]:
        return tables.setdefault(current_tenant(), {}).setdefault(base_of(entity).name, {})

    def _admin_bucket(self) -> Dict[str, dict]:
        return self._admin.setdefault(current_tenant(), {})

    def _stamp(self, entity: EntityRef, row: dict, created: bool) -> None:
        stamp_managed(entity, row, self._now(), current_user_id(), created)

    def _active_view(self, entity: EntityRef, row: dict) -> dict:
        out = copy.deepcopy(row)
        if entity.draft_enabled:
            drafts = self._bucket(self._drafts, entity)
            out["IsActiveEntity"] = True
            out["HasActiveEntity"] = False
            out["HasDraftEntity"] = str(row.get(key_name(entity))) in drafts
        return out

    def _draft_view(self, row: dict) -> dict:
        out = copy.deepcopy(row)
        out["IsActiveEntity"] = False
        out["HasDraftEntity"] = False
        return out

    def _rows_for(self, entity: EntityRef) -> List[tuple[dict, dict]]:
        """Return (view, expanded) pairs visible through ``entity``."""
        base = base_of(entity)
        pairs: List[tuple[dict, dict]] = []
        admin = self._admin_bucket()
        if entity.is_draft:
            for row in self._bucket(self._drafts, entity).values():
                pairs.append((self._draft_view(row), {DRAFT_ADMIN: copy.deepcopy(admin.get(row.get(DRAFT_UUID)))}))
            return pairs
        for row in self._bucket(self._active, entity).values():
            pairs.append((self._active_view(base, row), {}))
        if base.draft_enabled:
            # drafts of new records have no active row yet
            for row in self._bucket(self._drafts, entity).values():
                if not row.get("HasActiveEntity"):
                    pairs.append((self._draft_view(row), {}))
        return pairs

    async def select(self, query: SelectQuery) -> list[dict] | dict | None:
        pairs = [(view, exp) for view, exp in self._rows_for(query.entity) if matches_where(view, query.where)]
        expanded_by_id = {id(view): exp for view, exp in pairs}
        views = sort_rows([view for view, _ in pairs], query.order_by)
        start = max(0, query.offset or 0)
        views = views[start:]
        if query.one:
            views = views[:1]
        elif query.limit is not None:
            views = views[: query.limit]
        wants_admin = any(column_name(c) == DRAFT_ADMIN for c in query.columns)
        rows = []
        for view in views:
            expanded = expanded_by_id.get(id(view)) if wants_admin else None
            rows.append(project_row(view, query.columns, expanded))
        if query.one:
            return rows[0] if rows else None
        return rows

    async def update(self, entity: EntityRef, data: dict, where: dict) -> int:
        changes = {k: v for k, v in data.items() if k not in FLAG_FIELDS and k not in entity.key_names()}
        check_fields(entity, changes)
        bucket = self._bucket(self._drafts if entity.is_draft else self._active, entity)
        view_of = self._draft_view if entity.is_draft else (lambda r: self._active_view(base_of(entity), r))
        affected = 0
        for row in bucket.values():
            if not matches_where(view_of(row), where):
                continue
            row.update(copy.deepcopy(changes))
            if entity.is_draft:
                apply_child_flags(row, entity, {"IsActiveEntity": False}, row.get(DRAFT_UUID))
                admin = self._admin_bucket().get(row.get(DRAFT_UUID))
                if admin is not None:
                    admin["LastChangedAt"] = self._now()
                    admin["LastChangedByUser"] = current_user_id()
            self._stamp(entity, row, created=False)
            affected += 1
        return affected

    def _open_admin(self, draft_uuid: str) -> None:
        now = self._now()
        user = current_user_id()
        self._admin_bucket()[draft_uuid] = {
            "DraftUUID": draft_uuid,
            "CreatedByUser": user,
            "LastChangedByUser": user,
            "InProcessByUser": user,
            "CreatedAt": now,
            "LastChangedAt": now,
        }

    async def new(self, draft_entity: EntityRef, data: dict) -> dict:
        if not draft_entity.is_draft:
            raise RecordStoreError(f"{draft_entity.name} is not a draft table")
        base = base_of(draft_entity)
        payload = {k: v for k, v in (data or {}).items() if k not in FLAG_FIELDS}
        check_fields(draft_entity, payload)
        key = key_name(base)
        drafts = self._bucket(self._drafts, draft_entity)
        if payload.get(key) is None:
            key_el = base.elements.get(key)
            if key_el is not None and key_el.type == "integer":
                existing = [r.get(key) for r in list(drafts.values()) + list(self._bucket(self._active, base).values())]
                payload[key] = max([v for v in existing if isinstance(v, int)] or [0]) + 1
            else:
                payload[key] = str(uuid.uuid4())
        record_id = str(payload[key])
        if record_id in drafts or record_id in self._bucket(self._active, base):
            raise DraftLocked(f"A record with {key}={record_id} already exists", detail={key: payload[key]})
        draft_uuid = str(uuid.uuid4())
        row = copy.deepcopy(payload)
        row.update({DRAFT_UUID: draft_uuid, **NEW_CHILD_FLAGS})
        apply_child_flags(row, base, NEW_CHILD_FLAGS, draft_uuid)
        self._stamp(base, row, created=True)
        drafts[record_id] = row
        self._open_admin(draft_uuid)
        return self._draft_view(row)

    async def edit(self, entity: EntityRef, keys: dict) -> dict:
        base = base_of(entity)
        if base.drafts is None:
            raise RecordStoreError(f"{base.name} is not draft-enabled")
        key = key_name(base)
        record_id = keys.get(key) if isinstance(keys, dict) else None
        active = self._bucket(self._active, base).get(str(record_id))
        if active is None:
            raise RecordNotFound(f"No active {base.name} with {key}={record_id}", detail={key: record_id})
        drafts = self._bucket(self._drafts, base)
        if str(record_id) in drafts:
            raise DraftLocked(f"{base.name} {record_id} already has an open draft", detail={key: record_id})
        draft_uuid = str(uuid.uuid4())
        row = copy.deepcopy(active)
        row.update({DRAFT_UUID: draft_uuid, **EDIT_CHILD_FLAGS})
        apply_child_flags(row, base, EDIT_CHILD_FLAGS, draft_uuid)
        drafts[str(record_id)] = row
        self._open_admin(draft_uuid)
        return self._draft_view(row)

    def _matching_drafts(self, draft_entity: EntityRef, keys: dict) -> List[str]:
        bucket = self._bucket(self._drafts, draft_entity)
        return [rid for rid, row in bucket.items() if matches_where(self._draft_view(row), keys)]

    async def save(self, draft_entity: EntityRef, keys: dict) -> dict | None:
        base = base_of(draft_entity)
        matched = self._matching_drafts(draft_entity, keys)
        if not matched:
            return None
        record_id = matched[0]
        draft = self._bucket(self._drafts, draft_entity).pop(record_id)
        row = {k: v for k, v in draft.items() if k not in FLAG_FIELDS}
        apply_child_flags(row, base, ACTIVE_CHILD_FLAGS, None)
        self._stamp(base, row, created=False)
        self._bucket(self._active, base)[record_id] = row
        self._admin_bucket().pop(draft.get(DRAFT_UUID), None)
        return self._active_view(base, row)

    async def discard(self, draft_entity: EntityRef, keys: dict) -> int:
        bucket = self._bucket(self._drafts, draft_entity)
        matched = self._matching_drafts(draft_entity, keys)
        for record_id in matched:
            draft = bucket.pop(record_id)
            self._admin_bucket().pop(draft.get(DRAFT_UUID), None)
        return len(matched)

    async def execute(self, sql: str, params: Any = None) -> list[dict] | int:
        raise RecordStoreError("Raw SQL requires the Postgres record store (USE_DB=1)")

    def load_active(self, entity: EntityRef, rows: List[dict]) -> int:
        """Seed active rows directly, bypassing the draft lifecycle."""
        base = base_of(entity)
        key = key_name(base)
        bucket = self._bucket(self._active, base)
        for data in rows:
            row = copy.deepcopy(data)
            if row.get(key) is None:
                row[key] = str(uuid.uuid4())
            bucket[str(row[key])] = row
        return len(rows)
