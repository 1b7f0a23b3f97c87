"""Postgres-backed record store over claims_records / claims_draft_admin."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

import anyio

from app.db import execute, fetch_all, fetch_one, get_conn, run_statement
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

logger = logging.getLogger("claimsmcp.store")


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _to_iso(value):
    if hasattr(value, "strftime"):
        if getattr(value, "tzinfo", None) is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _id_param(value: Any) -> Any:
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value]
    return str(value)


_ROW_SELECT = """
    select r.id, r.is_active, r.draft_uuid, r.data,
        exists (
            select 1 from claims_records d
            where d.tenant_id = r.tenant_id and d.entity_id = r.entity_id and d.id = r.id and not d.is_active
        ) as has_draft,
        a.created_by as admin_created_by,
        a.last_changed_by as admin_last_changed_by,
        a.in_process_by as admin_in_process_by,
        a.created_at as admin_created_at,
        a.last_changed_at as admin_last_changed_at
    from claims_records r
    left join claims_draft_admin a on a.tenant_id = r.tenant_id and a.draft_uuid = r.draft_uuid
"""


def _admin_from_row(row: dict) -> dict | None:
    if not row.get("draft_uuid") or row.get("admin_created_at") is None:
        return None
    return {
        "DraftUUID": row.get("draft_uuid"),
        "CreatedByUser": row.get("admin_created_by"),
        "LastChangedByUser": row.get("admin_last_changed_by"),
        "InProcessByUser": row.get("admin_in_process_by"),
        "CreatedAt": _to_iso(row.get("admin_created_at")),
        "LastChangedAt": _to_iso(row.get("admin_last_changed_at")),
    }


def _view_from_row(entity: EntityRef, row: dict) -> dict:
    view = copy.deepcopy(_ensure_json(row.get("data")) or {})
    base = base_of(entity)
    if row.get("is_active"):
        if base.draft_enabled:
            view["IsActiveEntity"] = True
            view["HasActiveEntity"] = False
            view["HasDraftEntity"] = bool(row.get("has_draft"))
        return view
    view[DRAFT_UUID] = row.get("draft_uuid")
    view["IsActiveEntity"] = False
    view["HasActiveEntity"] = bool(view.get("HasActiveEntity"))
    view["HasDraftEntity"] = False
    return view


def _stored_data(row: dict) -> dict:
    return {k: v for k, v in row.items() if k not in FLAG_FIELDS or k == "HasActiveEntity"}


_DEFAULT_ORDER = "order by r.created_at, r.id"


def _text_param(value: Any) -> str | None:
    # values whose str() equals their jsonb ->> text
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return str(value)


def _where_sql(tenant: str, entity: EntityRef, where: dict | None) -> tuple[list, list, dict]:
    """Split ``where`` into SQL clauses and the conditions left for Python."""
    base = base_of(entity)
    clauses = ["r.tenant_id = %s", "r.entity_id = %s"]
    params: list = [tenant, base.name]
    if entity.is_draft:
        clauses.append("not r.is_active")
    elif base.draft_enabled:
        # drafts of new records have no active row yet
        clauses.append("(r.is_active or coalesce((r.data ->> 'HasActiveEntity')::boolean, false) = false)")
    else:
        clauses.append("r.is_active")
    residual = dict(where or {})
    key = key_name(base)
    if key in residual:
        value = _id_param(residual.pop(key))
        clauses.append("r.id = any(%s)" if isinstance(value, list) else "r.id = %s")
        params.append(value)
    if DRAFT_UUID in residual:
        value = residual.pop(DRAFT_UUID)
        if isinstance(value, (list, tuple, set)):
            clauses.append("r.draft_uuid = any(%s)")
            params.append([str(v) for v in value])
        else:
            clauses.append("r.draft_uuid = %s")
            params.append(str(value))
    if base.draft_enabled and isinstance(residual.get("IsActiveEntity"), bool):
        clauses.append("r.is_active = %s")
        params.append(residual.pop("IsActiveEntity"))
    for name in list(residual):
        if name in FLAG_FIELDS:
            continue
        value = residual[name]
        if isinstance(value, (list, tuple, set)):
            texts = [_text_param(v) for v in value]
            if not texts or None in texts:
                continue
            clauses.append("r.data ->> %s = any(%s)")
            params.extend([name, texts])
        else:
            text = _text_param(value)
            if text is None:
                continue
            clauses.append("r.data ->> %s = %s")
            params.extend([name, text])
        del residual[name]
    return clauses, params, residual


def _order_sql(entity: EntityRef, order_by) -> tuple[list, list] | None:
    """Order clauses matching ``sort_rows``, or None when a field must sort in Python.

    Missing values go last, numbers sort before other values, the rest sort
    by their text in code point order.
    """
    base = base_of(entity)
    clauses: list = []
    params: list = []
    for name, direction in order_by or []:
        element = base.elements.get(name)
        if name in FLAG_FIELDS or element is None or element.virtual or element.type == "boolean":
            return None
        if element.is_composition or element.is_association:
            return None
        desc = " desc" if str(direction).lower() == "desc" else ""
        clauses.extend(
            [
                "(nullif(r.data -> %s, 'null'::jsonb) is null)",
                f"(jsonb_typeof(r.data -> %s) <> 'number'){desc}",
                f"(case when jsonb_typeof(r.data -> %s) = 'number' then (r.data ->> %s)::numeric end){desc}",
                f"(case when jsonb_typeof(r.data -> %s) <> 'number' then r.data ->> %s end) collate \"C\"{desc}",
            ]
        )
        params.extend([name] * 6)
    return clauses, params


class DbRecordStore(RecordStore):
    """Rows live in one jsonb table; drafts are the ``is_active = false`` twins."""

    async def select(self, query: SelectQuery) -> list[dict] | dict | None:
        return await anyio.to_thread.run_sync(self._select, current_tenant(), query)

    async def update(self, entity: EntityRef, data: dict, where: dict) -> int:
        return await anyio.to_thread.run_sync(self._update, current_tenant(), current_user_id(), entity, data, where)

    async def new(self, draft_entity: EntityRef, data: dict) -> dict:
        return await anyio.to_thread.run_sync(self._new, current_tenant(), current_user_id(), draft_entity, data)

    async def edit(self, entity: EntityRef, keys: dict) -> dict:
        return await anyio.to_thread.run_sync(self._edit, current_tenant(), current_user_id(), entity, keys)

    async def save(self, draft_entity: EntityRef, keys: dict) -> dict | None:
        return await anyio.to_thread.run_sync(self._save, current_tenant(), current_user_id(), draft_entity, keys)

    async def discard(self, draft_entity: EntityRef, keys: dict) -> int:
        return await anyio.to_thread.run_sync(self._discard, current_tenant(), draft_entity, keys)

    async def execute(self, sql: str, params: Any = None) -> list[dict] | int:
        return await anyio.to_thread.run_sync(self._execute, sql, params)

    # sync side, runs in a worker thread

    def _query_rows(self, conn, entity: EntityRef, clauses: list, params: list, residual: dict, tail: str = _DEFAULT_ORDER) -> list:
        rows = fetch_all(
            conn,
            f"{_ROW_SELECT} where {' and '.join(clauses)} {tail}",
            params,
            query_name="claims_records.select",
        )
        out = []
        for row in rows:
            view = _view_from_row(entity, row)
            if matches_where(view, residual):
                out.append((view, row))
        return out

    def _fetch_rows(self, conn, tenant: str, entity: EntityRef, where: dict | None) -> list:
        clauses, params, residual = _where_sql(tenant, entity, where)
        return self._query_rows(conn, entity, clauses, params, residual)

    def _select(self, tenant: str, query: SelectQuery):
        clauses, params, residual = _where_sql(tenant, query.entity, query.where)
        # ordering and paging go to SQL only when no condition is left for Python
        order = None if residual else _order_sql(query.entity, query.order_by)
        offset = max(0, query.offset or 0)
        limit = 1 if query.one else query.limit
        with get_conn() as conn:
            if order is None:
                matched = self._query_rows(conn, query.entity, clauses, params, residual)
            else:
                order_clauses, order_params = order
                tail = "order by " + ", ".join(order_clauses + ["r.created_at", "r.id"])
                page_params = list(order_params)
                if limit is not None:
                    tail += " limit %s"
                    page_params.append(limit)
                if offset:
                    tail += " offset %s"
                    page_params.append(offset)
                matched = self._query_rows(conn, query.entity, clauses, params + page_params, residual, tail)
        admin_by_id = {id(view): _admin_from_row(row) for view, row in matched}
        views = [view for view, _ in matched]
        if order is None:
            views = sort_rows(views, query.order_by)[offset:]
            if limit is not None:
                views = views[:limit]
        wants_admin = query.entity.is_draft and any(column_name(c) == DRAFT_ADMIN for c in query.columns)
        rows = [
            project_row(view, query.columns, {DRAFT_ADMIN: admin_by_id.get(id(view))} if wants_admin else None)
            for view in views
        ]
        if query.one:
            return rows[0] if rows else None
        return rows

    def _update(self, tenant: str, user: str | None, entity: EntityRef, data: dict, where: dict) -> int:
        changes = {k: v for k, v in (data or {}).items() if k not in FLAG_FIELDS and k not in entity.key_names()}
        check_fields(entity, changes)
        affected = 0
        with get_conn() as conn:
            for view, row in self._fetch_rows(conn, tenant, entity, where):
                patch = copy.deepcopy(changes)
                if entity.is_draft:
                    apply_child_flags(patch, entity, {"IsActiveEntity": False}, row.get("draft_uuid"))
                stamp_managed(entity, patch, _now(), user, created=False)
                execute(
                    conn,
                    """
                    update claims_records set data = data || %s::jsonb, updated_at = now()
                    where tenant_id=%s and entity_id=%s and id=%s and is_active=%s
                    """,
                    [_json_dumps(patch), tenant, base_of(entity).name, row["id"], row["is_active"]],
                    query_name="claims_records.update",
                )
                if entity.is_draft and row.get("draft_uuid"):
                    execute(
                        conn,
                        """
                        update claims_draft_admin set last_changed_by=%s, last_changed_at=now()
                        where tenant_id=%s and draft_uuid=%s
                        """,
                        [user, tenant, row["draft_uuid"]],
                        query_name="claims_draft_admin.touch",
                    )
                affected += 1
        return affected

    def _record_exists(self, conn, tenant: str, entity_id: str, record_id: str, is_active: bool | None = None) -> bool:
        sql = "select 1 as hit from claims_records where tenant_id=%s and entity_id=%s and id=%s"
        params: list = [tenant, entity_id, record_id]
        if is_active is not None:
            sql += " and is_active=%s"
            params.append(is_active)
        return fetch_one(conn, sql, params, query_name="claims_records.exists") is not None

    def _insert_draft(self, conn, tenant: str, user: str | None, entity_id: str, record_id: str, draft_uuid: str, row: dict) -> None:
        execute(
            conn,
            """
            insert into claims_records (tenant_id, entity_id, id, is_active, draft_uuid, data)
            values (%s,%s,%s,false,%s,%s::jsonb)
            """,
            [tenant, entity_id, record_id, draft_uuid, _json_dumps(_stored_data(row))],
            query_name="claims_records.insert_draft",
        )
        execute(
            conn,
            """
            insert into claims_draft_admin (tenant_id, draft_uuid, created_by, last_changed_by, in_process_by)
            values (%s,%s,%s,%s,%s)
            """,
            [tenant, draft_uuid, user, user, user],
            query_name="claims_draft_admin.insert",
        )

    def _new(self, tenant: str, user: str | None, draft_entity: EntityRef, data: dict) -> dict:
        if not draft_entity.is_draft:
            raise RecordStoreError(f"{draft_entity.name} is not a draft table")
        base = base_of(draft_entity)
        payload = {k: v for k, v in (data or {}).items() if k not in FLAG_FIELDS}
        check_fields(draft_entity, payload)
        key = key_name(base)
        with get_conn() as conn:
            if payload.get(key) is None:
                key_el = base.elements.get(key)
                if key_el is not None and key_el.type == "integer":
                    row = fetch_one(
                        conn,
                        """
                        select coalesce(max((data ->> %s)::bigint), 0) as max_id
                        from claims_records where tenant_id=%s and entity_id=%s
                        """,
                        [key, tenant, base.name],
                        query_name="claims_records.max_id",
                    )
                    payload[key] = int((row or {}).get("max_id") or 0) + 1
                else:
                    payload[key] = str(uuid.uuid4())
            record_id = str(payload[key])
            if self._record_exists(conn, tenant, base.name, record_id):
                raise DraftLocked(f"A record with {key}={record_id} already exists", detail={key: payload[key]})
            draft_uuid = str(uuid.uuid4())
            row = copy.deepcopy(payload)
            row.update(NEW_CHILD_FLAGS)
            apply_child_flags(row, base, NEW_CHILD_FLAGS, draft_uuid)
            stamp_managed(base, row, _now(), user, created=True)
            self._insert_draft(conn, tenant, user, base.name, record_id, draft_uuid, row)
        row[DRAFT_UUID] = draft_uuid
        row["HasDraftEntity"] = False
        return row

    def _edit(self, tenant: str, user: str | None, entity: EntityRef, keys: dict) -> dict:
        base = base_of(entity)
        if base.drafts is None:
            raise RecordStoreError(f"{base.name} is not draft-enabled")
        key = key_name(base)
        record_id = keys.get(key) if isinstance(keys, dict) else None
        with get_conn() as conn:
            active = fetch_one(
                conn,
                "select data from claims_records where tenant_id=%s and entity_id=%s and id=%s and is_active",
                [tenant, base.name, str(record_id)],
                query_name="claims_records.get_active",
            )
            if active is None:
                raise RecordNotFound(f"No active {base.name} with {key}={record_id}", detail={key: record_id})
            if self._record_exists(conn, tenant, base.name, str(record_id), is_active=False):
                raise DraftLocked(f"{base.name} {record_id} already has an open draft", detail={key: record_id})
            draft_uuid = str(uuid.uuid4())
            row = copy.deepcopy(_ensure_json(active.get("data")) or {})
            row.update(EDIT_CHILD_FLAGS)
            apply_child_flags(row, base, EDIT_CHILD_FLAGS, draft_uuid)
            self._insert_draft(conn, tenant, user, base.name, str(record_id), draft_uuid, row)
        row[DRAFT_UUID] = draft_uuid
        return row

    def _save(self, tenant: str, user: str | None, draft_entity: EntityRef, keys: dict) -> dict | None:
        base = base_of(draft_entity)
        with get_conn() as conn:
            matched = self._fetch_rows(conn, tenant, draft_entity, keys)
            if not matched:
                return None
            view, row = matched[0]
            active = {k: v for k, v in view.items() if k not in FLAG_FIELDS}
            apply_child_flags(active, base, ACTIVE_CHILD_FLAGS, None)
            stamp_managed(base, active, _now(), user, created=False)
            execute(
                conn,
                """
                insert into claims_records (tenant_id, entity_id, id, is_active, draft_uuid, data)
                values (%s,%s,%s,true,null,%s::jsonb)
                on conflict (tenant_id, entity_id, id, is_active)
                do update set data = excluded.data, updated_at = now()
                """,
                [tenant, base.name, row["id"], _json_dumps(active)],
                query_name="claims_records.activate",
            )
            self._delete_draft(conn, tenant, base.name, row["id"], row.get("draft_uuid"))
        view = copy.deepcopy(active)
        if base.draft_enabled:
            view.update({"IsActiveEntity": True, "HasActiveEntity": False, "HasDraftEntity": False})
        return view

    def _delete_draft(self, conn, tenant: str, entity_id: str, record_id: str, draft_uuid: str | None) -> None:
        execute(
            conn,
            "delete from claims_records where tenant_id=%s and entity_id=%s and id=%s and not is_active",
            [tenant, entity_id, record_id],
            query_name="claims_records.delete_draft",
        )
        if draft_uuid:
            execute(
                conn,
                "delete from claims_draft_admin where tenant_id=%s and draft_uuid=%s",
                [tenant, draft_uuid],
                query_name="claims_draft_admin.delete",
            )

    def _discard(self, tenant: str, draft_entity: EntityRef, keys: dict) -> int:
        base = base_of(draft_entity)
        with get_conn() as conn:
            matched = self._fetch_rows(conn, tenant, draft_entity, keys)
            for _, row in matched:
                self._delete_draft(conn, tenant, base.name, row["id"], row.get("draft_uuid"))
        return len(matched)

    def _execute(self, sql: str, params: Any = None) -> list[dict] | int:
        if not isinstance(sql, str) or not sql.strip():
            raise RecordStoreError("SQL statement is empty")
        with get_conn() as conn:
            result = run_statement(conn, sql, params)
        if isinstance(result, list):
            logger.info("raw_sql rows=%s", len(result))
        else:
            logger.info("raw_sql rowcount=%s", result)
        return result
