"""Record store contract shared by the in-memory and Postgres stores."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from entity_model import DRAFT_ADMIN, DRAFT_UUID, DRAFT_VIRTUALS, EntityRef


Column = Any  # "name" | {"ref": "name", "expand": [...]}
OrderBy = Tuple[str, str]


@dataclass
class RecordStoreError(Exception):
    message: str
    detail: dict | None = None

    code = "RECORD_STORE_ERROR"

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message

    def to_issue(self) -> dict:
        return {"code": self.code, "message": self.message, "path": None, "detail": self.detail}


class RecordNotFound(RecordStoreError):
    code = "RECORD_NOT_FOUND"


class DraftLocked(RecordStoreError):
    code = "DRAFT_LOCKED"


@dataclass
class SelectQuery:
    entity: EntityRef
    columns: List[Column] = field(default_factory=list)
    where: Dict[str, Any] = field(default_factory=dict)
    order_by: List[OrderBy] = field(default_factory=list)
    limit: int | None = None
    offset: int = 0
    one: bool = False


class RecordStore:
    """Async verbs the tool layer issues against persisted entity state.

    ``select`` returns rows (or one row / ``None``), ``update`` and
    ``discard`` return affected counts, ``new``/``edit``/``save`` return the
    resulting row. Implementations partition rows by the ambient tenant.
    """

    async def select(self, query: SelectQuery) -> list[dict] | dict | None:
        raise NotImplementedError

    async def update(self, entity: EntityRef, data: dict, where: dict) -> int:
        raise NotImplementedError

    async def new(self, draft_entity: EntityRef, data: dict) -> dict:
        raise NotImplementedError

    async def edit(self, entity: EntityRef, keys: dict) -> dict:
        raise NotImplementedError

    async def save(self, draft_entity: EntityRef, keys: dict) -> dict | None:
        raise NotImplementedError

    async def discard(self, draft_entity: EntityRef, keys: dict) -> int:
        raise NotImplementedError

    async def execute(self, sql: str, params: Any = None) -> list[dict] | int:
        raise NotImplementedError


FLAG_FIELDS = frozenset(DRAFT_VIRTUALS) | {DRAFT_UUID}
ACTIVE_CHILD_FLAGS = {"IsActiveEntity": True, "HasActiveEntity": False, "HasDraftEntity": False}
NEW_CHILD_FLAGS = {"IsActiveEntity": False, "HasActiveEntity": False, "HasDraftEntity": False}
EDIT_CHILD_FLAGS = {"IsActiveEntity": False, "HasActiveEntity": True, "HasDraftEntity": False}


def key_name(entity: EntityRef) -> str:
    keys = entity.key_names()
    return keys[0] if keys else "ID"


def base_of(entity: EntityRef) -> EntityRef:
    return entity.active if entity.is_draft and entity.active is not None else entity


def check_fields(entity: EntityRef, data: dict) -> None:
    unknown = [k for k in data if not entity.has(k) and k != DRAFT_ADMIN]
    if unknown:
        raise RecordStoreError(
            f"Unknown field(s) on {base_of(entity).name}: {', '.join(sorted(unknown))}",
            detail={"fields": sorted(unknown)},
        )
    for name, value in data.items():
        element = entity.elements.get(name)
        if element is None or element.type != "enum" or not element.values or value is None:
            continue
        if value not in element.values:
            raise RecordStoreError(
                f"Invalid value for {name}: {value!r}. Allowed: {', '.join(map(str, element.values))}",
                detail={"field": name, "allowed": list(element.values)},
            )


def apply_child_flags(row: dict, entity: EntityRef, flags: dict, draft_uuid: Any = None) -> None:
    """Set draft flags on composition children; ``draft_uuid=None`` clears it."""
    for comp in entity.compositions():
        children = row.get(comp.name)
        if not isinstance(children, list):
            continue
        target = comp.target
        for child in children:
            if not isinstance(child, dict):
                continue
            for name, value in flags.items():
                if target is None or target.has(name):
                    child[name] = value
            if target is not None and target.has(DRAFT_UUID):
                if draft_uuid is None:
                    child.pop(DRAFT_UUID, None)
                else:
                    child[DRAFT_UUID] = draft_uuid


def matches_where(row: dict, where: dict) -> bool:
    for name, expected in (where or {}).items():
        actual = row.get(name)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected and str(actual) not in {str(v) for v in expected}:
                return False
        elif actual != expected and not (actual is not None and expected is not None and str(actual) == str(expected)):
            return False
    return True


def column_name(column: Column) -> str | None:
    if isinstance(column, str):
        return column
    if isinstance(column, dict) and isinstance(column.get("ref"), str):
        return column["ref"]
    return None


def project_row(row: dict, columns: List[Column], expanded: Dict[str, Any] | None = None) -> dict:
    """Project a row onto columns; expand entries pick fields of nested values."""
    expanded = expanded or {}
    if not columns or "*" in columns:
        out = copy.deepcopy(row)
        out.update(copy.deepcopy(expanded))
        return out
    out = {}
    for column in columns:
        name = column_name(column)
        if name is None:
            continue
        value = expanded.get(name, row.get(name))
        sub = column.get("expand") if isinstance(column, dict) else None
        if isinstance(sub, list) and sub and "*" not in sub:
            if isinstance(value, list):
                value = [{k: item.get(k) for k in sub if k in item} for item in value if isinstance(item, dict)]
            elif isinstance(value, dict):
                value = {k: value.get(k) for k in sub if k in value}
        if name in row or name in expanded:
            out[name] = copy.deepcopy(value)
    return out


def _sort_key(value: Any) -> tuple:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value, "")
    return (1, 0, str(value))


def sort_rows(rows: list[dict], order_by: List[OrderBy]) -> list[dict]:
    # stable multi-key sort; rows lacking the field go last
    for name, direction in reversed(order_by or []):
        present = [r for r in rows if r.get(name) is not None]
        missing = [r for r in rows if r.get(name) is None]
        present.sort(key=lambda r: _sort_key(r.get(name)), reverse=str(direction).lower() == "desc")
        rows = present + missing
    return rows


def stamp_managed(entity: EntityRef, row: dict, now: str, user: str | None, created: bool) -> None:
    if created and entity.has("createdAt"):
        row["createdAt"] = now
    if created and entity.has("createdBy"):
        row["createdBy"] = user
    if entity.has("modifiedAt"):
        row["modifiedAt"] = now
    if entity.has("modifiedBy"):
        row["modifiedBy"] = user
