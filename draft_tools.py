"""Tool handlers: raw SQL, structured reads and the draft lifecycle."""

from __future__ import annotations

import copy
import logging
import re
import uuid
from typing import Any, Awaitable, Callable, Dict, List

from draft_cache import DraftCache, draft_uuid_of
from draft_keys import (
    MUTATION_VIRTUALS,
    DraftKeyResolver,
    DraftRequest,
    canonical_keys,
    parse_draft_arguments,
    sanitize_keys,
    strip_key_fields,
)
from entity_model import DRAFT_ADMIN, DRAFT_ADMIN_COLUMNS, DRAFT_UUID, DRAFT_VIRTUALS, EntityModel, EntityRef
from record_store import RecordStore, SelectQuery
from request_context import service_context
from result_envelope import count_affected, to_result_payload
from tool_errors import (
    EmptyPatch,
    InvalidArguments,
    MissingCompositionTarget,
    NoMatchingDraft,
    NotAComposition,
    NotDraftEnabled,
    NothingUpdated,
    WriteNotAllowed,
)


logger = logging.getLogger("claimsmcp.drafts")

MAX_ROWS = 200
DEFAULT_DRAFT_DATA = {"ort": "Luzern", "datum": None}
READ_ONLY_COMMANDS = {"SELECT", "WITH", "SHOW", "EXPLAIN"}
READ_MODES = ("merged", "active", "draft")
AUTO_RESOLVE_ORDER = ("modifiedAt", "LastChangedAt", "createdAt", "CreationDateTime")
ADMIN_KEY_DROP = ("IsActiveEntity", "HasActiveEntity", "HasDraftEntity")
GENERATED_KEY_TYPES = {"uuid"}

_FIRST_WORD = re.compile(r"^([A-Za-z]+)")

Handler = Callable[[dict], Awaitable[dict]]


def _non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class DraftTools:
    """Per-verb handlers sharing one model, record store and draft cache."""

    def __init__(
        self,
        model: EntityModel,
        store: RecordStore,
        cache: DraftCache | None = None,
        resolver: DraftKeyResolver | None = None,
        max_rows: int = MAX_ROWS,
    ) -> None:
        self.model = model
        self.store = store
        self.cache = cache if cache is not None else DraftCache()
        self.resolver = resolver if resolver is not None else DraftKeyResolver(self.cache)
        self.max_rows = max_rows

    def handlers(self) -> Dict[str, Handler]:
        return {
            "execute-raw": self.execute_raw,
            "read": self.read,
            "draft.new": self.new,
            "draft.edit": self.edit,
            "draft.patch": self.patch,
            "draft.save": self.save,
            "draft.cancel": self.cancel,
            "draft.getAdminData": self.get_admin_data,
            "draft.addChild": self.add_child,
        }

    # entity helpers

    def _draft_pair(self, name: Any) -> tuple[EntityRef, EntityRef]:
        ref = self.model.resolve(name)
        base = ref.active if ref.is_draft and ref.active is not None else ref
        if base.drafts is None:
            raise NotDraftEnabled(
                f"Entity {base.name} is not draft-enabled",
                path="entity",
                detail={"entity": base.name},
            )
        return base, base.drafts

    def _key_columns(self, base: EntityRef) -> List[str]:
        return base.key_names() + [DRAFT_UUID]

    # key resolution

    async def _auto_resolve(self, base: EntityRef, draft_ref: EntityRef) -> dict:
        """Pick the most recently modified open draft straight from the draft table."""
        order_by = []
        for name in AUTO_RESOLVE_ORDER:
            if draft_ref.has(name):
                order_by = [(name, "desc")]
                break
        query = SelectQuery(entity=draft_ref, columns=self._key_columns(base), order_by=order_by, one=True)
        with service_context("READ"):
            row = await self.store.select(query)
        if not row or not row.get(DRAFT_UUID):
            raise NoMatchingDraft(
                "No matching draft found. Run 'draft.new' first or provide keys (ID + DraftUUID).",
                path="keys",
                detail={"entity": base.name},
            )
        self.cache.remember(base.name, row)
        keys = {name: row.get(name) for name in base.key_names()}
        keys.update({DRAFT_UUID: row[DRAFT_UUID], "IsActiveEntity": False})
        logger.info("draft_auto_resolve entity=%s keys=%s", base.name, keys)
        return keys

    async def _locate_draft(self, base: EntityRef, draft_ref: EntityRef, keys: dict) -> dict | None:
        if not keys:
            return None
        query = SelectQuery(entity=draft_ref, columns=self._key_columns(base), where=keys, one=True)
        with service_context("READ"):
            return await self.store.select(query)

    async def _mutation_keys(self, base: EntityRef, draft_ref: EntityRef, request: DraftRequest) -> dict:
        """Resolve, sanitize and verify the keys of the open draft a call targets."""
        try:
            resolved = self.resolver.resolve(base, request)
        except NoMatchingDraft:
            if request.has_explicit_keys:
                raise
            resolved = await self._auto_resolve(base, draft_ref)
        keys = sanitize_keys(draft_ref, resolved, allow_virtual=MUTATION_VIRTUALS)
        row = await self._locate_draft(base, draft_ref, keys)
        if row is None and not request.has_explicit_keys:
            # stale cache pointer; the draft table is authoritative
            self.cache.forget(base.name, keys.get("ID"))
            keys = sanitize_keys(draft_ref, await self._auto_resolve(base, draft_ref), allow_virtual=MUTATION_VIRTUALS)
            row = await self._locate_draft(base, draft_ref, keys)
        if row is None:
            self.cache.forget(base.name, keys.get("ID"))
            raise NoMatchingDraft(
                "No open draft matches the given keys. Run 'draft.new' or 'draft.edit' first.",
                path="keys",
                detail={"entity": base.name, "keys": keys},
            )
        for name in self._key_columns(base):
            if keys.get(name) is None and row.get(name) is not None:
                keys[name] = row[name]
        keys.setdefault("IsActiveEntity", False)
        return keys

    def _touch_cache(self, base: EntityRef, keys: dict, data: dict) -> None:
        if not self.cache.refresh(base.name, keys.get("ID"), data):
            self.cache.remember(base.name, {**data, **keys})

    # handlers

    async def execute_raw(self, arguments: dict) -> dict:
        sql = arguments.get("sql")
        if not isinstance(sql, str) or not sql.strip():
            raise InvalidArguments('The "sql" property must be a non-empty string.', path="sql")
        statement = sql.strip()
        match = _FIRST_WORD.match(statement)
        command = match.group(1).upper() if match else ""
        if arguments.get("allowWrite") is not True and command not in READ_ONLY_COMMANDS:
            raise WriteNotAllowed(
                "Write operations are disabled. Set allowWrite=true to enable this statement.",
                path="allowWrite",
                detail={"command": command or "RAW"},
            )
        params = arguments.get("params")
        if params is not None and not isinstance(params, (list, dict)):
            raise InvalidArguments("params must be an array or an object", path="params")
        with service_context("READ" if command in READ_ONLY_COMMANDS else "RAW"):
            result = await self.store.execute(statement, params)
        return to_result_payload(result, {"command": command or "RAW"})

    async def read(self, arguments: dict) -> dict:
        ref = self.model.resolve(arguments.get("entity"))
        base = ref.active if ref.is_draft and ref.active is not None else ref
        mode = arguments.get("draft") or "merged"
        if mode not in READ_MODES:
            raise InvalidArguments(
                f"draft must be one of {', '.join(READ_MODES)}",
                path="draft",
                detail={"allowed": list(READ_MODES)},
            )
        target = ref
        where = dict(arguments.get("where")) if isinstance(arguments.get("where"), dict) else {}
        if mode == "draft":
            target = ref if ref.is_draft else self._draft_pair(base.name)[1]
        elif mode == "active":
            target = base
            if target.has("IsActiveEntity"):
                where["IsActiveEntity"] = True
        columns = arguments.get("columns")
        columns = [c for c in columns if isinstance(c, (str, dict))] if isinstance(columns, list) else []
        limit = arguments.get("limit")
        offset = arguments.get("offset")
        query = SelectQuery(
            entity=target,
            columns=columns,
            where=where,
            limit=limit if _non_negative_int(limit) and limit >= 1 else self.max_rows,
            offset=offset if _non_negative_int(offset) else 0,
        )
        with service_context("READ"):
            rows = await self.store.select(query)
        return to_result_payload(rows, {"entity": base.name, "draft": mode})

    async def new(self, arguments: dict) -> dict:
        base, draft_ref = self._draft_pair(arguments.get("entity"))
        request = parse_draft_arguments(arguments)
        payload: Dict[str, Any] = {}
        for name, value in DEFAULT_DRAFT_DATA.items():
            if draft_ref.has(name):
                payload[name] = value
        for name, element in base.elements.items():
            if element.has_default and not element.virtual:
                payload[name] = copy.deepcopy(element.default)
        if request.convenience.get("ID") is not None:
            payload["ID"] = request.convenience["ID"]
        payload.update(request.effective_data())
        with service_context("NEW"):
            instance = await self.store.new(draft_ref, payload)
        self.cache.remember(base.name, instance)
        logger.info("draft_new entity=%s id=%s draft_uuid=%s", base.name, instance.get("ID"), draft_uuid_of(instance))
        return to_result_payload(instance, {"entity": base.name, "action": "NEW"})

    async def edit(self, arguments: dict) -> dict:
        base, draft_ref = self._draft_pair(arguments.get("entity"))
        keys = canonical_keys(arguments.get("keys"))
        if not keys:
            record_id = arguments.get("ID")
            if record_id is None or record_id == "":
                raise InvalidArguments(
                    "Provide the ID of the active instance (keys or ID) to create a draft.",
                    path="keys",
                )
            keys = {"ID": record_id}
        active_keys = sanitize_keys(base, keys)
        if not active_keys:
            raise InvalidArguments("keys must contain the primary key of the active instance", path="keys")
        with service_context("EDIT"):
            instance = await self.store.edit(base, active_keys)
        self.cache.remember(base.name, instance)
        record_id = instance.get("ID") if isinstance(instance, dict) else None
        if record_id is not None and not draft_uuid_of(instance):
            try:
                meta = await self._locate_draft(base, draft_ref, {"ID": record_id, "IsActiveEntity": False})
                if meta and meta.get(DRAFT_UUID):
                    self.cache.remember(base.name, {"ID": record_id, DRAFT_UUID: meta[DRAFT_UUID]})
            except Exception as exc:
                logger.warning("draft_edit uuid_backfill_failed entity=%s id=%s error=%s", base.name, record_id, exc)
        logger.info("draft_edit entity=%s id=%s", base.name, record_id)
        return to_result_payload(instance, {"entity": base.name, "action": "EDIT"})

    async def patch(self, arguments: dict) -> dict:
        base, draft_ref = self._draft_pair(arguments.get("entity"))
        request = parse_draft_arguments(arguments)
        changes = request.effective_data()
        fields = strip_key_fields(changes)
        if not fields:
            raise EmptyPatch("No fields to update were provided.", path="data")
        keys = await self._mutation_keys(base, draft_ref, request)
        payload = dict(changes)
        for name, value in keys.items():
            payload.setdefault(name, value)
        with service_context("UPDATE"):
            affected = await self.store.update(draft_ref, payload, keys)
        count = count_affected(affected)
        if count <= 0:
            raise NothingUpdated("Draft update affected no rows.", path="keys", detail={"keys": keys})
        self._touch_cache(base, keys, fields)
        logger.info("draft_patch entity=%s id=%s fields=%s", base.name, keys.get("ID"), sorted(fields))
        return to_result_payload(count, {"entity": base.name, "action": "PATCH"})

    async def save(self, arguments: dict) -> dict:
        base, draft_ref = self._draft_pair(arguments.get("entity"))
        keys = await self._mutation_keys(base, draft_ref, parse_draft_arguments(arguments))
        with service_context("SAVE"):
            result = await self.store.save(draft_ref, keys)
        if result is None:
            raise NoMatchingDraft("Draft could not be activated; it no longer exists.", path="keys", detail={"keys": keys})
        self.cache.forget(base.name, keys.get("ID"))
        logger.info("draft_save entity=%s id=%s", base.name, keys.get("ID"))
        return to_result_payload(result, {"entity": base.name, "action": "SAVE"})

    async def cancel(self, arguments: dict) -> dict:
        base, draft_ref = self._draft_pair(arguments.get("entity"))
        resolved = self.resolver.resolve(base, parse_draft_arguments(arguments))
        keys = sanitize_keys(draft_ref, resolved, allow_virtual=MUTATION_VIRTUALS, drop=("IsActiveEntity",))
        discarded = 0
        if keys:
            with service_context("CANCEL"):
                discarded = count_affected(await self.store.discard(draft_ref, keys))
        self.cache.forget(base.name, keys.get("ID"))
        if discarded <= 0:
            raise NoMatchingDraft(
                "No open draft matches the given keys; nothing was discarded.",
                path="keys",
                detail={"entity": base.name, "keys": keys},
            )
        logger.info("draft_cancel entity=%s id=%s", base.name, keys.get("ID"))
        return to_result_payload(discarded, {"entity": base.name, "action": "CANCEL"})

    async def get_admin_data(self, arguments: dict) -> dict:
        base, draft_ref = self._draft_pair(arguments.get("entity"))
        keys = await self._mutation_keys(base, draft_ref, parse_draft_arguments(arguments))
        query_keys = sanitize_keys(draft_ref, keys, allow_virtual=MUTATION_VIRTUALS, drop=ADMIN_KEY_DROP)
        admin_el = draft_ref.elements.get(DRAFT_ADMIN)
        admin_target = admin_el.target if admin_el is not None else None
        available = list(admin_target.elements) if admin_target is not None and admin_target.elements else list(DRAFT_ADMIN_COLUMNS)
        requested = arguments.get("columns")
        requested = [c for c in requested if isinstance(c, str)] if isinstance(requested, list) else []
        if "*" in requested:
            columns = list(available)
        else:
            columns = [c for c in requested if c in available] or list(available)
        if DRAFT_UUID not in columns:
            columns.insert(0, DRAFT_UUID)
        query = SelectQuery(
            entity=draft_ref,
            columns=[DRAFT_UUID, {"ref": DRAFT_ADMIN, "expand": columns}],
            where=query_keys,
            one=True,
        )
        with service_context("READ"):
            row = await self.store.select(query)
        meta = {"entity": base.name, "action": "DRAFT_ADMIN"}
        if not row or not isinstance(row.get(DRAFT_ADMIN), dict):
            return to_result_payload(None, meta)
        admin = row[DRAFT_ADMIN]
        result = {name: admin.get(name) for name in columns if name in admin}
        result.setdefault(DRAFT_UUID, row.get(DRAFT_UUID))
        return to_result_payload(result, meta)

    def _prepare_child(self, target: EntityRef, entry: dict, draft_uuid: Any) -> dict:
        prepared = copy.deepcopy(entry)
        for name in target.key_names():
            element = target.elements[name]
            if prepared.get(name) is None and element.type in GENERATED_KEY_TYPES:
                prepared[name] = str(uuid.uuid4())
        for flag in DRAFT_VIRTUALS:
            if target.has(flag) and flag not in prepared:
                prepared[flag] = False
        if draft_uuid is not None and target.has(DRAFT_UUID) and prepared.get(DRAFT_UUID) is None:
            prepared[DRAFT_UUID] = draft_uuid
        return prepared

    async def add_child(self, arguments: dict) -> dict:
        entity = arguments.get("entity")
        child = arguments.get("child")
        if not isinstance(entity, str) or not entity.strip():
            raise InvalidArguments('Provide the draft root "entity".', path="entity")
        if not isinstance(child, str) or not child.strip():
            raise InvalidArguments('Provide the composition element name in "child".', path="child")
        if isinstance(arguments.get("entries"), list):
            entries = arguments["entries"]
        elif arguments.get("entry") is not None:
            entries = [arguments["entry"]]
        else:
            entries = []
        if not entries:
            raise InvalidArguments('Provide at least one child entry in "entries" or "entry".', path="entries")
        for idx, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise InvalidArguments(f"Entry at position {idx} is not an object.", path=f"entries[{idx}]")

        base, draft_ref = self._draft_pair(entity)
        element = draft_ref.elements.get(child) or base.elements.get(child)
        if element is None or not element.is_composition:
            raise NotAComposition(
                f'Element "{child}" is not a composition of {base.name} and cannot be filled with draft.addChild.',
                path="child",
                detail={"compositions": [c.name for c in base.compositions()]},
            )
        target = element.target
        if target is None:
            raise MissingCompositionTarget(
                f'Composition "{child}" has no resolvable target.',
                path="child",
                detail={"target": element.target_name},
            )

        keys = await self._mutation_keys(base, draft_ref, parse_draft_arguments(arguments))
        query = SelectQuery(entity=draft_ref, columns=[{"ref": child, "expand": ["*"]}], where=keys, one=True)
        with service_context("READ"):
            current = await self.store.select(query)
        existing = copy.deepcopy(current.get(child)) if current and isinstance(current.get(child), list) else []
        prepared = [self._prepare_child(target, entry, keys.get(DRAFT_UUID)) for entry in entries]
        combined = existing + prepared
        payload = {child: combined, **keys}
        with service_context("UPDATE"):
            affected = await self.store.update(draft_ref, payload, keys)
        count = count_affected(affected)
        if count <= 0:
            raise NothingUpdated("Draft update affected no rows.", path="keys", detail={"keys": keys})
        self._touch_cache(base, keys, {child: combined})
        logger.info("draft_add_child entity=%s id=%s child=%s added=%s", base.name, keys.get("ID"), child, len(prepared))
        return to_result_payload(count, {"entity": base.name, "action": "ADD_CHILD", "child": child, "added": len(prepared)})
