"""Draft key classification, resolution and sanitizing for tool payloads."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from draft_cache import DraftCache
from entity_model import DRAFT_VIRTUALS, EntityRef
from tool_errors import InvalidArguments, NoMatchingDraft


KEY_FIELDS = ("ID", "DraftUUID", "IsActiveEntity")
NON_DATA_FIELDS = frozenset(KEY_FIELDS) | frozenset(DRAFT_VIRTUALS)
DRAFT_UUID_ALIASES = ("DraftAdministrativeData_DraftUUID", "draftAdministrativeData_DraftUUID")
CONVENIENCE_KEYS = ("ID", "DraftUUID") + DRAFT_UUID_ALIASES
RESERVED_FIELDS = frozenset({"entity", "keys", "data", "child", "entries", "entry", "columns"})
MUTATION_VIRTUALS = ("IsActiveEntity", "DraftUUID")


def _present(value: Any) -> bool:
    return value is not None and value != ""


def canonical_keys(raw: Any) -> dict:
    if not isinstance(raw, dict):
        return {}
    keys = {}
    for name, value in raw.items():
        if name in DRAFT_UUID_ALIASES:
            keys.setdefault("DraftUUID", value)
        else:
            keys[name] = value
    return keys


def normalize_patch_data(data: Any) -> dict | None:
    if data is None:
        return None
    if isinstance(data, str):
        trimmed = data.strip()
        if not trimmed:
            return None
        try:
            parsed = json.loads(trimmed)
        except ValueError as exc:
            raise InvalidArguments(f"Data payload could not be parsed: {exc}", path="data") from exc
        if not isinstance(parsed, dict):
            raise InvalidArguments("Data payload must encode a JSON object", path="data")
        return parsed
    if isinstance(data, dict):
        return dict(data)
    raise InvalidArguments("data must be an object", path="data")


@dataclass
class DraftRequest:
    keys: dict = field(default_factory=dict)
    convenience: dict = field(default_factory=dict)
    flat_data: dict = field(default_factory=dict)
    data: dict | None = None

    @property
    def has_explicit_keys(self) -> bool:
        return bool(self.keys) or any(_present(self.convenience.get(k)) for k in ("ID", "DraftUUID"))

    @property
    def provided_keys(self) -> dict:
        return dict(self.keys) if self.keys else dict(self.convenience)

    def effective_data(self) -> dict:
        merged = dict(self.flat_data)
        if self.data:
            merged.update(self.data)
        return merged


def parse_draft_arguments(arguments: Any, reserved: Iterable[str] = RESERVED_FIELDS) -> DraftRequest:
    """Classify every top-level argument as key, data or reserved."""
    if not isinstance(arguments, dict):
        return DraftRequest()
    reserved_set = set(reserved)
    request = DraftRequest(keys=canonical_keys(arguments.get("keys")))
    for name, value in arguments.items():
        if name == "keys" or name == "data":
            continue
        if name in CONVENIENCE_KEYS:
            if _present(value):
                canonical = "DraftUUID" if name in DRAFT_UUID_ALIASES else name
                request.convenience.setdefault(canonical, value)
            continue
        if name in reserved_set:
            continue
        request.flat_data[name] = value
    request.data = normalize_patch_data(arguments.get("data"))
    return request


def sanitize_keys(
    entity: EntityRef | None,
    key_values: Any,
    allow_virtual: Iterable[str] = (),
    drop: Iterable[str] = (),
) -> dict:
    """Keep primary keys and allow-listed virtual elements only."""
    if not isinstance(key_values, dict) or entity is None:
        return {}
    allowed = set(allow_virtual)
    dropped = set(drop)
    cleaned = {}
    for name, value in key_values.items():
        if name in dropped or value is None:
            continue
        element = entity.elements.get(name)
        if element is None:
            continue
        if element.key or (element.virtual and name in allowed):
            cleaned[name] = value
    return cleaned


def strip_key_fields(data: dict) -> dict:
    return {k: v for k, v in data.items() if k not in NON_DATA_FIELDS and k not in DRAFT_UUID_ALIASES}


class ResolverTier:
    name = "tier"

    def resolve(self, entity: EntityRef, cache: DraftCache, request: DraftRequest) -> dict | None:
        raise NotImplementedError


class ExplicitDraftUuidTier(ResolverTier):
    name = "explicit_uuid"

    def resolve(self, entity, cache, request):
        keys = request.provided_keys
        if not (_present(keys.get("DraftUUID")) and _present(keys.get("ID"))):
            return None
        keys.setdefault("IsActiveEntity", False)
        return keys


class CachedIdTier(ResolverTier):
    name = "cached_id"

    def resolve(self, entity, cache, request):
        keys = request.provided_keys
        if not _present(keys.get("ID")):
            return None
        cached = cache.get(entity.name, keys["ID"])
        if cached:
            return {**cached.keys, **keys}
        return {**keys, "IsActiveEntity": bool(keys.get("IsActiveEntity", False))}


class DraftUuidScanTier(ResolverTier):
    name = "uuid_scan"

    def resolve(self, entity, cache, request):
        keys = request.provided_keys
        if not _present(keys.get("DraftUUID")):
            return None
        entry = cache.find_by_draft_uuid(entity.name, keys["DraftUUID"])
        if entry:
            return {**entry.keys, **keys, "IsActiveEntity": False}
        return {**keys, "IsActiveEntity": bool(keys.get("IsActiveEntity", False))}


class ConvenienceTier(ResolverTier):
    name = "convenience"

    def resolve(self, entity, cache, request):
        record_id = request.convenience.get("ID")
        draft_uuid = request.convenience.get("DraftUUID")
        if _present(record_id) and _present(draft_uuid):
            return {"ID": record_id, "DraftUUID": draft_uuid, "IsActiveEntity": False}
        if _present(record_id):
            cached = cache.get(entity.name, record_id)
            if cached:
                return dict(cached.keys)
            return {"ID": record_id, "IsActiveEntity": False}
        if _present(draft_uuid):
            entry = cache.find_by_draft_uuid(entity.name, draft_uuid)
            if entry:
                return dict(entry.keys)
            return {"DraftUUID": draft_uuid, "IsActiveEntity": False}
        return None


class LastTouchedTier(ResolverTier):
    name = "last_touched"

    def resolve(self, entity, cache, request):
        entry = cache.last(entity.name)
        return dict(entry.keys) if entry else None


DEFAULT_TIERS: List[ResolverTier] = [
    ExplicitDraftUuidTier(),
    CachedIdTier(),
    DraftUuidScanTier(),
    ConvenienceTier(),
    LastTouchedTier(),
]


class DraftKeyResolver:
    """Cache-backed key resolution; the first tier that answers wins."""

    def __init__(self, cache: DraftCache, tiers: List[ResolverTier] | None = None) -> None:
        self.cache = cache
        self.tiers = list(tiers) if tiers is not None else list(DEFAULT_TIERS)

    def resolve(self, entity: EntityRef, request: DraftRequest) -> Dict[str, Any]:
        for tier in self.tiers:
            keys = tier.resolve(entity, self.cache, request)
            if keys:
                return keys
        raise NoMatchingDraft(
            "No matching draft found. Run 'draft.new' first or provide keys (ID + DraftUUID).",
            path="keys",
            detail={"entity": entity.name},
        )
