"""Entity metadata built from module manifests, with synthesized draft shadows."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List

from tool_errors import UnknownEntity


DRAFT_VIRTUALS = ("IsActiveEntity", "HasActiveEntity", "HasDraftEntity")
DRAFT_UUID = "DraftUUID"
DRAFT_ADMIN = "DraftAdministrativeData"
DRAFT_ADMIN_COLUMNS = [
    "DraftUUID",
    "CreatedByUser",
    "LastChangedByUser",
    "InProcessByUser",
    "CreatedAt",
    "LastChangedAt",
]
ASSOCIATION_TYPES = {"association", "composition"}


@dataclass(eq=False)
class Element:
    name: str
    type: str = "string"
    key: bool = False
    virtual: bool = False
    target: "EntityRef | None" = None
    target_name: str | None = None
    default: Any = None
    has_default: bool = False
    values: list | None = None

    @property
    def is_composition(self) -> bool:
        return self.type == "composition"

    @property
    def is_association(self) -> bool:
        return self.type in ASSOCIATION_TYPES


@dataclass(eq=False)
class EntityRef:
    name: str
    elements: Dict[str, Element] = field(default_factory=dict)
    drafts: "EntityRef | None" = None
    active: "EntityRef | None" = None
    is_draft: bool = False
    draft_enabled: bool = False

    @property
    def short_name(self) -> str:
        return self.name.rsplit(".", 1)[-1]

    def key_names(self) -> list[str]:
        return [name for name, el in self.elements.items() if el.key]

    def has(self, name: str) -> bool:
        return name in self.elements

    def compositions(self) -> list[Element]:
        return [el for el in self.elements.values() if el.is_composition]

    def __repr__(self) -> str:  # pragma: no cover - avoid recursive dataclass repr
        return f"EntityRef({self.name!r})"


def entities_from_manifest(manifest: dict) -> list[dict]:
    entities = manifest.get("entities") if isinstance(manifest, dict) else None
    if isinstance(entities, list):
        return [e for e in entities if isinstance(e, dict)]
    if isinstance(entities, dict):
        items = []
        for ent_id, ent in entities.items():
            if isinstance(ent, dict):
                items.append({"id": ent_id, **ent})
            else:
                items.append({"id": ent_id})
        return items
    return []


def _fields_of(entity: dict) -> list[dict]:
    fields = entity.get("fields") or []
    if isinstance(fields, dict):
        return [{"id": fid, **fdef} if isinstance(fdef, dict) else {"id": fid} for fid, fdef in fields.items()]
    return [f for f in fields if isinstance(f, dict) and f.get("id")]


def _element_from_field(fdef: dict) -> Element:
    return Element(
        name=fdef["id"],
        type=str(fdef.get("type") or "string"),
        key=bool(fdef.get("key")),
        virtual=bool(fdef.get("virtual")),
        target_name=fdef.get("entity") if isinstance(fdef.get("entity"), str) else None,
        default=copy.deepcopy(fdef.get("default")),
        has_default="default" in fdef,
        values=list(fdef["values"]) if isinstance(fdef.get("values"), list) else None,
    )


def _admin_entity() -> EntityRef:
    ref = EntityRef(name=DRAFT_ADMIN)
    for col in DRAFT_ADMIN_COLUMNS:
        col_type = "uuid" if col == DRAFT_UUID else "datetime" if col.endswith("At") else "string"
        ref.elements[col] = Element(name=col, type=col_type, key=col == DRAFT_UUID)
    return ref


def _add_draft_virtuals(ref: EntityRef) -> None:
    for name in DRAFT_VIRTUALS:
        ref.elements.setdefault(name, Element(name=name, type="boolean", virtual=True))
    ref.elements.setdefault(DRAFT_UUID, Element(name=DRAFT_UUID, type="uuid", virtual=True))


class EntityModel:
    """Read-only metadata source for the tool layer.

    Draft-enabled entities get a shadow ``<name>.drafts`` reference carrying
    the draft virtuals and the ``DraftAdministrativeData`` association.
    Composition targets of a draft-enabled root carry the draft virtuals too,
    since children are edited inside the root's draft.
    """

    def __init__(self, manifests: list[dict] | dict | None = None) -> None:
        self._entities: Dict[str, EntityRef] = {}
        self._admin = _admin_entity()
        if isinstance(manifests, dict):
            manifests = [manifests]
        for manifest in manifests or []:
            self._load(manifest)
        self._link()

    def _load(self, manifest: dict) -> None:
        for ent in entities_from_manifest(manifest):
            ent_id = ent.get("id")
            if not isinstance(ent_id, str) or not ent_id:
                continue
            ref = EntityRef(name=ent_id, draft_enabled=bool(ent.get("draft_enabled")))
            for fdef in _fields_of(ent):
                el = _element_from_field(fdef)
                ref.elements[el.name] = el
            self._entities[ent_id] = ref

    def _link(self) -> None:
        for ref in self._entities.values():
            for el in ref.elements.values():
                if el.is_association and el.target_name:
                    el.target = self._lookup(el.target_name)
        for ref in list(self._entities.values()):
            if not ref.draft_enabled:
                continue
            _add_draft_virtuals(ref)
            for comp in ref.compositions():
                if comp.target is not None:
                    _add_draft_virtuals(comp.target)
            draft = EntityRef(name=f"{ref.name}.drafts", is_draft=True, active=ref)
            for name, el in ref.elements.items():
                draft.elements[name] = copy.copy(el)
            draft.elements[DRAFT_ADMIN] = Element(
                name=DRAFT_ADMIN,
                type="association",
                target=self._admin,
                target_name=DRAFT_ADMIN,
            )
            ref.drafts = draft

    def _lookup(self, name: str) -> EntityRef | None:
        direct = self._entities.get(name)
        if direct:
            return direct
        short = name.rsplit(".", 1)[-1]
        for ref in self._entities.values():
            if ref.short_name == short:
                return ref
        return None

    def resolve(self, name: Any) -> EntityRef:
        if not isinstance(name, str) or not name.strip():
            raise UnknownEntity("Entity name must be a non-empty string", path="entity")
        name = name.strip()
        if name.endswith(".drafts"):
            base = self._lookup(name[: -len(".drafts")])
            if base is not None and base.drafts is not None:
                return base.drafts
        ref = self._lookup(name)
        if ref is None:
            available = ", ".join(self.names()) or "<none>"
            raise UnknownEntity(
                f'Unknown entity "{name}". Available entities: {available}',
                path="entity",
                detail={"available": self.names()},
            )
        return ref

    def names(self) -> List[str]:
        return sorted(self._entities.keys())
