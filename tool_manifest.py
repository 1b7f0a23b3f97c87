"""Static tool manifest exposed to the agent harness."""

from __future__ import annotations

import copy
from typing import Any, Dict, List


_ENTITY = {"type": "string", "description": "Entity name as exposed by the model (for example kfz.claims.Claims)."}
_DRAFT_ENTITY = {"type": "string", "description": "Draft-enabled entity name."}
_KEYS = {
    "type": "object",
    "additionalProperties": True,
    "description": "Optional primary key (ID + DraftUUID). Completed automatically when one open draft exists.",
}
_ID = {"type": "string", "description": "Convenience field: draft ID when keys is omitted."}
_DRAFT_UUID = {"type": "string", "description": "Convenience field: DraftUUID when keys is omitted."}


def _draft_key_props() -> Dict[str, Any]:
    return {
        "keys": dict(_KEYS),
        "ID": dict(_ID),
        "DraftUUID": dict(_DRAFT_UUID),
        "DraftAdministrativeData_DraftUUID": dict(_DRAFT_UUID),
    }


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "execute-raw",
        "description": "Execute a SQL statement against the database. Read-only unless allowWrite is true.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "sql": {"type": "string", "description": "Complete SQL statement to execute."},
                "params": {
                    "description": "Optional positional or named parameters passed to the statement.",
                    "anyOf": [
                        {"type": "array", "items": {}},
                        {"type": "object", "additionalProperties": True},
                    ],
                },
                "allowWrite": {
                    "type": "boolean",
                    "description": "Set to true to allow INSERT/UPDATE/DELETE/DDL statements.",
                    "default": False,
                },
            },
            "required": ["sql"],
            "additionalProperties": False,
        },
    },
    {
        "name": "read",
        "description": "Read rows of an entity with optional projection, equality filter and paging.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entity": dict(_ENTITY),
                "columns": {"type": "array", "items": {"type": "string"}, "description": "Optional list of columns to project."},
                "where": {"type": "object", "additionalProperties": True, "description": "Optional equality filter."},
                "limit": {"type": "integer", "minimum": 1, "description": "Maximum number of rows to return (default 200)."},
                "offset": {"type": "integer", "minimum": 0, "description": "Offset for pagination."},
                "draft": {
                    "type": "string",
                    "enum": ["merged", "active", "draft"],
                    "default": "merged",
                    "description": "Choose between merged (default), active-only or draft-only records.",
                },
            },
            "required": ["entity"],
            "additionalProperties": False,
        },
    },
    {
        "name": "draft.new",
        "description": "Create a new draft instance for a draft-enabled entity.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entity": dict(_DRAFT_ENTITY),
                "data": {"type": "object", "additionalProperties": True, "description": "Optional initial payload."},
            },
            "required": ["entity"],
            "additionalProperties": True,
        },
    },
    {
        "name": "draft.edit",
        "description": "Put an active instance into draft edit mode.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entity": dict(_DRAFT_ENTITY),
                "keys": {"type": "object", "additionalProperties": True, "description": "Primary key of the active record."},
                "ID": {"type": "string", "description": "Convenience field: ID of the active instance when keys is omitted."},
            },
            "required": ["entity"],
            "additionalProperties": False,
        },
    },
    {
        "name": "draft.patch",
        "description": "Apply partial updates to an existing draft instance.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entity": dict(_DRAFT_ENTITY),
                **_draft_key_props(),
                "data": {"type": "object", "additionalProperties": True, "description": "Fields to update."},
            },
            "required": ["entity"],
            "additionalProperties": True,
        },
    },
    {
        "name": "draft.save",
        "description": "Activate a draft and persist it as the active instance.",
        "inputSchema": {
            "type": "object",
            "properties": {"entity": dict(_DRAFT_ENTITY), **_draft_key_props()},
            "required": ["entity"],
            "additionalProperties": True,
        },
    },
    {
        "name": "draft.cancel",
        "description": "Discard an existing draft instance.",
        "inputSchema": {
            "type": "object",
            "properties": {"entity": dict(_DRAFT_ENTITY), **_draft_key_props()},
            "required": ["entity"],
            "additionalProperties": True,
        },
    },
    {
        "name": "draft.getAdminData",
        "description": "Read DraftAdministrativeData metadata for a draft instance.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entity": dict(_DRAFT_ENTITY),
                **_draft_key_props(),
                "columns": {"type": "array", "items": {"type": "string"}, "description": "Optional admin fields to return."},
            },
            "required": ["entity"],
            "additionalProperties": True,
        },
    },
    {
        "name": "draft.addChild",
        "description": "Append entries to a composition element of a draft-enabled root entity.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entity": {"type": "string", "description": "Draft-enabled root entity name."},
                "child": {"type": "string", "description": "Name of the composition element (for example \"documents\")."},
                "entries": {
                    "type": "array",
                    "items": {"type": "object", "additionalProperties": True},
                    "description": "Child entries to append.",
                },
                "entry": {"type": "object", "additionalProperties": True, "description": "Single child entry, alternative to entries."},
                **_draft_key_props(),
            },
            "required": ["entity", "child"],
            "additionalProperties": True,
        },
    },
]

TOOL_NAMES = [tool["name"] for tool in TOOL_DEFINITIONS]

TOOL_ALIASES: Dict[str, str] = {
    "cap.sql.execute": "execute-raw",
    "sql.execute": "execute-raw",
    "cap.cqn.read": "read",
    "cqn.read": "read",
    "cap.draft.new": "draft.new",
    "cap.draft.edit": "draft.edit",
    "cap.draft.patch": "draft.patch",
    "cap.draft.save": "draft.save",
    "cap.draft.cancel": "draft.cancel",
    "cap.draft.getAdminData": "draft.getAdminData",
    "cap.draft.addChild": "draft.addChild",
    "new": "draft.new",
    "edit": "draft.edit",
    "patch": "draft.patch",
    "save": "draft.save",
    "cancel": "draft.cancel",
    "get-admin-data": "draft.getAdminData",
    "add-child": "draft.addChild",
}


def normalize_tool_name(name: Any) -> str:
    if not isinstance(name, str):
        return ""
    cleaned = name.strip()
    if cleaned in TOOL_NAMES:
        return cleaned
    if cleaned in TOOL_ALIASES:
        return TOOL_ALIASES[cleaned]
    # agents sometimes send double underscores for dots (mcp__cap__draft__new)
    dotted = cleaned.replace("__", ".")
    if dotted.startswith("mcp."):
        dotted = dotted[len("mcp."):]
    return TOOL_ALIASES.get(dotted, dotted)


def list_tool_definitions() -> List[Dict[str, Any]]:
    return copy.deepcopy(TOOL_DEFINITIONS)
