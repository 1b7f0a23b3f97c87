"""Recoverable tool errors surfaced to the calling agent."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


Issue = Dict[str, Any]


@dataclass
class ToolError(Exception):
    message: str
    path: str | None = None
    detail: dict | None = None

    code = "TOOL_ERROR"

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"

    def to_issue(self) -> Issue:
        return {"code": self.code, "message": self.message, "path": self.path, "detail": self.detail}


class UnknownTool(ToolError):
    code = "UnknownTool"


class UnknownEntity(ToolError):
    code = "UnknownEntity"


class NotDraftEnabled(ToolError):
    code = "NotDraftEnabled"


class WriteNotAllowed(ToolError):
    code = "WriteNotAllowed"


class EmptyPatch(ToolError):
    code = "EmptyPatch"


class NothingUpdated(ToolError):
    code = "NothingUpdated"


class NoMatchingDraft(ToolError):
    code = "NoMatchingDraft"


class NotAComposition(ToolError):
    code = "NotAComposition"


class MissingCompositionTarget(ToolError):
    code = "MissingCompositionTarget"


class InvalidArguments(ToolError):
    code = "InvalidArguments"


class UnsupportedOperation(ToolError):
    code = "UnsupportedOperation"
