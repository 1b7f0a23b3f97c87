"""Ambient request context for tool calls (user, tenant, locale)."""

from __future__ import annotations

import os
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Iterator, TypeVar


T = TypeVar("T")

PRIVILEGED_USER: Dict[str, Any] = {"id": "claims-mcp", "roles": ["system"], "privileged": True}
DEFAULT_TENANT = os.getenv("CLAIMS_DEFAULT_TENANT", "default").strip() or "default"


@dataclass(frozen=True)
class RequestContext:
    user: dict | None = None
    tenant: str | None = None
    locale: str | None = None
    event: str | None = None
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> "RequestContext":
        if isinstance(value, RequestContext):
            return value
        if not isinstance(value, dict):
            return cls()
        user = value.get("user")
        if isinstance(user, str):
            user = {"id": user, "roles": []}
        headers = value.get("headers")
        return cls(
            user=user if isinstance(user, dict) else None,
            tenant=value.get("tenant") if isinstance(value.get("tenant"), str) else None,
            locale=value.get("locale") if isinstance(value.get("locale"), str) else None,
            event=value.get("event") if isinstance(value.get("event"), str) else None,
            headers=dict(headers) if isinstance(headers, dict) else {},
        )


_CALL_CONTEXT: ContextVar[RequestContext | None] = ContextVar("claims_call_context", default=None)
_SERVICE_REQUEST: ContextVar[RequestContext | None] = ContextVar("claims_service_request", default=None)


def get_call_context() -> RequestContext | None:
    return _CALL_CONTEXT.get()


@contextmanager
def call_scope(context: Any = None) -> Iterator[RequestContext]:
    """Establish the call-scope context, or reuse the one already active."""
    active = _CALL_CONTEXT.get()
    if active is not None:
        yield active
        return
    ctx = RequestContext.from_value(context)
    token = _CALL_CONTEXT.set(ctx)
    try:
        yield ctx
    finally:
        _CALL_CONTEXT.reset(token)


async def run_with_context(context: Any, fn: Callable[[], Awaitable[T]]) -> T:
    if not callable(fn):
        raise TypeError("run_with_context expects a callable")
    token = _CALL_CONTEXT.set(RequestContext.from_value(context))
    try:
        return await fn()
    finally:
        _CALL_CONTEXT.reset(token)


@contextmanager
def service_context(event: str = "READ", **overrides: Any) -> Iterator[RequestContext]:
    """Run one store operation under an explicit effective context.

    Precedence per attribute: overrides, the call scope, an enclosing service
    request, then the privileged system identity and default tenant.
    """
    ambient = _CALL_CONTEXT.get() or RequestContext()
    previous = _SERVICE_REQUEST.get() or RequestContext()
    user = overrides.get("user") or ambient.user or previous.user or PRIVILEGED_USER
    tenant = overrides.get("tenant") or ambient.tenant or previous.tenant or user.get("tenant")
    locale = overrides.get("locale") or ambient.locale or previous.locale
    request = replace(
        ambient,
        user=user,
        tenant=tenant or DEFAULT_TENANT,
        locale=locale,
        event=event,
    )
    token = _SERVICE_REQUEST.set(request)
    try:
        yield request
    finally:
        _SERVICE_REQUEST.reset(token)


def current_request() -> RequestContext | None:
    return _SERVICE_REQUEST.get()


def current_user() -> dict:
    request = _SERVICE_REQUEST.get() or _CALL_CONTEXT.get()
    if request is not None and request.user:
        return request.user
    return PRIVILEGED_USER


def current_user_id() -> str:
    user = current_user()
    return str(user.get("id") or PRIVILEGED_USER["id"])


def current_tenant() -> str:
    request = _SERVICE_REQUEST.get() or _CALL_CONTEXT.get()
    if request is not None:
        if request.tenant:
            return request.tenant
        if request.user and isinstance(request.user.get("tenant"), str):
            return request.user["tenant"]
    return DEFAULT_TENANT
