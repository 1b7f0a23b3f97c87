"""Bearer JWT auth middleware (JWKS-verified) feeding the tool call context."""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

import httpx
from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse


logger = logging.getLogger("claimsmcp.auth")

_JWKS_CACHE: Dict[str, Any] = {"url": None, "keys": None, "fetched_at": 0.0, "ttl": 600.0}
PUBLIC_PATHS = {"/health"}


def auth_disabled() -> bool:
    return os.getenv("CLAIMS_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes")


def _fetch_jwks(jwks_url: str, force: bool = False) -> dict:
    now = time.time()
    cached = _JWKS_CACHE["keys"] and _JWKS_CACHE["url"] == jwks_url
    if not force and cached and now - _JWKS_CACHE["fetched_at"] < _JWKS_CACHE["ttl"]:
        return _JWKS_CACHE["keys"]
    resp = httpx.get(jwks_url, timeout=10.0)
    resp.raise_for_status()
    data = resp.json()
    _JWKS_CACHE.update({"url": jwks_url, "keys": data, "fetched_at": now})
    return data


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def _find_key(jwks: dict, kid: Any) -> dict | None:
    for jwk in jwks.get("keys", []):
        if jwk.get("kid") == kid:
            return jwk
    return None


def _verify_jwt(token: str, jwks_url: str, issuer: str, audience: Optional[str]) -> dict:
    headers = jwt.get_unverified_header(token)
    kid = headers.get("kid")
    key = _find_key(_fetch_jwks(jwks_url), kid)
    if key is None:
        # keys may have rotated since the last fetch
        key = _find_key(_fetch_jwks(jwks_url, force=True), kid)
    if key is None:
        raise JWTError("Unknown kid")
    options = {"verify_aud": audience is not None}
    return jwt.decode(token, key, algorithms=[headers.get("alg", "RS256")], issuer=issuer, audience=audience, options=options)


def user_from_claims(claims: dict) -> dict:
    roles = claims.get("roles")
    if not isinstance(roles, list):
        roles = [claims["role"]] if isinstance(claims.get("role"), str) else []
    user = {
        "id": claims.get("sub"),
        "email": claims.get("email"),
        "roles": roles,
        "claims": claims,
    }
    tenant = claims.get("tenant_id") or claims.get("tenant")
    if isinstance(tenant, str) and tenant:
        user["tenant"] = tenant
    return user


def _auth_error(code: str, message: str, detail: dict | None = None) -> JSONResponse:
    return JSONResponse(
        {
            "ok": False,
            "errors": [{"code": code, "message": message, "path": "Authorization", "detail": detail}],
            "warnings": [],
        },
        status_code=401,
    )


class BearerAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, auth_url: str, audience: Optional[str] = None) -> None:
        super().__init__(app)
        self._issuer = auth_url.rstrip("/")
        self._audience = audience
        self._jwks_url = f"{self._issuer}/.well-known/jwks.json"

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        if auth_disabled() or request.method == "OPTIONS" or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        token = _get_bearer_token(request)
        if not token:
            logger.warning("auth_missing_token path=%s", request.url.path)
            return _auth_error("AUTH_MISSING_TOKEN", "Missing bearer token")

        try:
            claims = _verify_jwt(token, self._jwks_url, self._issuer, self._audience)
        except Exception as exc:
            logger.warning(
                "auth_invalid_token path=%s issuer=%s audience=%s error=%s",
                request.url.path,
                self._issuer,
                self._audience,
                exc,
            )
            return _auth_error("AUTH_INVALID_TOKEN", "Invalid bearer token", {"error": str(exc)})

        request.state.user = user_from_claims(claims)
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        return await call_next(request)
