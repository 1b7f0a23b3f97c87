"""FastAPI app exposing the claims draft tools over HTTP."""

from __future__ import annotations

import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging

from app.auth import BearerAuthMiddleware, auth_disabled
from app.claims_model import build_model
from app.db import close_pool, ensure_schema
from app.stores import MemoryRecordStore
from app.stores_db import DbRecordStore
from draft_cache import DraftCache
from draft_tools import DraftTools
from record_store import RecordStore
from request_context import RequestContext
from tool_dispatch import ToolDispatcher
from tool_errors import ToolError


logger = logging.getLogger("claimsmcp")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await dispatcher.close()
    close_pool()
    logger.info("shutdown use_db=%s", USE_DB)


app = FastAPI(title="Claims MCP", lifespan=lifespan)
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
AUTH_URL = os.getenv("CLAIMS_AUTH_URL", "").strip()
AUTH_AUD = os.getenv("CLAIMS_AUTH_AUDIENCE", "").strip() or None
DISABLE_AUTH = auth_disabled()
logger.info("auth_disabled=%s auth_url=%s use_db=%s", DISABLE_AUTH, AUTH_URL, USE_DB)

FORWARDED_HEADERS = ("x-request-id", "x-correlation-id")


def build_dispatcher(store: RecordStore | None = None, model_path: str | None = None, cache: DraftCache | None = None) -> ToolDispatcher:
    model = build_model(model_path)
    if store is None:
        store = DbRecordStore() if USE_DB else MemoryRecordStore()
    return ToolDispatcher(DraftTools(model, store, cache if cache is not None else DraftCache()))


if USE_DB:
    ensure_schema()

dispatcher = build_dispatcher()


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


if not DISABLE_AUTH:
    if not AUTH_URL:
        raise RuntimeError("CLAIMS_AUTH_URL is required for auth")
    app.add_middleware(BearerAuthMiddleware, auth_url=AUTH_URL, audience=AUTH_AUD)


def _locale_from(header: str | None) -> str | None:
    if not header:
        return None
    first = header.split(",", 1)[0].split(";", 1)[0].strip()
    return first or None


def _request_context(request: Request) -> RequestContext:
    user = getattr(request.state, "user", None)
    tenant = request.headers.get("X-Tenant-Id", "").strip() or None
    if tenant is None and isinstance(user, dict) and isinstance(user.get("tenant"), str):
        tenant = user["tenant"]
    headers = {name: request.headers[name] for name in FORWARDED_HEADERS if name in request.headers}
    return RequestContext(
        user=user if isinstance(user, dict) else None,
        tenant=tenant,
        locale=_locale_from(request.headers.get("Accept-Language")),
        headers=headers,
    )


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.get("/tools")
async def list_tools() -> dict:
    return dispatcher.list_tools()


@app.post("/tools/call")
async def call_tool(request: Request):
    try:
        body = await request.json()
    except ValueError:
        return _error_response("INVALID_JSON", "Request body must be JSON", None)
    if not isinstance(body, dict):
        return _error_response("INVALID_REQUEST", "Request body must be an object", "$")
    result = await dispatcher.call_tool(body, _request_context(request))
    return JSONResponse(result)


@app.post("/resources/read")
async def read_resource(request: Request):
    try:
        body = await request.json()
    except ValueError:
        body = {}
    uri = body.get("uri") if isinstance(body, dict) else None
    try:
        return await dispatcher.read_resource(uri)
    except ToolError as exc:
        return _error_response(exc.code, exc.message, exc.path, exc.detail, status=404)
