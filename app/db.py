"""Postgres helpers for the claims record store."""

from __future__ import annotations

import os
import threading
import time
import logging
from contextlib import contextmanager
from typing import Any, Iterable

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool


def get_db_url() -> str:
    url = os.getenv("CLAIMS_DB_URL") or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("CLAIMS_DB_URL or DATABASE_URL is required when USE_DB=1")
    return url


_POOL: ThreadedConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_logger = logging.getLogger("claimsmcp.db")
_query_logger = logging.getLogger("claimsmcp.db.query")
_SLOW_MS = float(os.getenv("CLAIMS_QUERY_SLOW_MS", "200"))
_LOG_ALL = os.getenv("CLAIMS_QUERY_LOG", "").strip() == "1"


def _redact_params(params: Iterable[Any] | dict | None) -> list[Any] | dict | None:
    if params is None:
        return None
    if isinstance(params, dict):
        return {k: _redact_value(v) for k, v in params.items()}
    return [_redact_value(v) for v in params]


def _redact_value(val: Any) -> Any:
    if isinstance(val, (bytes, bytearray)):
        return f"<bytes:{len(val)}>"
    if isinstance(val, str) and len(val) > 80:
        return f"{val[:40]}…{val[-10:]}"
    return val


def _log_query(*, query_name: str | None, params: Any, elapsed_ms: float, rowcount: int | None) -> None:
    if not query_name and not _LOG_ALL and elapsed_ms < _SLOW_MS:
        return
    message = {
        "query": query_name or "unnamed",
        "ms": round(elapsed_ms, 2),
        "rowcount": rowcount,
        "params": _redact_params(params),
    }
    if elapsed_ms >= _SLOW_MS:
        _query_logger.warning("db_slow_query=%s", message)
    else:
        _query_logger.debug("db_query=%s", message)


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            if minconn is None:
                minconn = int(os.getenv("CLAIMS_DB_POOL_MIN", "1"))
            if maxconn is None:
                maxconn = int(os.getenv("CLAIMS_DB_POOL_MAX", "10"))
            _POOL = ThreadedConnectionPool(minconn, maxconn, dsn=get_db_url())
            _logger.info("db_pool initialized min=%s max=%s", minconn, maxconn)


def close_pool() -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            _POOL.closeall()
            _POOL = None


def _get_pool() -> ThreadedConnectionPool:
    if _POOL is None:
        init_pool()
    return _POOL


@contextmanager
def get_conn():
    """Borrow a pooled connection; the block runs as one transaction."""
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def fetch_one(conn, sql: str, params: Any = None, query_name: str | None = None) -> dict | None:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params or [])
        row = cur.fetchone()
        rowcount = cur.rowcount
    _log_query(query_name=query_name, params=params, elapsed_ms=(time.perf_counter() - start) * 1000, rowcount=rowcount)
    return dict(row) if row else None


def fetch_all(conn, sql: str, params: Any = None, query_name: str | None = None) -> list[dict]:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params or [])
        rows = [dict(r) for r in cur.fetchall()]
        rowcount = cur.rowcount
    _log_query(query_name=query_name, params=params, elapsed_ms=(time.perf_counter() - start) * 1000, rowcount=rowcount)
    return rows


def execute(conn, sql: str, params: Any = None, query_name: str | None = None) -> int:
    start = time.perf_counter()
    with conn.cursor() as cur:
        cur.execute(sql, params or [])
        rowcount = cur.rowcount
    _log_query(query_name=query_name, params=params, elapsed_ms=(time.perf_counter() - start) * 1000, rowcount=rowcount)
    return rowcount


def run_statement(conn, sql: str, params: Any = None, query_name: str | None = None) -> list[dict] | int:
    """Execute an arbitrary statement; rows when it returns any, else rowcount."""
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params if params is not None else None)
        rowcount = cur.rowcount
        result: list[dict] | int
        if cur.description is not None:
            result = [dict(r) for r in cur.fetchall()]
        else:
            result = rowcount
    _log_query(query_name=query_name or "raw", params=params, elapsed_ms=(time.perf_counter() - start) * 1000, rowcount=rowcount)
    return result


SCHEMA_SQL = """
create table if not exists claims_records (
    tenant_id text not null,
    entity_id text not null,
    id text not null,
    is_active boolean not null,
    draft_uuid text,
    data jsonb not null,
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now(),
    primary key (tenant_id, entity_id, id, is_active)
);
create table if not exists claims_draft_admin (
    tenant_id text not null,
    draft_uuid text not null,
    created_by text,
    last_changed_by text,
    in_process_by text,
    created_at timestamptz not null default now(),
    last_changed_at timestamptz not null default now(),
    primary key (tenant_id, draft_uuid)
);
"""


def ensure_schema() -> None:
    with get_conn() as conn:
        execute(conn, SCHEMA_SQL, query_name="schema.ensure")
