import os
from psycopg.rows import dict_row
from contextlib import contextmanager
from typing import Optional

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .logs import json_log

DATABASE_URL_ADMIN = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or "postgresql://localhost/farm_erp"
DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/farm_erp"

def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default

# Pool sizing defaults are conservative for local/dev. Override in prod via env:
# - DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE
# - DB_ADMIN_POOL_MIN_SIZE / DB_ADMIN_POOL_MAX_SIZE
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)
_ADMIN_POOL_MIN = _env_int("DB_ADMIN_POOL_MIN_SIZE", 1)
_ADMIN_POOL_MAX = _env_int("DB_ADMIN_POOL_MAX_SIZE", 5)

# Pools are opened on first use so importing routers (tests, scripts) never dials the DB.
_pool: Optional[ConnectionPool] = None
_admin_pool: Optional[ConnectionPool] = None


def _app_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        _pool = ConnectionPool(
            conninfo=DATABASE_URL,
            min_size=_POOL_MIN,
            max_size=_POOL_MAX,
            kwargs={"row_factory": dict_row},
        )
    return _pool


def _admin_conn_pool() -> ConnectionPool:
    global _admin_pool
    if _admin_pool is None:
        _admin_pool = ConnectionPool(
            conninfo=DATABASE_URL_ADMIN,
            min_size=_ADMIN_POOL_MIN,
            max_size=_ADMIN_POOL_MAX,
            kwargs={"row_factory": dict_row},
        )
    return _admin_pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # pool.connection() commits on success, rolls back on exception and
    # returns the connection; `with conn:` here would close it instead.
    with pool.connection() as conn:
        yield conn


def get_conn():
    return _pooled_conn(_app_pool())

def get_admin_conn():
    return _pooled_conn(_admin_conn_pool())


def close_pools() -> None:
    # Best-effort shutdown hook (e.g. uvicorn shutdown).
    for pool in (_pool, _admin_pool):
        if pool is None:
            continue
        try:
            pool.close()
        except Exception as exc:
            json_log("warning", "db.pool_close_failed", error=str(exc))


def set_tenant_context(conn, tenant_id: str):
    with conn.cursor() as cur:
        # `SET ... = %s` is not valid when using the extended query protocol (psycopg sends $1).
        # Use set_config() to safely parameterize the value.
        cur.execute(
            "SELECT set_config('app.current_tenant_id', %s::text, true)",
            (tenant_id,),
        )
