import os
from contextlib import contextmanager
from typing import Optional, Tuple

from psycopg.rows import dict_row
# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .logs import json_log

DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/logistiga"


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# Override in prod via env: DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE / DB_LOCK_TIMEOUT_MS.
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)
# Numbering, payments and cancellations take row locks (FOR UPDATE). A writer stuck
# behind another one gives up after this delay instead of piling up connections.
_LOCK_TIMEOUT_MS = _env_int("DB_LOCK_TIMEOUT_MS", 5000)

# Opened on first use so importing the app (tests, scripts) needs no reachable database.
_pool = ConnectionPool(
    conninfo=DATABASE_URL,
    min_size=_POOL_MIN,
    max_size=_POOL_MAX,
    kwargs={
        "row_factory": dict_row,
        "application_name": "logistiga-billing",
        "options": f"-c lock_timeout={_LOCK_TIMEOUT_MS}",
    },
    open=False,
)


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:`
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    if pool.closed:
        pool.open()
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_pool)


def db_ping() -> Tuple[bool, Optional[str]]:
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


def close_pools() -> None:
    try:
        _pool.close()
    except Exception as exc:
        json_log("warning", "db.pool_close_failed", error=str(exc))
