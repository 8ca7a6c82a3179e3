from __future__ import annotations

import os
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

# Claim, complete and reclaim transactions are short but may queue behind each
# other when many workers share one file; the busy timeout absorbs that.
SQLITE_BUSY_TIMEOUT_MS = 30_000
SQLITE_POOL_SIZE = 10
SQLITE_MAX_OVERFLOW = 10
SQLITE_POOL_TIMEOUT_S = 5


def _env_int(name: str, *, default: int, min_v: int, max_v: int) -> int:
    try:
        value = int((os.environ.get(name) or str(default)).strip() or default)
    except ValueError:
        value = int(default)
    return max(int(min_v), min(int(value), int(max_v)))


def _busy_timeout_ms() -> int:
    return _env_int("SQLITE_BUSY_TIMEOUT_MS", default=SQLITE_BUSY_TIMEOUT_MS, min_v=1000, max_v=5 * 60_000)


def apply_sqlite_pragmas(dbapi_connection: Any) -> None:
    busy_timeout_ms = _busy_timeout_ms()

    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys = ON")
        try:
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.fetchone()
        except Exception:
            pass
        cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.execute("PRAGMA temp_store = MEMORY")
        cursor.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
    finally:
        cursor.close()


def is_sqlite_url(database_url: str) -> bool:
    return database_url.lower().startswith("sqlite")


def _is_sqlite_file_url(database_url: str) -> bool:
    try:
        url = make_url(database_url)
    except Exception:
        return False
    if (url.get_backend_name() or "").lower() != "sqlite":
        return False
    db = str(url.database or "").strip()
    return bool(db and db != ":memory:")


def create_engine(database_url: str) -> AsyncEngine:
    kwargs: dict[str, Any] = {}
    if is_sqlite_url(database_url):
        kwargs["connect_args"] = {"timeout": float(_busy_timeout_ms()) / 1000.0}
        if _is_sqlite_file_url(database_url):
            pool_timeout_ms = _env_int(
                "SQLITE_POOL_TIMEOUT_MS", default=SQLITE_POOL_TIMEOUT_S * 1000, min_v=500, max_v=120_000
            )
            kwargs.update(
                {
                    "pool_size": _env_int("SQLITE_POOL_SIZE", default=SQLITE_POOL_SIZE, min_v=1, max_v=200),
                    "max_overflow": _env_int("SQLITE_MAX_OVERFLOW", default=SQLITE_MAX_OVERFLOW, min_v=0, max_v=200),
                    "pool_timeout": float(pool_timeout_ms) / 1000.0,
                }
            )

    engine = create_async_engine(database_url, **kwargs)

    if is_sqlite_url(database_url):
        def _on_connect(dbapi_connection: Any, _record: Any) -> None:
            # The driver's implicit BEGIN is deferred; transactions are opened in _on_begin instead.
            dbapi_connection.isolation_level = None
            apply_sqlite_pragmas(dbapi_connection)

        def _on_begin(conn: Any) -> None:
            # Take the write lock up front so read-then-write transactions
            # (claim, complete, reclaim) are serialized instead of failing
            # with a stale snapshot.
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        event.listen(engine.sync_engine, "connect", _on_connect)
        event.listen(engine.sync_engine, "begin", _on_begin)

    return engine
