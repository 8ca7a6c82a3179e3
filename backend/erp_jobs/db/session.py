from __future__ import annotations

import asyncio
import os
import random
import sqlite3
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import OperationalError, TimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from erp_jobs.jobs.errors import StoreUnavailableError

T = TypeVar("T")


def is_sqlite_busy_error(exc: BaseException) -> bool:
    if isinstance(exc, TimeoutError):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        msg = str(exc).lower()
        return (
            "database is locked" in msg
            or "database table is locked" in msg
            or "database schema is locked" in msg
            or "database is busy" in msg
        )
    if isinstance(exc, OperationalError):
        orig = getattr(exc, "orig", None)
        return is_sqlite_busy_error(orig) if isinstance(orig, BaseException) else False
    return False


def _env_float(name: str, default: float) -> float:
    try:
        return float((os.environ.get(name) or "").strip() or default)
    except ValueError:
        return float(default)


async def with_sqlite_busy_retry(
    op: Callable[[], Awaitable[T]],
    *,
    retries: int = 8,
    base_delay_s: float = 0.05,
) -> T:
    """Run ``op``, retrying on SQLite busy/locked errors with jittered exponential backoff.

    When the retry budget is spent the busy error is re-raised as ``StoreUnavailableError``.
    """
    retries_i = max(0, min(int(_env_float("SQLITE_BUSY_RETRIES", retries)), 50))
    base_delay = max(0.0, min(_env_float("SQLITE_BUSY_BASE_DELAY_S", base_delay_s), 5.0))
    max_delay = max(0.0, min(_env_float("SQLITE_BUSY_MAX_DELAY_S", 2.0), 30.0))

    attempt = 0
    while True:
        try:
            return await op()
        except Exception as exc:
            if not is_sqlite_busy_error(exc):
                raise
            if attempt >= retries_i:
                raise StoreUnavailableError(f"store busy after {attempt + 1} attempts: {exc}") from exc
            delay = base_delay * (2**attempt)
            if max_delay > 0:
                delay = min(float(delay), float(max_delay))
            if delay > 0:
                # Add a tiny jitter to avoid synchronized retries under load.
                delay *= 0.9 + (random.random() * 0.2)
                await asyncio.sleep(float(delay))
            attempt += 1


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

