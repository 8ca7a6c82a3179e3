from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.api.metrics import query_job_status_counts
from erp_jobs.core.errors import ErrorCode, error_body
from erp_jobs.core.request_id import get_or_create_request_id
from erp_jobs.core.time import ms_between, parse_iso_utc
from erp_jobs.db.session import with_sqlite_busy_retry
from erp_jobs.jobs.model import JobStatus

router = APIRouter()


async def _check_db(engine: AsyncEngine) -> bool:
    try:
        async with engine.connect() as conn:
            await conn.exec_driver_sql("SELECT 1")
        return True
    except Exception:
        return False


async def _query_worker_last_seen(engine: AsyncEngine) -> str | None:
    async def _op() -> str | None:
        async with engine.connect() as conn:
            row = (await conn.exec_driver_sql("SELECT MAX(last_heartbeat) FROM job_workers")).first()
            return str(row[0]) if row is not None and row[0] is not None else None

    return await with_sqlite_busy_retry(_op)


@router.get("/healthz")
async def healthz(request: Request) -> Any:
    rid = get_or_create_request_id(request)
    engine: AsyncEngine | None = getattr(request.app.state, "engine", None)
    settings = getattr(request.app.state, "settings", None)
    db_ok = await _check_db(engine) if engine is not None else False

    if not db_ok:
        return JSONResponse(
            status_code=503,
            content=error_body(
                code=ErrorCode.STORE_UNAVAILABLE,
                message="Database unavailable",
                request_id=rid,
                details={"db_ok": False},
            ),
        )

    stale_after_s = float(settings.heartbeat_ttl_s) if settings is not None else 30.0
    last_seen = await _query_worker_last_seen(engine)  # type: ignore[arg-type]
    worker_reason = "no_heartbeat"
    worker_ok = False
    if last_seen is not None:
        age_ms = ms_between(parse_iso_utc(last_seen), datetime.now(timezone.utc))
        worker_ok = age_ms <= stale_after_s * 1000
        worker_reason = "ok" if worker_ok else "stale"

    counts = await with_sqlite_busy_retry(lambda: query_job_status_counts(engine))  # type: ignore[arg-type]
    for status in JobStatus:
        counts.setdefault(status.value, 0)

    return {
        "ok": True,
        "db_ok": True,
        "worker_ok": worker_ok,
        "worker": {"last_seen_at": last_seen, "stale_after_s": stale_after_s, "reason": worker_reason},
        "jobs": {"counts": counts},
        "request_id": rid,
    }
