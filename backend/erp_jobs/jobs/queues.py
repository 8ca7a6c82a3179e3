from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from erp_jobs.core.ids import new_id
from erp_jobs.core.logging import get_logger
from erp_jobs.core.time import iso_utc_ms
from erp_jobs.db.session import with_sqlite_busy_retry
from erp_jobs.jobs.errors import JobNotFoundError, QueueStoppedError
from erp_jobs.jobs.model import QueueStatus

log = get_logger(__name__)

DEFAULT_QUEUE = "default"
DEFAULT_MAX_CONCURRENT_JOBS = 10


def normalize_queue_name(name: str | None) -> str:
    name = (name or "").strip()
    if len(name) > 100:
        raise ValueError("queue name is too long")
    return name or DEFAULT_QUEUE


async def ensure_queue(
    conn: AsyncConnection,
    *,
    name: str,
    now_s: str,
    max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
) -> QueueStatus:
    """Create ``name`` with defaults if missing (inside the caller's transaction) and return its status."""
    await conn.exec_driver_sql(
        """
INSERT INTO job_queues (id, name, max_concurrent_jobs, status, created_at, updated_at)
VALUES (:id, :name, :max_concurrent_jobs, 'active', :now, :now)
ON CONFLICT(name) DO NOTHING;
""".strip(),
        {"id": new_id(), "name": name, "max_concurrent_jobs": int(max_concurrent_jobs), "now": now_s},
    )
    row = (
        await conn.exec_driver_sql("SELECT status FROM job_queues WHERE name=:name", {"name": name})
    ).first()
    return QueueStatus(str(row[0])) if row is not None else QueueStatus.ACTIVE


async def require_accepting_queue(
    conn: AsyncConnection,
    *,
    name: str,
    now_s: str,
    max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
) -> None:
    status = await ensure_queue(conn, name=name, now_s=now_s, max_concurrent_jobs=max_concurrent_jobs)
    if status is QueueStatus.STOPPED:
        raise QueueStoppedError(f"queue {name!r} is stopped and refuses new submissions")


async def upsert_queue(
    engine: AsyncEngine,
    *,
    name: str,
    max_concurrent_jobs: int,
    description: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    name = normalize_queue_name(name)
    if int(max_concurrent_jobs) < 0:
        raise ValueError("max_concurrent_jobs must be >= 0")
    now_s = iso_utc_ms(now or datetime.now(timezone.utc))

    sql = """
INSERT INTO job_queues (id, name, description, max_concurrent_jobs, status, created_at, updated_at)
VALUES (:id, :name, :description, :max_concurrent_jobs, 'active', :now, :now)
ON CONFLICT(name) DO UPDATE SET
  description=COALESCE(excluded.description, job_queues.description),
  max_concurrent_jobs=excluded.max_concurrent_jobs,
  updated_at=excluded.updated_at
RETURNING *;
""".strip()

    async def _op() -> dict[str, Any]:
        async with engine.begin() as conn:
            result = await conn.exec_driver_sql(
                sql,
                {
                    "id": new_id(),
                    "name": name,
                    "description": description,
                    "max_concurrent_jobs": int(max_concurrent_jobs),
                    "now": now_s,
                },
            )
            return dict(result.mappings().one())

    return await with_sqlite_busy_retry(_op)


async def set_queue_status(
    engine: AsyncEngine,
    *,
    name: str,
    status: QueueStatus,
    now: datetime | None = None,
) -> dict[str, Any]:
    name = normalize_queue_name(name)
    now_s = iso_utc_ms(now or datetime.now(timezone.utc))

    async def _op() -> dict[str, Any]:
        async with engine.begin() as conn:
            result = await conn.exec_driver_sql(
                "UPDATE job_queues SET status=:status, updated_at=:now WHERE name=:name RETURNING *;",
                {"status": status.value, "now": now_s, "name": name},
            )
            row = result.mappings().first()
            if row is None:
                raise JobNotFoundError(f"queue not found: {name}")
            return dict(row)

    row = await with_sqlite_busy_retry(_op)
    log.info("queue_status_changed name=%s status=%s", name, status.value)
    return row


async def get_queue(engine: AsyncEngine, *, name: str) -> dict[str, Any] | None:
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql(
            "SELECT * FROM job_queues WHERE name=:name", {"name": normalize_queue_name(name)}
        )
        row = result.mappings().first()
        return dict(row) if row else None


async def list_queues(engine: AsyncEngine) -> list[dict[str, Any]]:
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql("SELECT * FROM job_queues ORDER BY name ASC")
        return [dict(r) for r in result.mappings().all()]


async def active_queue_names(engine: AsyncEngine) -> list[str]:
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql("SELECT name FROM job_queues WHERE status='active' ORDER BY name ASC")
        return [str(r[0]) for r in result.fetchall()]


async def record_queue_outcome(
    conn: AsyncConnection,
    *,
    name: str,
    failed: bool,
    wait_ms: int | None,
    process_ms: int | None,
    now_s: str,
) -> None:
    """Fold one finished attempt into the queue's rolling gauges (caller's transaction)."""
    await conn.exec_driver_sql(
        """
UPDATE job_queues
SET total_processed = total_processed + :processed,
    total_failed = total_failed + :failed,
    avg_wait_time_ms = CASE WHEN :wait_ms IS NULL THEN avg_wait_time_ms
        ELSE (avg_wait_time_ms * (total_processed + total_failed) + :wait_ms) / (total_processed + total_failed + 1) END,
    avg_process_time_ms = CASE WHEN :process_ms IS NULL THEN avg_process_time_ms
        ELSE (avg_process_time_ms * (total_processed + total_failed) + :process_ms) / (total_processed + total_failed + 1) END,
    current_jobs = (SELECT COUNT(*) FROM jobs WHERE jobs.queue = job_queues.name AND jobs.status = 'running'),
    updated_at = :now
WHERE name = :name;
""".strip(),
        {
            "processed": 0 if failed else 1,
            "failed": 1 if failed else 0,
            "wait_ms": wait_ms,
            "process_ms": process_ms,
            "now": now_s,
            "name": name,
        },
    )


async def refresh_current_jobs(conn: AsyncConnection, *, name: str, now_s: str) -> None:
    await conn.exec_driver_sql(
        """
UPDATE job_queues
SET current_jobs = (SELECT COUNT(*) FROM jobs WHERE jobs.queue = job_queues.name AND jobs.status = 'running'),
    updated_at = :now
WHERE name = :name;
""".strip(),
        {"now": now_s, "name": name},
    )
