from __future__ import annotations

import os
import socket
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.core.ids import new_id
from erp_jobs.core.logging import get_logger
from erp_jobs.core.time import iso_utc_ms
from erp_jobs.db.session import with_sqlite_busy_retry
from erp_jobs.jobs.model import WorkerStatus

log = get_logger(__name__)


async def register_worker(
    engine: AsyncEngine,
    *,
    worker_id: str,
    queues: Iterable[str] = (),
    hostname: str | None = None,
    pid: int | None = None,
    now: datetime | None = None,
) -> None:
    now_s = iso_utc_ms(now or datetime.now(timezone.utc))
    sql = """
INSERT INTO job_workers (id, worker_id, queue_name, hostname, pid, status, jobs_processed, jobs_failed, started_at, last_heartbeat)
VALUES (:id, :worker_id, :queue_name, :hostname, :pid, 'idle', 0, 0, :now, :now)
ON CONFLICT(worker_id) DO UPDATE SET
  queue_name=excluded.queue_name,
  hostname=excluded.hostname,
  pid=excluded.pid,
  status='idle',
  current_job_id=NULL,
  started_at=excluded.started_at,
  last_heartbeat=excluded.last_heartbeat;
""".strip()

    async def _op() -> None:
        async with engine.begin() as conn:
            await conn.exec_driver_sql(
                sql,
                {
                    "id": new_id(),
                    "worker_id": worker_id,
                    "queue_name": ",".join(queues),
                    "hostname": hostname or socket.gethostname(),
                    "pid": int(pid if pid is not None else os.getpid()),
                    "now": now_s,
                },
            )

    await with_sqlite_busy_retry(_op)
    log.info("worker_registered worker=%s", worker_id)


async def heartbeat(
    engine: AsyncEngine,
    *,
    worker_id: str,
    status: WorkerStatus,
    current_job_id: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Refresh liveness; returns False if the row is gone or was already declared crashed."""
    now_s = iso_utc_ms(now or datetime.now(timezone.utc))

    async def _op() -> bool:
        async with engine.begin() as conn:
            result = await conn.exec_driver_sql(
                """
UPDATE job_workers
SET status=:status, current_job_id=:current_job_id, last_heartbeat=:now
WHERE worker_id=:worker_id AND status != 'crashed';
""".strip(),
                {"status": status.value, "current_job_id": current_job_id, "now": now_s, "worker_id": worker_id},
            )
            return (result.rowcount or 0) == 1

    return await with_sqlite_busy_retry(_op)


async def mark_worker_stopped(engine: AsyncEngine, *, worker_id: str, now: datetime | None = None) -> None:
    now_s = iso_utc_ms(now or datetime.now(timezone.utc))

    async def _op() -> None:
        async with engine.begin() as conn:
            await conn.exec_driver_sql(
                "UPDATE job_workers SET status='stopped', current_job_id=NULL, last_heartbeat=:now WHERE worker_id=:w",
                {"now": now_s, "w": worker_id},
            )

    await with_sqlite_busy_retry(_op)
    log.info("worker_stopped worker=%s", worker_id)


async def expire_dead_workers(
    engine: AsyncEngine,
    *,
    heartbeat_ttl_s: float,
    now: datetime | None = None,
) -> list[str]:
    """Mark workers silent for longer than the TTL as crashed and expire the leases they hold.

    The reclaimer then republishes those jobs on its next pass instead of waiting out the full lease.
    """
    now_dt = now or datetime.now(timezone.utc)
    stale_before = iso_utc_ms(now_dt - timedelta(seconds=float(heartbeat_ttl_s)))
    # One millisecond in the past so a strict expires_at < now check picks them up.
    expired_s = iso_utc_ms(now_dt - timedelta(milliseconds=1))

    async def _op() -> list[str]:
        async with engine.begin() as conn:
            rows = (
                await conn.exec_driver_sql(
                    """
UPDATE job_workers
SET status='crashed', current_job_id=NULL
WHERE status IN ('idle','busy') AND last_heartbeat < :stale_before
RETURNING worker_id;
""".strip(),
                    {"stale_before": stale_before},
                )
            ).fetchall()
            dead = [str(r[0]) for r in rows]
            for worker_id in dead:
                await conn.exec_driver_sql(
                    """
UPDATE jobs SET expires_at=:expired
WHERE status='running' AND locked_by=:worker_id AND expires_at > :expired;
""".strip(),
                    {"expired": expired_s, "worker_id": worker_id},
                )
                await conn.exec_driver_sql(
                    """
UPDATE job_locks SET expires_at=:expired
WHERE job_id IN (SELECT id FROM jobs WHERE status='running' AND locked_by=:worker_id);
""".strip(),
                    {"expired": expired_s, "worker_id": worker_id},
                )
            return dead

    dead_workers = await with_sqlite_busy_retry(_op)
    for worker_id in dead_workers:
        log.warning("worker_crashed worker=%s", worker_id)
    return dead_workers


async def list_workers(engine: AsyncEngine) -> list[dict[str, Any]]:
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql("SELECT * FROM job_workers ORDER BY started_at DESC, worker_id ASC")
        return [dict(r) for r in result.mappings().all()]
