from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from erp_jobs.core.ids import new_id
from erp_jobs.core.logging import get_logger
from erp_jobs.core.metrics import observe_claims
from erp_jobs.core.time import iso_utc_ms
from erp_jobs.db.session import with_sqlite_busy_retry
from erp_jobs.jobs.model import DEFAULT_TIMEOUT_S, Job, job_from_row
from erp_jobs.jobs.queues import refresh_current_jobs

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ClaimedJob:
    job: Job
    execution_id: str
    execution_number: int
    lease_seconds: int
    claimed_at: str


_CAPACITY_SQL = """
SELECT q.status,
       q.max_concurrent_jobs,
       (SELECT COUNT(*) FROM jobs r WHERE r.queue = q.name AND r.status = 'running') AS running
FROM job_queues q
WHERE q.name = :queue;
""".strip()

_CANDIDATES_SQL = """
SELECT j.id, j.resource_key, j.timeout_seconds, j.handler
FROM jobs j
WHERE j.queue = :queue
  AND j.status IN ('pending','scheduled')
  AND j.next_run_at IS NOT NULL
  AND j.next_run_at <= :now
  AND NOT EXISTS (
    SELECT 1 FROM job_dependencies d WHERE d.job_id = j.id AND d.satisfied = 0
  )
  AND (
    j.resource_key IS NULL
    OR NOT EXISTS (
      SELECT 1 FROM job_locks l WHERE l.resource_key = j.resource_key AND l.expires_at > :now
    )
  )
ORDER BY j.priority DESC, j.next_run_at ASC, j.id ASC
LIMIT :scan_limit;
""".strip()

_STAMP_SQL = """
UPDATE jobs
SET status='running',
    locked_by=:worker_id,
    locked_at=:now,
    expires_at=:expires_at,
    started_at=:now,
    updated_at=:now
WHERE id=:id AND status IN ('pending','scheduled')
RETURNING *;
""".strip()

_LOCK_SQL = """
INSERT INTO job_locks (id, resource_key, job_id, locked_at, expires_at)
VALUES (:id, :resource_key, :job_id, :now, :expires_at)
ON CONFLICT(resource_key) DO UPDATE SET
  id=excluded.id,
  job_id=excluded.job_id,
  locked_at=excluded.locked_at,
  expires_at=excluded.expires_at
WHERE job_locks.expires_at <= excluded.locked_at
RETURNING job_id;
""".strip()


async def _open_execution(
    conn: AsyncConnection,
    *,
    job_row: dict[str, Any],
    worker_id: str,
    now_s: str,
) -> tuple[str, int]:
    prev = (
        await conn.exec_driver_sql(
            "SELECT id, execution_number FROM job_executions WHERE job_id=:id ORDER BY execution_number DESC LIMIT 1",
            {"id": job_row["id"]},
        )
    ).first()
    number = int(prev[1]) + 1 if prev is not None else 1
    retry_number = int(job_row.get("retry_count") or 0)
    execution_id = new_id()
    await conn.exec_driver_sql(
        """
INSERT INTO job_executions (id, job_id, execution_number, status, started_at, retry_of, retry_number, worker_id, created_at)
VALUES (:id, :job_id, :execution_number, 'running', :now, :retry_of, :retry_number, :worker_id, :now);
""".strip(),
        {
            "id": execution_id,
            "job_id": job_row["id"],
            "execution_number": number,
            "now": now_s,
            "retry_of": str(prev[0]) if prev is not None and retry_number > 0 else None,
            "retry_number": retry_number,
            "worker_id": worker_id,
        },
    )
    return execution_id, number


async def claim_jobs(
    engine: AsyncEngine,
    *,
    queue: str,
    worker_id: str,
    limit: int,
    lease_seconds: int | None = None,
    lease_for: Callable[[int], int] | None = None,
    timeout_for: Callable[[str], int] | None = None,
    now: datetime | None = None,
) -> list[ClaimedJob]:
    """Atomically move up to ``limit`` due jobs of ``queue`` to Running for ``worker_id``.

    Admission is computed inside the same transaction: a paused or stopped queue
    yields nothing and an active one never exceeds ``max_concurrent_jobs`` running rows.
    Each job's lease is ``lease_for(timeout)`` when given, else ``lease_seconds``. A job
    without its own timeout takes ``timeout_for(handler)``, the handler's registered default.
    """
    worker_id = (worker_id or "").strip()
    if not worker_id:
        raise ValueError("worker_id is required")
    if int(limit) <= 0:
        return []

    now_dt = now or datetime.now(timezone.utc)
    now_s = iso_utc_ms(now_dt)
    if lease_for is None and lease_seconds is None:
        raise ValueError("lease_seconds or lease_for is required")

    def _lease(timeout_seconds: Any, handler: str) -> int:
        if lease_for is not None:
            if timeout_seconds is None:
                timeout_seconds = timeout_for(handler) if timeout_for is not None else DEFAULT_TIMEOUT_S
            return int(lease_for(int(timeout_seconds)))
        return int(lease_seconds or 0)

    async def _op() -> list[ClaimedJob]:
        async with engine.begin() as conn:
            cap = (await conn.exec_driver_sql(_CAPACITY_SQL, {"queue": queue})).first()
            if cap is None or str(cap[0]) != "active":
                return []
            slots = max(0, min(int(limit), int(cap[1]) - int(cap[2])))
            if slots <= 0:
                return []

            # Over-fetch so candidates sharing a resource key do not starve the batch.
            candidates = (
                await conn.exec_driver_sql(_CANDIDATES_SQL, {"queue": queue, "now": now_s, "scan_limit": slots * 4})
            ).fetchall()

            picked: list[tuple[str, int]] = []
            keys_taken: set[str] = set()
            for job_id, resource_key, timeout_seconds, handler in candidates:
                if resource_key is not None:
                    if resource_key in keys_taken:
                        continue
                    keys_taken.add(str(resource_key))
                picked.append((str(job_id), _lease(timeout_seconds, str(handler))))
                if len(picked) >= slots:
                    break

            claimed: list[ClaimedJob] = []
            for job_id, lease_s in picked:
                expires_s = iso_utc_ms(now_dt + timedelta(seconds=lease_s))
                row = (
                    await conn.exec_driver_sql(
                        _STAMP_SQL, {"worker_id": worker_id, "now": now_s, "expires_at": expires_s, "id": job_id}
                    )
                ).mappings().first()
                if row is None:
                    continue
                job_row = dict(row)
                if job_row.get("resource_key"):
                    got = (
                        await conn.exec_driver_sql(
                            _LOCK_SQL,
                            {
                                "id": new_id(),
                                "resource_key": job_row["resource_key"],
                                "job_id": job_id,
                                "now": now_s,
                                "expires_at": expires_s,
                            },
                        )
                    ).first()
                    if got is None:
                        raise RuntimeError(f"resource lock {job_row['resource_key']!r} was taken inside the claim")
                execution_id, number = await _open_execution(conn, job_row=job_row, worker_id=worker_id, now_s=now_s)
                claimed.append(
                    ClaimedJob(
                        job=job_from_row(job_row),
                        execution_id=execution_id,
                        execution_number=number,
                        lease_seconds=lease_s,
                        claimed_at=now_s,
                    )
                )

            if claimed:
                await refresh_current_jobs(conn, name=queue, now_s=now_s)
            return claimed

    claimed_jobs = await with_sqlite_busy_retry(_op)
    if claimed_jobs:
        observe_claims(queue=queue, count=len(claimed_jobs))
        log.info(
            "jobs_claimed queue=%s worker=%s count=%s ids=%s",
            queue,
            worker_id,
            len(claimed_jobs),
            ",".join(c.job.id for c in claimed_jobs),
        )
    return claimed_jobs
