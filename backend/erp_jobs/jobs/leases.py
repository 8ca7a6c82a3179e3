from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.core.logging import get_logger
from erp_jobs.core.metrics import LEASES_RECLAIMED_TOTAL, observe_job_outcome
from erp_jobs.core.time import iso_utc_ms
from erp_jobs.db.session import with_sqlite_busy_retry
from erp_jobs.jobs.errors import ErrorKind
from erp_jobs.jobs.transitions import FinishResult, Outcome, apply_outcome

log = get_logger(__name__)

LEASE_LOST_MESSAGE = "lease lost"


@dataclass(frozen=True, slots=True)
class LeaseRenewal:
    renewed: bool
    cancel_requested: bool = False


async def renew_lease(
    engine: AsyncEngine,
    *,
    job_id: str,
    worker_id: str,
    lease_seconds: int,
    now: datetime | None = None,
) -> LeaseRenewal:
    """Push ``expires_at`` (and the job's resource lock) forward while ``worker_id`` owns the job."""
    now_dt = now or datetime.now(timezone.utc)
    now_s = iso_utc_ms(now_dt)
    expires_s = iso_utc_ms(now_dt + timedelta(seconds=int(lease_seconds)))

    async def _op() -> LeaseRenewal:
        async with engine.begin() as conn:
            row = (
                await conn.exec_driver_sql(
                    """
UPDATE jobs
SET expires_at=:expires_at,
    updated_at=:now
WHERE id=:id AND locked_by=:worker_id AND status='running'
RETURNING cancel_requested;
""".strip(),
                    {"expires_at": expires_s, "now": now_s, "id": job_id, "worker_id": worker_id},
                )
            ).first()
            if row is None:
                return LeaseRenewal(renewed=False)
            await conn.exec_driver_sql(
                "UPDATE job_locks SET expires_at=:expires_at WHERE job_id=:id",
                {"expires_at": expires_s, "id": job_id},
            )
            return LeaseRenewal(renewed=True, cancel_requested=bool(row[0]))

    return await with_sqlite_busy_retry(_op)


async def reclaim_expired(
    engine: AsyncEngine,
    *,
    now: datetime | None = None,
    failure_limit: int = 0,
    rng: random.Random | None = None,
    limit: int = 500,
) -> list[FinishResult]:
    """Republish Running jobs whose lease ran out, recording a synthetic ``lease lost`` failure."""
    now_dt = now or datetime.now(timezone.utc)
    now_s = iso_utc_ms(now_dt)
    outcome = Outcome.failure(LEASE_LOST_MESSAGE, kind=ErrorKind.LEASE_LOST)

    async def _op() -> list[FinishResult]:
        async with engine.begin() as conn:
            rows = (
                await conn.exec_driver_sql(
                    """
SELECT * FROM jobs
WHERE status='running' AND expires_at IS NOT NULL AND expires_at < :now
ORDER BY expires_at ASC, id ASC
LIMIT :limit;
""".strip(),
                    {"now": now_s, "limit": int(limit)},
                )
            ).mappings().all()

            results: list[FinishResult] = []
            for row in rows:
                execution = (
                    await conn.exec_driver_sql(
                        """
SELECT id FROM job_executions
WHERE job_id=:id AND status='running'
ORDER BY execution_number DESC
LIMIT 1;
""".strip(),
                        {"id": row["id"]},
                    )
                ).first()
                results.append(
                    await apply_outcome(
                        conn,
                        job_row=dict(row),
                        execution_id=str(execution[0]) if execution is not None else None,
                        outcome=outcome,
                        now=now_dt,
                        failure_limit=failure_limit,
                        rng=rng,
                    )
                )
            return results

    results = await with_sqlite_busy_retry(_op)
    for result in results:
        LEASES_RECLAIMED_TOTAL.inc()
        observe_job_outcome(
            queue=result.queue,
            succeeded=False,
            kind=ErrorKind.LEASE_LOST.value,
            retried=result.retried,
            duration_s=None,
        )
        log.warning("job_lease_reclaimed id=%s status=%s", result.job_id, result.status.value)
    return results


async def purge_expired_locks(engine: AsyncEngine, *, now: datetime | None = None) -> int:
    """Drop lock rows whose TTL lapsed; their owners are gone or already reclaimed."""
    now_s = iso_utc_ms(now or datetime.now(timezone.utc))

    async def _op() -> int:
        async with engine.begin() as conn:
            result = await conn.exec_driver_sql(
                """
DELETE FROM job_locks
WHERE expires_at <= :now
  AND NOT EXISTS (SELECT 1 FROM jobs j WHERE j.id = job_locks.job_id AND j.status = 'running');
""".strip(),
                {"now": now_s},
            )
            return int(result.rowcount or 0)

    return await with_sqlite_busy_retry(_op)
