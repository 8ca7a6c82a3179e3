from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from erp_jobs.core.ids import new_id
from erp_jobs.core.logging import get_logger
from erp_jobs.core.time import iso_utc_ms
from erp_jobs.db.session import with_sqlite_busy_retry
from erp_jobs.jobs.errors import DependencyCycleError, InvalidJobStateError, JobNotFoundError
from erp_jobs.jobs.model import CANCEL_REASON_PREREQUISITE, DependencyType, JobStatus
from erp_jobs.jobs.terminal import record_terminal

log = get_logger(__name__)

_WAITING_STATUSES = ("pending", "scheduled", "paused")


def edge_satisfied(dependency_type: DependencyType, status: JobStatus) -> bool:
    if dependency_type is DependencyType.ON_SUCCESS:
        return status is JobStatus.COMPLETED
    if dependency_type is DependencyType.ON_FAILURE:
        return status is JobStatus.FAILED
    return status in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


async def would_create_cycle(conn: AsyncConnection, *, job_id: str, depends_on_job_id: str) -> bool:
    """DFS from the prerequisite along existing edges; reaching ``job_id`` closes a cycle."""
    if job_id == depends_on_job_id:
        return True
    seen: set[str] = set()
    stack = [depends_on_job_id]
    while stack:
        current = stack.pop()
        if current == job_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        result = await conn.exec_driver_sql(
            "SELECT depends_on_job_id FROM job_dependencies WHERE job_id=:id", {"id": current}
        )
        stack.extend(str(r[0]) for r in result.fetchall())
    return False


async def insert_dependencies(
    conn: AsyncConnection,
    *,
    job_id: str,
    edges: Iterable[tuple[str, DependencyType]],
    now: datetime,
) -> bool:
    """Insert edges for ``job_id`` inside the caller's transaction.

    Returns True when every edge is already satisfied. Edges on prerequisites
    that already ended with the wrong outcome cancel the dependent.
    """
    now_s = iso_utc_ms(now)
    all_satisfied = True
    for depends_on_job_id, dependency_type in edges:
        dependency_type = DependencyType(dependency_type)
        prereq = (
            await conn.exec_driver_sql("SELECT status FROM jobs WHERE id=:id", {"id": depends_on_job_id})
        ).first()
        if prereq is None:
            raise JobNotFoundError(f"prerequisite job not found: {depends_on_job_id}")
        if await would_create_cycle(conn, job_id=job_id, depends_on_job_id=depends_on_job_id):
            raise DependencyCycleError(f"edge {job_id} -> {depends_on_job_id} would create a cycle")

        prereq_status = JobStatus(str(prereq[0]))
        satisfied = prereq_status in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED} and edge_satisfied(
            dependency_type, prereq_status
        )
        await conn.exec_driver_sql(
            """
INSERT INTO job_dependencies (id, job_id, depends_on_job_id, dependency_type, satisfied, created_at)
VALUES (:id, :job_id, :depends_on_job_id, :dependency_type, :satisfied, :now);
""".strip(),
            {
                "id": new_id(),
                "job_id": job_id,
                "depends_on_job_id": depends_on_job_id,
                "dependency_type": dependency_type.value,
                "satisfied": 1 if satisfied else 0,
                "now": now_s,
            },
        )
        if prereq_status in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED} and not satisfied:
            await _cancel_waiting(conn, job_ids=[job_id], now_s=now_s)
            return False
        all_satisfied = all_satisfied and satisfied
    return all_satisfied


async def add_dependency(
    engine: AsyncEngine,
    *,
    job_id: str,
    depends_on_job_id: str,
    dependency_type: DependencyType = DependencyType.ON_SUCCESS,
    now: datetime | None = None,
) -> None:
    """Attach an edge to an existing job that has not started yet."""
    now_dt = now or datetime.now(timezone.utc)

    async def _op() -> None:
        async with engine.begin() as conn:
            row = (await conn.exec_driver_sql("SELECT status FROM jobs WHERE id=:id", {"id": job_id})).first()
            if row is None:
                raise JobNotFoundError(f"job not found: {job_id}")
            if str(row[0]) not in _WAITING_STATUSES:
                raise InvalidJobStateError(f"job {job_id} is {row[0]}; dependencies can only be added to waiting jobs")
            ready = await insert_dependencies(
                conn, job_id=job_id, edges=[(depends_on_job_id, dependency_type)], now=now_dt
            )
            if not ready:
                # Park the dependent until its prerequisites resolve.
                await conn.exec_driver_sql(
                    "UPDATE jobs SET next_run_at=NULL, updated_at=:now WHERE id=:id AND status IN ('pending','scheduled','paused')",
                    {"id": job_id, "now": iso_utc_ms(now_dt)},
                )

    await with_sqlite_busy_retry(_op)


async def list_dependencies(engine: AsyncEngine, *, job_id: str) -> list[dict[str, Any]]:
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql(
            "SELECT * FROM job_dependencies WHERE job_id=:id ORDER BY created_at ASC, id ASC", {"id": job_id}
        )
        return [dict(r) for r in result.mappings().all()]


async def _cancel_waiting(conn: AsyncConnection, *, job_ids: list[str], now_s: str) -> list[str]:
    cancelled: list[str] = []
    for job_id in job_ids:
        result = await conn.exec_driver_sql(
            """
UPDATE jobs
SET status='cancelled', cancel_reason=:reason, next_run_at=NULL, completed_at=:now, updated_at=:now
WHERE id=:id AND status IN ('pending','scheduled','paused')
RETURNING id;
""".strip(),
            {"reason": CANCEL_REASON_PREREQUISITE, "now": now_s, "id": job_id},
        )
        if result.first() is not None:
            await record_terminal(conn, job_id=job_id, status=JobStatus.CANCELLED, now_s=now_s)
            cancelled.append(job_id)
    return cancelled


async def resolve_dependents(
    conn: AsyncConnection,
    *,
    prerequisite_id: str,
    status: JobStatus,
    now: datetime,
) -> tuple[list[str], list[str]]:
    """Walk outgoing edges of a job that just reached ``status`` (caller's transaction).

    Returns ``(readied, cancelled)`` job ids. Cancellations cascade to their own dependents.
    """
    now_s = iso_utc_ms(now)
    readied: list[str] = []
    cancelled: list[str] = []
    work: list[tuple[str, JobStatus]] = [(prerequisite_id, status)]

    while work:
        current_id, current_status = work.pop()
        result = await conn.exec_driver_sql(
            "SELECT id, job_id, dependency_type FROM job_dependencies WHERE depends_on_job_id=:id AND satisfied=0",
            {"id": current_id},
        )
        edges = result.fetchall()
        for edge_id, dependent_id, dependency_type in edges:
            dependent_id = str(dependent_id)
            if edge_satisfied(DependencyType(str(dependency_type)), current_status):
                await conn.exec_driver_sql(
                    "UPDATE job_dependencies SET satisfied=1 WHERE id=:id", {"id": str(edge_id)}
                )
                remaining = (
                    await conn.exec_driver_sql(
                        "SELECT COUNT(*) FROM job_dependencies WHERE job_id=:id AND satisfied=0", {"id": dependent_id}
                    )
                ).scalar_one()
                if int(remaining or 0) == 0:
                    ready = await conn.exec_driver_sql(
                        """
UPDATE jobs
SET next_run_at = CASE
      WHEN kind = 'event_triggered' THEN next_run_at
      WHEN scheduled_at IS NOT NULL AND scheduled_at > :now THEN scheduled_at
      ELSE :now END,
    updated_at = :now
WHERE id = :id AND status IN ('pending','scheduled','paused')
RETURNING id;
""".strip(),
                        {"now": now_s, "id": dependent_id},
                    )
                    if ready.first() is not None:
                        readied.append(dependent_id)
            else:
                for job_id in await _cancel_waiting(conn, job_ids=[dependent_id], now_s=now_s):
                    cancelled.append(job_id)
                    log.info("job_cancelled_by_prerequisite id=%s prerequisite=%s", job_id, current_id)
                    work.append((job_id, JobStatus.CANCELLED))

    return readied, cancelled
