from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncConnection

from erp_jobs.jobs.model import JobStatus


async def record_terminal(conn: AsyncConnection, *, job_id: str, status: JobStatus, now_s: str) -> None:
    """Propagate a job that just reached a terminal status to its bulk request and schedule.

    Runs in the caller's transaction. Every path that ends a job calls it: completion,
    failure, admin cancel, bulk cancel and prerequisite cancellation.
    """
    row = (
        await conn.exec_driver_sql("SELECT bulk_request_id, schedule_id FROM jobs WHERE id=:id", {"id": job_id})
    ).first()
    if row is None:
        return
    bulk_request_id, schedule_id = row
    if bulk_request_id:
        await conn.exec_driver_sql(
            """
UPDATE bulk_requests
SET completed = completed + :completed,
    failed = failed + :failed,
    updated_at = :now
WHERE id = :id;
""".strip(),
            {
                "completed": 1 if status is JobStatus.COMPLETED else 0,
                "failed": 1 if status is JobStatus.FAILED else 0,
                "now": now_s,
                "id": bulk_request_id,
            },
        )
    if schedule_id:
        await conn.exec_driver_sql(
            "UPDATE job_schedules SET last_run=:now, updated_at=:now WHERE id=:id",
            {"now": now_s, "id": schedule_id},
        )
