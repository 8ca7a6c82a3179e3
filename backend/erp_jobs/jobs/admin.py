"""Operator-facing operations over the job store.

Every successful mutation posts a wake-up so a dispatcher in this process
re-scans without waiting for its next tick.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.core.logging import get_logger
from erp_jobs.core.time import iso_utc_ms
from erp_jobs.db.session import with_sqlite_busy_retry
from erp_jobs.jobs import bulk as bulk_ops
from erp_jobs.jobs import dependencies as dependency_ops
from erp_jobs.jobs import schedules as schedule_ops
from erp_jobs.jobs import templates as template_ops
from erp_jobs.jobs.dependencies import resolve_dependents
from erp_jobs.jobs.enqueue import submit_job, trigger_job
from erp_jobs.jobs.errors import InvalidJobStateError, JobNotFoundError
from erp_jobs.jobs.model import (
    CANCEL_REASON_ADMIN,
    DependencyType,
    JobKind,
    JobStatus,
    QueueStatus,
    TERMINAL_STATUSES,
    job_from_row,
    parse_tags,
)
from erp_jobs.jobs.queues import (
    DEFAULT_MAX_CONCURRENT_JOBS,
    get_queue,
    list_queues,
    normalize_queue_name,
    set_queue_status,
    upsert_queue,
)
from erp_jobs.jobs.registry import HandlerRegistry
from erp_jobs.jobs.rollup import MetricsAggregator
from erp_jobs.jobs.signals import WakeSignal
from erp_jobs.jobs.terminal import record_terminal
from erp_jobs.jobs.transitions import next_fire_for
from erp_jobs.jobs.workers import list_workers

log = get_logger(__name__)

_CANCELLABLE = ("pending", "scheduled", "paused")
_RERUNNABLE = {JobStatus.FAILED, JobStatus.CANCELLED}
_DELETABLE = TERMINAL_STATUSES
MAX_LIST_LIMIT = 200


def serialize_job(row: Any) -> dict[str, Any]:
    out = dict(row)
    payload_json = str(out.pop("payload_json", None) or "{}")
    try:
        out["payload"] = json.loads(payload_json)
    except ValueError:
        out["payload"] = None
    out["tags"] = parse_tags(out.get("tags"))
    out["cancel_requested"] = bool(out.get("cancel_requested"))
    return out


def encode_cursor(created_at: str, job_id: str) -> str:
    return f"{created_at}|{job_id}"


def decode_cursor(cursor: str) -> tuple[str, str]:
    created_at, sep, job_id = (cursor or "").strip().partition("|")
    if not sep or not created_at or not job_id:
        raise ValueError("unsupported cursor")
    return created_at, job_id


class AdminService:
    def __init__(
        self,
        engine: AsyncEngine,
        *,
        registry: HandlerRegistry | None = None,
        wake: WakeSignal | None = None,
        aggregator: MetricsAggregator | None = None,
        default_queue_concurrency: int = DEFAULT_MAX_CONCURRENT_JOBS,
    ) -> None:
        self.engine = engine
        self.registry = registry
        self.wake = wake or WakeSignal()
        self.aggregator = aggregator
        self.default_queue_concurrency = int(default_queue_concurrency)

    def _woke(self, queue: str | None = None, *, submitted: int = 0, now: datetime | None = None) -> None:
        if submitted and self.aggregator is not None and queue is not None:
            self.aggregator.record_submitted(queue, count=submitted, at=now)
        self.wake.post()

    # submission

    async def submit_job(self, *, handler: str | None = None, now: datetime | None = None, **kwargs: Any) -> str:
        if kwargs.get("timeout_seconds") is None and handler and self.registry is not None:
            spec = self.registry.get(handler)
            if spec is not None and spec.timeout_seconds is not None:
                kwargs["timeout_seconds"] = spec.timeout_seconds
        kwargs.setdefault("default_queue_concurrency", self.default_queue_concurrency)
        job_id = await submit_job(self.engine, handler=handler, now=now, **kwargs)
        self._woke(normalize_queue_name(kwargs.get("queue")), submitted=1, now=now)
        return job_id

    async def submit_bulk(self, *, handler: str, payloads: list[Any], now: datetime | None = None, **kwargs: Any) -> str:
        kwargs.setdefault("default_queue_concurrency", self.default_queue_concurrency)
        bulk_id = await bulk_ops.submit_bulk(self.engine, handler=handler, payloads=payloads, now=now, **kwargs)
        # Jobs are counted as submitted when the expander inserts them.
        self._woke()
        return bulk_id

    async def create_schedule(self, **kwargs: Any) -> dict[str, Any]:
        schedule = await schedule_ops.create_schedule(self.engine, **kwargs)
        self._woke()
        return schedule

    async def create_template(self, **kwargs: Any) -> dict[str, Any]:
        return await template_ops.create_template(self.engine, **kwargs)

    async def trigger_job(self, *, job_id: str, payload: Any = None, now: datetime | None = None) -> None:
        await trigger_job(self.engine, job_id=job_id, payload=payload, now=now)
        self._woke()

    async def add_dependency(
        self,
        *,
        job_id: str,
        depends_on_job_id: str,
        dependency_type: DependencyType | str = DependencyType.ON_SUCCESS,
        now: datetime | None = None,
    ) -> None:
        await dependency_ops.add_dependency(
            self.engine,
            job_id=job_id,
            depends_on_job_id=depends_on_job_id,
            dependency_type=DependencyType(dependency_type),
            now=now,
        )

    # job lifecycle

    async def cancel_job(self, *, job_id: str, reason: str | None = None, now: datetime | None = None) -> str:
        """Cancel a waiting job outright; flag a running one.

        Returns the resulting status: ``cancelled``, or ``running`` when the
        running attempt was asked to stop and will convert on completion.
        """
        now_dt = now or datetime.now(timezone.utc)
        now_s = iso_utc_ms(now_dt)
        reason_v = (reason or "").strip() or CANCEL_REASON_ADMIN

        async def _op() -> str:
            async with self.engine.begin() as conn:
                row = (
                    await conn.exec_driver_sql("SELECT status FROM jobs WHERE id=:id", {"id": job_id})
                ).first()
                if row is None:
                    raise JobNotFoundError(f"job not found: {job_id}")
                status = JobStatus(str(row[0]))
                if status is JobStatus.RUNNING:
                    await conn.exec_driver_sql(
                        "UPDATE jobs SET cancel_requested=1, cancel_reason=:reason, updated_at=:now WHERE id=:id",
                        {"reason": reason_v, "now": now_s, "id": job_id},
                    )
                    return JobStatus.RUNNING.value
                if status.value not in _CANCELLABLE:
                    raise InvalidJobStateError(f"job {job_id} is already {status.value}")
                await conn.exec_driver_sql(
                    """
UPDATE jobs
SET status='cancelled', cancel_reason=:reason, next_run_at=NULL, completed_at=:now, updated_at=:now
WHERE id=:id;
""".strip(),
                    {"reason": reason_v, "now": now_s, "id": job_id},
                )
                await record_terminal(conn, job_id=job_id, status=JobStatus.CANCELLED, now_s=now_s)
                await resolve_dependents(conn, prerequisite_id=job_id, status=JobStatus.CANCELLED, now=now_dt)
                return JobStatus.CANCELLED.value

        result = await with_sqlite_busy_retry(_op)
        log.info("job_cancel id=%s result=%s", job_id, result)
        self._woke()
        return result

    async def pause_job(self, *, job_id: str, now: datetime | None = None) -> None:
        now_s = iso_utc_ms(now or datetime.now(timezone.utc))

        async def _op() -> None:
            async with self.engine.begin() as conn:
                result = await conn.exec_driver_sql(
                    "UPDATE jobs SET status='paused', updated_at=:now WHERE id=:id AND status IN ('pending','scheduled')",
                    {"now": now_s, "id": job_id},
                )
                if (result.rowcount or 0) == 0:
                    await self._raise_state(conn, job_id, "paused")

        await with_sqlite_busy_retry(_op)
        log.info("job_paused id=%s", job_id)

    async def resume_job(self, *, job_id: str, now: datetime | None = None) -> None:
        """Resume a paused job. Recurring jobs restart from their next fire after now."""
        now_dt = now or datetime.now(timezone.utc)
        now_s = iso_utc_ms(now_dt)

        async def _op() -> None:
            async with self.engine.begin() as conn:
                row = (
                    await conn.exec_driver_sql("SELECT * FROM jobs WHERE id=:id", {"id": job_id})
                ).mappings().first()
                if row is None:
                    raise JobNotFoundError(f"job not found: {job_id}")
                if str(row["status"]) != JobStatus.PAUSED.value:
                    raise InvalidJobStateError(f"job {job_id} is {row['status']}, not paused")
                job = job_from_row(row)
                next_run_s = job.next_run_at
                if job.is_recurring and next_run_s is not None and next_run_s < now_s:
                    next_run_s = next_fire_for(job, now=now_dt)
                status = JobStatus.SCHEDULED if next_run_s is not None and next_run_s > now_s else JobStatus.PENDING
                await conn.exec_driver_sql(
                    """
UPDATE jobs
SET status=:status, next_run_at=:next_run_at, consecutive_failures=0, updated_at=:now
WHERE id=:id;
""".strip(),
                    {"status": status.value, "next_run_at": next_run_s, "now": now_s, "id": job_id},
                )

        await with_sqlite_busy_retry(_op)
        log.info("job_resumed id=%s", job_id)
        self._woke()

    async def rerun_job(self, *, job_id: str, now: datetime | None = None) -> str:
        """Submit a fresh copy of a failed or cancelled job that references the original."""
        row = await self._get_row(job_id)
        if JobStatus(str(row["status"])) not in _RERUNNABLE:
            raise InvalidJobStateError(f"job {job_id} is {row['status']}; only failed or cancelled jobs can be rerun")
        kind = JobKind(str(row["kind"]))
        return await self.submit_job(
            handler=str(row["handler"]),
            name=str(row["name"]),
            payload=str(row["payload_json"] or "{}"),
            queue=str(row["queue"]),
            priority=int(row["priority"]),
            kind=kind,
            cron_expression=row["cron_expression"],
            interval_seconds=row["interval_seconds"],
            timezone_name=str(row["timezone"] or "UTC"),
            max_retries=int(row["max_retries"]),
            retry_delay_seconds=int(row["retry_delay_seconds"]),
            timeout_seconds=row["timeout_seconds"],
            tags=parse_tags(row["tags"]),
            created_by=row["created_by"],
            resource_key=row["resource_key"],
            template_id=row["template_id"],
            rerun_of=job_id,
            now=now,
        )

    async def retry_job(self, *, job_id: str, now: datetime | None = None) -> None:
        """Put a failed or cancelled job back to Pending in place with a fresh retry budget.

        Edges to prerequisites that already finished can never resolve on their own,
        so the retry overrides them; edges to prerequisites still waiting keep holding the job.
        """
        now_s = iso_utc_ms(now or datetime.now(timezone.utc))

        async def _op() -> None:
            async with self.engine.begin() as conn:
                row = (
                    await conn.exec_driver_sql("SELECT status FROM jobs WHERE id=:id", {"id": job_id})
                ).first()
                if row is None:
                    raise JobNotFoundError(f"job not found: {job_id}")
                if JobStatus(str(row[0])) not in _RERUNNABLE:
                    raise InvalidJobStateError(f"job {job_id} is {row[0]}; only failed or cancelled jobs can be retried")
                await conn.exec_driver_sql(
                    """
UPDATE job_dependencies
SET satisfied=1
WHERE job_id=:id AND satisfied=0
  AND depends_on_job_id IN (SELECT id FROM jobs WHERE status IN ('completed','failed','cancelled'));
""".strip(),
                    {"id": job_id},
                )
                waiting = (
                    await conn.exec_driver_sql(
                        "SELECT COUNT(*) FROM job_dependencies WHERE job_id=:id AND satisfied=0", {"id": job_id}
                    )
                ).scalar_one()
                await conn.exec_driver_sql(
                    """
UPDATE jobs
SET status='pending', retry_count=0, consecutive_failures=0, cancel_requested=0, cancel_reason=NULL,
    next_run_at=:next_run_at, completed_at=NULL, updated_at=:now
WHERE id=:id;
""".strip(),
                    {"next_run_at": None if int(waiting or 0) else now_s, "now": now_s, "id": job_id},
                )

        await with_sqlite_busy_retry(_op)
        log.info("job_retry_requested id=%s", job_id)
        self._woke()

    async def delete_job(self, *, job_id: str) -> None:
        async def _op() -> None:
            async with self.engine.begin() as conn:
                row = (
                    await conn.exec_driver_sql("SELECT status FROM jobs WHERE id=:id", {"id": job_id})
                ).first()
                if row is None:
                    raise JobNotFoundError(f"job not found: {job_id}")
                if JobStatus(str(row[0])) not in _DELETABLE:
                    raise InvalidJobStateError(f"job {job_id} is {row[0]}; only terminal jobs can be deleted")
                await conn.exec_driver_sql("DELETE FROM jobs WHERE id=:id", {"id": job_id})

        await with_sqlite_busy_retry(_op)
        log.info("job_deleted id=%s", job_id)

    # queues

    async def upsert_queue(self, *, name: str, max_concurrent_jobs: int, description: str | None = None) -> dict[str, Any]:
        queue = await upsert_queue(
            self.engine, name=name, max_concurrent_jobs=max_concurrent_jobs, description=description
        )
        self._woke()
        return queue

    async def set_queue_status(self, *, name: str, status: QueueStatus | str) -> dict[str, Any]:
        queue = await set_queue_status(self.engine, name=name, status=QueueStatus(status))
        self._woke()
        return queue

    async def pause_queue(self, *, name: str) -> dict[str, Any]:
        return await self.set_queue_status(name=name, status=QueueStatus.PAUSED)

    async def resume_queue(self, *, name: str) -> dict[str, Any]:
        return await self.set_queue_status(name=name, status=QueueStatus.ACTIVE)

    async def get_queue(self, *, name: str) -> dict[str, Any] | None:
        return await get_queue(self.engine, name=name)

    async def list_queues(self) -> list[dict[str, Any]]:
        return await list_queues(self.engine)

    # schedules, templates, bulk, workers

    async def set_schedule_enabled(self, *, schedule_id: str, enabled: bool) -> dict[str, Any]:
        schedule = await schedule_ops.set_schedule_enabled(self.engine, schedule_id=schedule_id, enabled=enabled)
        self._woke()
        return schedule

    async def delete_schedule(self, *, schedule_id: str) -> None:
        await schedule_ops.delete_schedule(self.engine, schedule_id=schedule_id)

    async def get_schedule(self, *, schedule_id: str) -> dict[str, Any] | None:
        return await schedule_ops.get_schedule(self.engine, schedule_id=schedule_id)

    async def list_schedules(self, *, enabled: bool | None = None) -> list[dict[str, Any]]:
        return await schedule_ops.list_schedules(self.engine, enabled=enabled)

    async def get_template(self, *, template_id: str) -> dict[str, Any] | None:
        return await template_ops.get_template(self.engine, template_id=template_id)

    async def list_templates(self) -> list[dict[str, Any]]:
        return await template_ops.list_templates(self.engine)

    async def get_bulk(self, *, bulk_id: str) -> dict[str, Any] | None:
        return await bulk_ops.get_bulk(self.engine, bulk_id=bulk_id)

    async def cancel_bulk(self, *, bulk_id: str) -> list[str]:
        cancelled = await bulk_ops.cancel_bulk(self.engine, bulk_id=bulk_id)
        self._woke()
        return cancelled

    async def list_workers(self) -> list[dict[str, Any]]:
        return await list_workers(self.engine)

    # queries

    async def _get_row(self, job_id: str) -> dict[str, Any]:
        async with self.engine.connect() as conn:
            row = (
                await conn.exec_driver_sql("SELECT * FROM jobs WHERE id=:id", {"id": job_id})
            ).mappings().first()
        if row is None:
            raise JobNotFoundError(f"job not found: {job_id}")
        return dict(row)

    async def _raise_state(self, conn: Any, job_id: str, target: str) -> None:
        row = (await conn.exec_driver_sql("SELECT status FROM jobs WHERE id=:id", {"id": job_id})).first()
        if row is None:
            raise JobNotFoundError(f"job not found: {job_id}")
        raise InvalidJobStateError(f"job {job_id} is {row[0]} and cannot be {target}")

    async def get_job(self, *, job_id: str) -> dict[str, Any]:
        return serialize_job(await self._get_row(job_id))

    async def list_jobs(
        self,
        *,
        queue: str | None = None,
        status: JobStatus | str | None = None,
        tag: str | None = None,
        handler: str | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Newest first. Returns ``(items, next_cursor)``; ``next_cursor`` is None on the last page."""
        limit_i = int(limit)
        if limit_i < 1 or limit_i > MAX_LIST_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_LIST_LIMIT}")
        clauses: list[str] = []
        params: dict[str, Any] = {"limit": limit_i + 1}
        if queue:
            clauses.append("queue = :queue")
            params["queue"] = normalize_queue_name(queue)
        if status:
            clauses.append("status = :status")
            params["status"] = JobStatus(status).value
        if tag:
            clauses.append("tags LIKE :tag ESCAPE '\\'")
            escaped = tag.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            params["tag"] = f"%,{escaped},%"
        if handler:
            clauses.append("handler = :handler")
            params["handler"] = handler.strip()
        if cursor:
            created_at, last_id = decode_cursor(cursor)
            clauses.append("(created_at < :c_created OR (created_at = :c_created AND id < :c_id))")
            params["c_created"] = created_at
            params["c_id"] = last_id

        sql = "SELECT * FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, id DESC LIMIT :limit"
        async with self.engine.connect() as conn:
            rows = (await conn.exec_driver_sql(sql, params)).mappings().all()

        page = rows[:limit_i]
        next_cursor = None
        if len(rows) > limit_i and page:
            next_cursor = encode_cursor(str(page[-1]["created_at"]), str(page[-1]["id"]))
        return [serialize_job(r) for r in page], next_cursor

    async def list_executions(self, *, job_id: str) -> list[dict[str, Any]]:
        await self._get_row(job_id)
        async with self.engine.connect() as conn:
            result = await conn.exec_driver_sql(
                "SELECT * FROM job_executions WHERE job_id=:id ORDER BY execution_number ASC", {"id": job_id}
            )
            return [dict(r) for r in result.mappings().all()]

    async def list_dependencies(self, *, job_id: str) -> list[dict[str, Any]]:
        return await dependency_ops.list_dependencies(self.engine, job_id=job_id)

