from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from erp_jobs.core.ids import new_id
from erp_jobs.core.logging import get_logger
from erp_jobs.core.time import as_utc, iso_utc_ms
from erp_jobs.db.models.jobs import JobRow
from erp_jobs.db.session import with_sqlite_busy_retry
from erp_jobs.jobs.calendar import ScheduleKind, ScheduleSpec, load_zone, next_fire
from erp_jobs.jobs.cron import CronExpression
from erp_jobs.jobs.dependencies import insert_dependencies
from erp_jobs.jobs.errors import InvalidExpression, InvalidJobStateError, JobNotFoundError
from erp_jobs.jobs.model import CLAIMABLE_STATUSES, DependencyType, JobKind, JobStatus, format_tags, parse_priority
from erp_jobs.jobs.queues import DEFAULT_MAX_CONCURRENT_JOBS, normalize_queue_name, require_accepting_queue

log = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_S = 60


def dump_payload(payload: Any) -> str:
    if isinstance(payload, (bytes, bytearray)):
        payload = bytes(payload).decode("utf-8")
    if isinstance(payload, str):
        # Already-encoded JSON is stored as is; anything else must be valid JSON text.
        json.loads(payload)
        return payload
    return json.dumps({} if payload is None else payload, ensure_ascii=False, separators=(",", ":"))


def recurrence_spec(
    *,
    kind: JobKind,
    cron_expression: str | None,
    interval_seconds: int | None,
    timezone_name: str,
    origin: datetime | None,
) -> ScheduleSpec | None:
    if kind is JobKind.CRON:
        return ScheduleSpec(kind=ScheduleKind.CRON, timezone=timezone_name, cron_expression=cron_expression)
    if kind is JobKind.RECURRING:
        return ScheduleSpec(
            kind=ScheduleKind.INTERVAL,
            timezone=timezone_name,
            interval_seconds=interval_seconds,
            start=origin,
        )
    return None


def insert_jobs_stmt(rows: Sequence[Mapping[str, Any]], *, ignore_conflicts: bool = False):
    stmt = sqlite_insert(JobRow.__table__).values(list(rows))
    if ignore_conflicts:
        stmt = stmt.on_conflict_do_nothing()
    return stmt


async def _load_template(conn: AsyncConnection, template_id: str) -> dict[str, Any]:
    result = await conn.exec_driver_sql("SELECT * FROM job_templates WHERE id=:id", {"id": template_id})
    row = result.mappings().first()
    if row is None:
        raise JobNotFoundError(f"template not found: {template_id}")
    return dict(row)


async def submit_job(
    engine: AsyncEngine,
    *,
    handler: str | None = None,
    name: str | None = None,
    payload: Any = None,
    queue: str | None = None,
    priority: Any = None,
    kind: JobKind | str = JobKind.ONE_TIME,
    cron_expression: str | None = None,
    interval_seconds: int | None = None,
    timezone_name: str = "UTC",
    scheduled_at: datetime | None = None,
    max_retries: int | None = None,
    retry_delay_seconds: int | None = None,
    timeout_seconds: int | None = None,
    tags: Iterable[str] | None = None,
    created_by: str | None = None,
    resource_key: str | None = None,
    depends_on: Iterable[tuple[str, DependencyType | str]] | None = None,
    template_id: str | None = None,
    rerun_of: str | None = None,
    job_id: str | None = None,
    default_queue_concurrency: int = DEFAULT_MAX_CONCURRENT_JOBS,
    now: datetime | None = None,
) -> str:
    """Insert one job and its dependency edges in a single transaction; returns the job id."""
    now_dt = now or datetime.now(timezone.utc)
    now_s = iso_utc_ms(now_dt)
    kind = JobKind(kind)
    edges = [(str(dep_id), DependencyType(dep_type)) for dep_id, dep_type in (depends_on or [])]
    scheduled_dt = as_utc(scheduled_at) if scheduled_at is not None else None
    new_job_id = job_id or new_id()

    async def _op() -> str:
        async with engine.begin() as conn:
            template = await _load_template(conn, template_id) if template_id else {}

            handler_v = (handler or template.get("handler") or "").strip()
            if not handler_v:
                raise ValueError("handler is required")
            name_v = (name or template.get("name") or handler_v).strip()
            queue_v = normalize_queue_name(queue or template.get("queue"))
            priority_v = parse_priority(priority if priority is not None else template.get("default_priority"))
            payload_json = dump_payload(payload) if payload is not None else str(
                template.get("default_payload_json") or "{}"
            )
            max_retries_v = int(
                max_retries if max_retries is not None else template.get("default_max_retries", DEFAULT_MAX_RETRIES)
            )
            retry_delay_v = int(
                retry_delay_seconds
                if retry_delay_seconds is not None
                else template.get("default_retry_delay_seconds", DEFAULT_RETRY_DELAY_S)
            )
            timeout_v = timeout_seconds if timeout_seconds is not None else template.get("default_timeout_seconds")
            if max_retries_v < 0 or retry_delay_v < 0:
                raise ValueError("retry settings must be >= 0")
            if timeout_v is not None and int(timeout_v) <= 0:
                raise ValueError("timeout_seconds must be > 0")
            tags_v = format_tags(tags) if tags is not None else str(template.get("tags") or "")

            load_zone(timezone_name)
            if kind is JobKind.CRON:
                CronExpression.parse(cron_expression or "")
            if kind is JobKind.RECURRING and (not interval_seconds or int(interval_seconds) <= 0):
                raise InvalidExpression("recurring jobs need a positive interval_seconds")

            if kind is JobKind.EVENT_TRIGGERED:
                next_run_dt = None
            elif kind is JobKind.CRON:
                spec = recurrence_spec(
                    kind=kind,
                    cron_expression=cron_expression,
                    interval_seconds=None,
                    timezone_name=timezone_name,
                    origin=None,
                )
                anchor = scheduled_dt - timedelta(milliseconds=1) if scheduled_dt is not None else now_dt
                next_run_dt = next_fire(spec, max(anchor, now_dt - timedelta(milliseconds=1)))  # type: ignore[arg-type]
                if next_run_dt is None:
                    raise InvalidExpression(f"cron expression never fires: {cron_expression!r}")
            elif kind is JobKind.RECURRING:
                next_run_dt = scheduled_dt or (now_dt + timedelta(seconds=int(interval_seconds or 0)))
            else:
                next_run_dt = scheduled_dt or now_dt

            await require_accepting_queue(
                conn, name=queue_v, now_s=now_s, max_concurrent_jobs=int(default_queue_concurrency)
            )

            next_run_s = iso_utc_ms(next_run_dt) if next_run_dt is not None else None
            status = JobStatus.SCHEDULED if next_run_s is not None and next_run_s > now_s else JobStatus.PENDING
            await conn.execute(
                insert_jobs_stmt(
                    [
                        {
                            "id": new_job_id,
                            "name": name_v,
                            "handler": handler_v,
                            "payload_json": payload_json,
                            "queue": queue_v,
                            "priority": int(priority_v),
                            "kind": kind.value,
                            "cron_expression": cron_expression if kind is JobKind.CRON else None,
                            "interval_seconds": int(interval_seconds) if kind is JobKind.RECURRING else None,
                            "timezone": (timezone_name or "UTC").strip() or "UTC",
                            "scheduled_at": iso_utc_ms(scheduled_dt) if scheduled_dt is not None else None,
                            "next_run_at": next_run_s,
                            "status": status.value,
                            "max_retries": max_retries_v,
                            "retry_delay_seconds": retry_delay_v,
                            "timeout_seconds": int(timeout_v) if timeout_v is not None else None,
                            "tags": tags_v,
                            "created_by": created_by,
                            "resource_key": (resource_key or "").strip() or None,
                            "template_id": template_id,
                            "rerun_of": rerun_of,
                            "created_at": now_s,
                            "updated_at": now_s,
                        }
                    ]
                )
            )

            if edges:
                ready = await insert_dependencies(conn, job_id=new_job_id, edges=edges, now=now_dt)
                if not ready:
                    await conn.exec_driver_sql(
                        "UPDATE jobs SET next_run_at=NULL WHERE id=:id AND status IN ('pending','scheduled')",
                        {"id": new_job_id},
                    )
            return new_job_id

    job_id_out = await with_sqlite_busy_retry(_op)
    log.info("job_submitted id=%s handler=%s queue=%s kind=%s", job_id_out, handler or template_id, queue, kind.value)
    return job_id_out


async def schedule_cron(
    engine: AsyncEngine,
    *,
    name: str,
    handler: str,
    cron_expression: str,
    timezone_name: str = "UTC",
    payload: Any = None,
    **kwargs: Any,
) -> str:
    return await submit_job(
        engine,
        name=name,
        handler=handler,
        payload=payload,
        kind=JobKind.CRON,
        cron_expression=cron_expression,
        timezone_name=timezone_name,
        **kwargs,
    )


async def schedule_interval(
    engine: AsyncEngine,
    *,
    name: str,
    handler: str,
    interval_seconds: int,
    payload: Any = None,
    **kwargs: Any,
) -> str:
    return await submit_job(
        engine,
        name=name,
        handler=handler,
        payload=payload,
        kind=JobKind.RECURRING,
        interval_seconds=interval_seconds,
        **kwargs,
    )


async def trigger_job(
    engine: AsyncEngine,
    *,
    job_id: str,
    payload: Any = None,
    now: datetime | None = None,
) -> None:
    """Make an event-triggered job due now, optionally replacing its payload."""
    now_s = iso_utc_ms(now or datetime.now(timezone.utc))
    payload_json = dump_payload(payload) if payload is not None else None

    async def _op() -> None:
        async with engine.begin() as conn:
            row = (
                await conn.exec_driver_sql("SELECT kind, status FROM jobs WHERE id=:id", {"id": job_id})
            ).first()
            if row is None:
                raise JobNotFoundError(f"job not found: {job_id}")
            if str(row[0]) != JobKind.EVENT_TRIGGERED.value:
                raise InvalidJobStateError(f"job {job_id} is not event triggered")
            if JobStatus(str(row[1])) not in CLAIMABLE_STATUSES:
                raise InvalidJobStateError(f"job {job_id} is {row[1]} and cannot be triggered")
            waiting = (
                await conn.exec_driver_sql(
                    "SELECT COUNT(*) FROM job_dependencies WHERE job_id=:id AND satisfied=0", {"id": job_id}
                )
            ).scalar_one()
            if int(waiting or 0) > 0:
                raise InvalidJobStateError(f"job {job_id} is still waiting on prerequisites")
            await conn.exec_driver_sql(
                """
UPDATE jobs
SET status='pending', next_run_at=:now, payload_json=COALESCE(:payload_json, payload_json), updated_at=:now
WHERE id=:id;
""".strip(),
                {"now": now_s, "payload_json": payload_json, "id": job_id},
            )

    await with_sqlite_busy_retry(_op)
    log.info("job_triggered id=%s", job_id)
