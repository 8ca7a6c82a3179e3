from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from erp_jobs.core.ids import new_id
from erp_jobs.core.logging import get_logger
from erp_jobs.core.time import as_utc, iso_utc_ms, parse_iso_utc
from erp_jobs.db.session import with_sqlite_busy_retry
from erp_jobs.jobs.calendar import ScheduleKind, ScheduleSpec, next_fire, validate_spec
from erp_jobs.jobs.enqueue import dump_payload, insert_jobs_stmt
from erp_jobs.jobs.errors import InvalidExpression, JobNotFoundError, Unbounded
from erp_jobs.jobs.model import JobKind, JobStatus, QueueStatus, parse_priority
from erp_jobs.jobs.queues import DEFAULT_MAX_CONCURRENT_JOBS, ensure_queue, normalize_queue_name

log = get_logger(__name__)

MAX_FIRES_PER_PASS = 100


def spec_from_row(row: Mapping[str, Any]) -> ScheduleSpec:
    interval_minutes = row.get("interval_minutes")
    times_raw = row.get("specific_times_json")
    return ScheduleSpec(
        kind=ScheduleKind(str(row["schedule_kind"])),
        timezone=str(row.get("timezone") or "UTC"),
        cron_expression=row.get("cron_expression"),
        interval_seconds=int(interval_minutes) * 60 if interval_minutes is not None else None,
        times=tuple(str(t) for t in json.loads(times_raw)) if times_raw else (),
        run_on_days=int(row["run_on_days"]) if row.get("run_on_days") is not None else None,
        start=parse_iso_utc(str(row["start_date"])) if row.get("start_date") else None,
        end=parse_iso_utc(str(row["end_date"])) if row.get("end_date") else None,
    )


def serialize_schedule(row: Mapping[str, Any]) -> dict[str, Any]:
    out = dict(row)
    out["enabled"] = bool(out.get("enabled"))
    out["default_payload"] = json.loads(out.pop("default_payload_json", None) or "{}")
    times_raw = out.pop("specific_times_json", None)
    out["specific_times"] = json.loads(times_raw) if times_raw else []
    return out


def _first_fire(spec: ScheduleSpec, now: datetime) -> str | None:
    try:
        fire = next_fire(spec, now)
    except Unbounded:
        return None
    return iso_utc_ms(fire) if fire is not None else None


async def create_schedule(
    engine: AsyncEngine,
    *,
    name: str,
    schedule_kind: ScheduleKind | str,
    handler: str | None = None,
    job_name: str | None = None,
    payload: Any = None,
    cron_expression: str | None = None,
    interval_minutes: int | None = None,
    specific_times: Iterable[str] | None = None,
    run_on_days: int | None = None,
    timezone_name: str = "UTC",
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    queue: str | None = None,
    priority: Any = None,
    max_retries: int | None = None,
    retry_delay_seconds: int | None = None,
    timeout_seconds: int | None = None,
    template_id: str | None = None,
    enabled: bool = True,
    now: datetime | None = None,
) -> dict[str, Any]:
    now_dt = now or datetime.now(timezone.utc)
    now_s = iso_utc_ms(now_dt)
    kind = ScheduleKind(schedule_kind)
    name = (name or "").strip()
    if not name:
        raise ValueError("name is required")

    times = tuple(str(t).strip() for t in (specific_times or []) if str(t).strip())
    if kind is ScheduleKind.CRON and (interval_minutes is not None or times):
        raise ValueError("cron schedules take only cron_expression")
    if kind is ScheduleKind.INTERVAL and (cron_expression or times):
        raise ValueError("interval schedules take only interval_minutes")
    if kind not in {ScheduleKind.CRON, ScheduleKind.INTERVAL} and (cron_expression or interval_minutes is not None):
        raise ValueError(f"{kind.value} schedules take specific_times, not cron/interval fields")
    if kind is ScheduleKind.INTERVAL and (interval_minutes is None or int(interval_minutes) <= 0):
        raise InvalidExpression("interval_minutes must be > 0")
    if timeout_seconds is not None and int(timeout_seconds) <= 0:
        raise ValueError("timeout_seconds must be > 0")

    spec = ScheduleSpec(
        kind=kind,
        timezone=(timezone_name or "UTC").strip() or "UTC",
        cron_expression=cron_expression,
        interval_seconds=int(interval_minutes) * 60 if interval_minutes is not None else None,
        times=times,
        run_on_days=run_on_days,
        start=as_utc(start_date) if start_date is not None else None,
        end=as_utc(end_date) if end_date is not None else None,
    )
    validate_spec(spec)
    next_run_s = _first_fire(spec, now_dt)
    if next_run_s is None:
        raise InvalidExpression("schedule never fires")

    async def _op() -> dict[str, Any]:
        async with engine.begin() as conn:
            template: dict[str, Any] = {}
            if template_id:
                row = (
                    await conn.exec_driver_sql("SELECT * FROM job_templates WHERE id=:id", {"id": template_id})
                ).mappings().first()
                if row is None:
                    raise JobNotFoundError(f"template not found: {template_id}")
                template = dict(row)

            handler_v = (handler or template.get("handler") or "").strip()
            if not handler_v:
                raise ValueError("handler is required")
            values = {
                "id": new_id(),
                "name": name,
                "template_id": template_id,
                "job_name": (job_name or template.get("name") or name).strip(),
                "handler": handler_v,
                "default_payload_json": dump_payload(payload)
                if payload is not None
                else str(template.get("default_payload_json") or "{}"),
                "queue": normalize_queue_name(queue or template.get("queue")),
                "priority": int(parse_priority(priority if priority is not None else template.get("default_priority"))),
                "max_retries": int(max_retries if max_retries is not None else template.get("default_max_retries", 3)),
                "retry_delay_seconds": int(
                    retry_delay_seconds
                    if retry_delay_seconds is not None
                    else template.get("default_retry_delay_seconds", 60)
                ),
                "timeout_seconds": timeout_seconds if timeout_seconds is not None else template.get("default_timeout_seconds"),
                "schedule_kind": kind.value,
                "cron_expression": cron_expression if kind is ScheduleKind.CRON else None,
                "interval_minutes": int(interval_minutes) if kind is ScheduleKind.INTERVAL else None,
                "specific_times_json": json.dumps(list(times)) if times else None,
                "run_on_days": int(run_on_days) if run_on_days is not None else None,
                "timezone": spec.timezone,
                "start_date": iso_utc_ms(spec.start) if spec.start is not None else None,
                "end_date": iso_utc_ms(spec.end) if spec.end is not None else None,
                "next_scheduled_run": next_run_s,
                "enabled": 1 if enabled else 0,
                "now": now_s,
            }
            result = await conn.exec_driver_sql(
                """
INSERT INTO job_schedules (
  id, name, template_id, job_name, handler, default_payload_json, queue, priority, max_retries,
  retry_delay_seconds, timeout_seconds, schedule_kind, cron_expression, interval_minutes,
  specific_times_json, run_on_days, timezone, start_date, end_date, next_scheduled_run, enabled,
  created_at, updated_at
) VALUES (
  :id, :name, :template_id, :job_name, :handler, :default_payload_json, :queue, :priority, :max_retries,
  :retry_delay_seconds, :timeout_seconds, :schedule_kind, :cron_expression, :interval_minutes,
  :specific_times_json, :run_on_days, :timezone, :start_date, :end_date, :next_scheduled_run, :enabled,
  :now, :now
)
RETURNING *;
""".strip(),
                values,
            )
            return serialize_schedule(result.mappings().one())

    schedule = await with_sqlite_busy_retry(_op)
    log.info(
        "schedule_created id=%s kind=%s next=%s", schedule["id"], kind.value, schedule["next_scheduled_run"]
    )
    return schedule


async def get_schedule(engine: AsyncEngine, *, schedule_id: str) -> dict[str, Any] | None:
    async with engine.connect() as conn:
        row = (
            await conn.exec_driver_sql("SELECT * FROM job_schedules WHERE id=:id", {"id": schedule_id})
        ).mappings().first()
        return serialize_schedule(row) if row is not None else None


async def list_schedules(engine: AsyncEngine, *, enabled: bool | None = None) -> list[dict[str, Any]]:
    sql = "SELECT * FROM job_schedules"
    params: dict[str, Any] = {}
    if enabled is not None:
        sql += " WHERE enabled=:enabled"
        params["enabled"] = 1 if enabled else 0
    sql += " ORDER BY name ASC, id ASC"
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql(sql, params)
        return [serialize_schedule(r) for r in result.mappings().all()]


async def set_schedule_enabled(
    engine: AsyncEngine,
    *,
    schedule_id: str,
    enabled: bool,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Enable or disable a schedule. Re-enabling restarts from now; fires missed while disabled are skipped."""
    now_dt = now or datetime.now(timezone.utc)
    now_s = iso_utc_ms(now_dt)

    async def _op() -> dict[str, Any]:
        async with engine.begin() as conn:
            row = (
                await conn.exec_driver_sql("SELECT * FROM job_schedules WHERE id=:id", {"id": schedule_id})
            ).mappings().first()
            if row is None:
                raise JobNotFoundError(f"schedule not found: {schedule_id}")
            next_run_s = row["next_scheduled_run"]
            if enabled:
                next_run_s = _first_fire(spec_from_row(row), now_dt)
                if next_run_s is None:
                    raise InvalidExpression("schedule has no future fire time")
            result = await conn.exec_driver_sql(
                """
UPDATE job_schedules SET enabled=:enabled, next_scheduled_run=:next, updated_at=:now
WHERE id=:id
RETURNING *;
""".strip(),
                {"enabled": 1 if enabled else 0, "next": next_run_s, "now": now_s, "id": schedule_id},
            )
            return serialize_schedule(result.mappings().one())

    schedule = await with_sqlite_busy_retry(_op)
    log.info("schedule_%s id=%s", "enabled" if enabled else "disabled", schedule_id)
    return schedule


async def delete_schedule(engine: AsyncEngine, *, schedule_id: str) -> None:
    async def _op() -> None:
        async with engine.begin() as conn:
            result = await conn.exec_driver_sql("DELETE FROM job_schedules WHERE id=:id", {"id": schedule_id})
            if (result.rowcount or 0) == 0:
                raise JobNotFoundError(f"schedule not found: {schedule_id}")

    await with_sqlite_busy_retry(_op)
    log.info("schedule_deleted id=%s", schedule_id)


async def _materialize_one(
    conn: AsyncConnection,
    *,
    schedule_id: str,
    now: datetime,
    horizon_end_s: str,
    default_queue_concurrency: int,
) -> list[tuple[str, str]]:
    row = (
        await conn.exec_driver_sql("SELECT * FROM job_schedules WHERE id=:id AND enabled=1", {"id": schedule_id})
    ).mappings().first()
    if row is None:
        return []
    now_s = iso_utc_ms(now)
    spec = spec_from_row(row)

    if spec.end is not None and now > spec.end:
        await conn.exec_driver_sql(
            "UPDATE job_schedules SET enabled=0, next_scheduled_run=NULL, updated_at=:now WHERE id=:id",
            {"now": now_s, "id": schedule_id},
        )
        log.info("schedule_expired id=%s", schedule_id)
        return []

    queue = str(row["queue"])
    queue_status = await ensure_queue(
        conn, name=queue, now_s=now_s, max_concurrent_jobs=int(default_queue_concurrency)
    )

    emitted: list[tuple[str, str]] = []
    fire_s: str | None = row["next_scheduled_run"]
    fires = 0
    while fire_s is not None and fire_s <= horizon_end_s and fires < MAX_FIRES_PER_PASS:
        if queue_status is QueueStatus.STOPPED:
            log.warning("schedule_fire_skipped id=%s fire_at=%s reason=queue_stopped", schedule_id, fire_s)
        else:
            job_id = new_id()
            result = await conn.execute(
                insert_jobs_stmt(
                    [
                        {
                            "id": job_id,
                            "name": row["job_name"],
                            "handler": row["handler"],
                            "payload_json": row["default_payload_json"],
                            "queue": queue,
                            "priority": int(row["priority"]),
                            "kind": JobKind.ONE_TIME.value,
                            "timezone": spec.timezone,
                            "scheduled_at": fire_s,
                            "next_run_at": fire_s,
                            "status": (JobStatus.SCHEDULED if fire_s > now_s else JobStatus.PENDING).value,
                            "max_retries": int(row["max_retries"]),
                            "retry_delay_seconds": int(row["retry_delay_seconds"]),
                            "timeout_seconds": row["timeout_seconds"],
                            "created_by": f"schedule:{schedule_id}",
                            "template_id": row["template_id"],
                            "schedule_id": schedule_id,
                            "schedule_fire_at": fire_s,
                            "created_at": now_s,
                            "updated_at": now_s,
                        }
                    ],
                    ignore_conflicts=True,
                )
            )
            if (result.rowcount or 0) > 0:
                emitted.append((job_id, queue))
        fires += 1
        try:
            nxt = next_fire(spec, parse_iso_utc(fire_s))
        except Unbounded:
            nxt = None
        fire_s = iso_utc_ms(nxt) if nxt is not None else None

    await conn.exec_driver_sql(
        """
UPDATE job_schedules
SET next_scheduled_run=:next, enabled=CASE WHEN :next IS NULL THEN 0 ELSE enabled END, updated_at=:now
WHERE id=:id;
""".strip(),
        {"next": fire_s, "now": now_s, "id": schedule_id},
    )
    if fire_s is None:
        log.info("schedule_exhausted id=%s", schedule_id)
    return emitted


async def materialize_due(
    engine: AsyncEngine,
    *,
    horizon_s: float,
    now: datetime | None = None,
    default_queue_concurrency: int = DEFAULT_MAX_CONCURRENT_JOBS,
) -> list[tuple[str, str]]:
    """Emit jobs for every enabled schedule due within ``now + horizon_s``.

    Returns ``(job_id, queue)`` pairs for newly inserted jobs. Each schedule is
    advanced in its own transaction; the ``(schedule_id, fire_at)`` key makes a
    repeated pass over the same fire a no-op.
    """
    now_dt = now or datetime.now(timezone.utc)
    horizon_end_s = iso_utc_ms(now_dt + timedelta(seconds=float(horizon_s)))

    async with engine.connect() as conn:
        due = (
            await conn.exec_driver_sql(
                """
SELECT id FROM job_schedules
WHERE enabled=1 AND (next_scheduled_run IS NULL OR next_scheduled_run <= :horizon_end OR end_date < :now)
ORDER BY next_scheduled_run ASC, id ASC;
""".strip(),
                {"horizon_end": horizon_end_s, "now": iso_utc_ms(now_dt)},
            )
        ).fetchall()

    emitted: list[tuple[str, str]] = []
    for (schedule_id,) in due:

        async def _op(sid: str = str(schedule_id)) -> list[tuple[str, str]]:
            async with engine.begin() as conn:
                return await _materialize_one(
                    conn,
                    schedule_id=sid,
                    now=now_dt,
                    horizon_end_s=horizon_end_s,
                    default_queue_concurrency=default_queue_concurrency,
                )

        emitted.extend(await with_sqlite_busy_retry(_op))

    if emitted:
        log.info("schedules_materialized jobs=%s", len(emitted))
    return emitted
