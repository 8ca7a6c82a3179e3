from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from erp_jobs.api.deps import get_admin, ok, parse_optional_datetime, read_body
from erp_jobs.core.errors import ApiError, ErrorCode
from erp_jobs.jobs.calendar import ScheduleKind

router = APIRouter(prefix="/jobs/schedules")


class ScheduleCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    schedule_kind: ScheduleKind
    handler: str | None = None
    job_name: str | None = None
    payload: Any = None
    cron_expression: str | None = None
    interval_minutes: int | None = Field(default=None, gt=0)
    specific_times: list[str] | None = None
    run_on_days: int | None = None
    timezone: str = "UTC"
    start_date: str | None = None
    end_date: str | None = None
    queue: str | None = None
    priority: int | str | None = None
    max_retries: int | None = Field(default=None, ge=0)
    retry_delay_seconds: int | None = Field(default=None, ge=0)
    timeout_seconds: int | None = Field(default=None, gt=0)
    template_id: str | None = None
    enabled: bool = True


def _enabled_param(enabled: str | None) -> bool | None:
    raw = (enabled or "").strip().lower()
    if not raw:
        return None
    if raw in {"1", "true", "yes"}:
        return True
    if raw in {"0", "false", "no"}:
        return False
    raise ApiError(code=ErrorCode.BAD_REQUEST, message="Unsupported enabled filter", status_code=400)


@router.post("")
async def create_schedule(request: Request) -> dict[str, Any]:
    body = await read_body(request, ScheduleCreateRequest)
    item = await get_admin(request).create_schedule(
        name=body.name,
        schedule_kind=body.schedule_kind,
        handler=body.handler,
        job_name=body.job_name,
        payload=body.payload,
        cron_expression=body.cron_expression,
        interval_minutes=body.interval_minutes,
        specific_times=body.specific_times,
        run_on_days=body.run_on_days,
        timezone_name=body.timezone,
        start_date=parse_optional_datetime(body.start_date, field="start_date"),
        end_date=parse_optional_datetime(body.end_date, field="end_date"),
        queue=body.queue,
        priority=body.priority,
        max_retries=body.max_retries,
        retry_delay_seconds=body.retry_delay_seconds,
        timeout_seconds=body.timeout_seconds,
        template_id=body.template_id,
        enabled=body.enabled,
    )
    return ok(request, item=item)


@router.get("")
async def list_schedules(request: Request, enabled: str | None = None) -> dict[str, Any]:
    items = await get_admin(request).list_schedules(enabled=_enabled_param(enabled))
    return ok(request, items=items)


@router.get("/{schedule_id}")
async def get_schedule(schedule_id: str, request: Request) -> dict[str, Any]:
    item = await get_admin(request).get_schedule(schedule_id=schedule_id)
    if item is None:
        raise ApiError(code=ErrorCode.NOT_FOUND, message="Schedule not found", status_code=404)
    return ok(request, item=item)


@router.post("/{schedule_id}/enable")
async def enable_schedule(schedule_id: str, request: Request) -> dict[str, Any]:
    item = await get_admin(request).set_schedule_enabled(schedule_id=schedule_id, enabled=True)
    return ok(request, item=item)


@router.post("/{schedule_id}/disable")
async def disable_schedule(schedule_id: str, request: Request) -> dict[str, Any]:
    item = await get_admin(request).set_schedule_enabled(schedule_id=schedule_id, enabled=False)
    return ok(request, item=item)


@router.delete("/{schedule_id}")
async def delete_schedule(schedule_id: str, request: Request) -> dict[str, Any]:
    await get_admin(request).delete_schedule(schedule_id=schedule_id)
    return ok(request, schedule_id=schedule_id, deleted=True)
