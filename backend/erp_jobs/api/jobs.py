from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from erp_jobs.api.deps import get_admin, ok, parse_optional_datetime, read_body
from erp_jobs.core.errors import ApiError, ErrorCode
from erp_jobs.jobs.model import DependencyType, JobKind, JobStatus

router = APIRouter(prefix="/jobs")


class DependencyIn(BaseModel):
    job_id: str = Field(min_length=1)
    type: DependencyType = DependencyType.ON_SUCCESS


class JobCreateRequest(BaseModel):
    handler: str | None = None
    name: str | None = None
    payload: Any = None
    queue: str | None = None
    priority: int | str | None = None
    kind: JobKind = JobKind.ONE_TIME
    cron_expression: str | None = None
    interval_seconds: int | None = Field(default=None, gt=0)
    timezone: str = "UTC"
    scheduled_at: str | None = None
    max_retries: int | None = Field(default=None, ge=0)
    retry_delay_seconds: int | None = Field(default=None, ge=0)
    timeout_seconds: int | None = Field(default=None, gt=0)
    tags: list[str] | None = None
    created_by: str | None = None
    resource_key: str | None = None
    depends_on: list[DependencyIn] = Field(default_factory=list)
    template_id: str | None = None


class TriggerRequest(BaseModel):
    payload: Any = None


class CancelRequest(BaseModel):
    reason: str | None = None


def _status_param(status: str | None) -> JobStatus | None:
    raw = (status or "").strip().lower()
    if not raw:
        return None
    try:
        return JobStatus(raw)
    except ValueError as exc:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Unsupported status", status_code=400) from exc


@router.post("")
async def submit_job(request: Request) -> dict[str, Any]:
    body = await read_body(request, JobCreateRequest)
    job_id = await get_admin(request).submit_job(
        handler=body.handler,
        name=body.name,
        payload=body.payload,
        queue=body.queue,
        priority=body.priority,
        kind=body.kind,
        cron_expression=body.cron_expression,
        interval_seconds=body.interval_seconds,
        timezone_name=body.timezone,
        scheduled_at=parse_optional_datetime(body.scheduled_at, field="scheduled_at"),
        max_retries=body.max_retries,
        retry_delay_seconds=body.retry_delay_seconds,
        timeout_seconds=body.timeout_seconds,
        tags=body.tags,
        created_by=body.created_by,
        resource_key=body.resource_key,
        depends_on=[(d.job_id, d.type) for d in body.depends_on],
        template_id=body.template_id,
    )
    return ok(request, job_id=job_id)


@router.get("")
async def list_jobs(
    request: Request,
    queue: str | None = None,
    status: str | None = None,
    tag: str | None = None,
    handler: str | None = None,
    limit: int = 50,
    cursor: str | None = None,
) -> dict[str, Any]:
    if limit < 1 or limit > 200:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Unsupported limit", status_code=400)
    try:
        items, next_cursor = await get_admin(request).list_jobs(
            queue=queue,
            status=_status_param(status),
            tag=tag,
            handler=handler,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message=str(exc), status_code=400) from exc
    return ok(request, items=items, next_cursor=next_cursor or "")


@router.get("/{job_id}")
async def get_job(job_id: str, request: Request) -> dict[str, Any]:
    return ok(request, item=await get_admin(request).get_job(job_id=job_id))


@router.get("/{job_id}/executions")
async def list_executions(job_id: str, request: Request) -> dict[str, Any]:
    return ok(request, items=await get_admin(request).list_executions(job_id=job_id))


@router.get("/{job_id}/dependencies")
async def list_dependencies(job_id: str, request: Request) -> dict[str, Any]:
    return ok(request, items=await get_admin(request).list_dependencies(job_id=job_id))


@router.post("/{job_id}/dependencies")
async def add_dependency(job_id: str, request: Request) -> dict[str, Any]:
    body = await read_body(request, DependencyIn)
    await get_admin(request).add_dependency(job_id=job_id, depends_on_job_id=body.job_id, dependency_type=body.type)
    return ok(request, job_id=job_id, depends_on=body.job_id, type=body.type.value)


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, request: Request) -> dict[str, Any]:
    reason = None
    if await request.body():
        reason = (await read_body(request, CancelRequest)).reason
    status = await get_admin(request).cancel_job(job_id=job_id, reason=reason)
    return ok(request, job_id=job_id, status=status, cancel_requested=status == JobStatus.RUNNING.value)


@router.post("/{job_id}/retry")
async def retry_job(job_id: str, request: Request) -> dict[str, Any]:
    await get_admin(request).retry_job(job_id=job_id)
    return ok(request, job_id=job_id, status=JobStatus.PENDING.value)


@router.post("/{job_id}/rerun")
async def rerun_job(job_id: str, request: Request) -> dict[str, Any]:
    new_id = await get_admin(request).rerun_job(job_id=job_id)
    return ok(request, job_id=new_id, rerun_of=job_id)


@router.post("/{job_id}/pause")
async def pause_job(job_id: str, request: Request) -> dict[str, Any]:
    await get_admin(request).pause_job(job_id=job_id)
    return ok(request, job_id=job_id, status=JobStatus.PAUSED.value)


@router.post("/{job_id}/resume")
async def resume_job(job_id: str, request: Request) -> dict[str, Any]:
    admin = get_admin(request)
    await admin.resume_job(job_id=job_id)
    item = await admin.get_job(job_id=job_id)
    return ok(request, job_id=job_id, status=item["status"])


@router.post("/{job_id}/trigger")
async def trigger_job(job_id: str, request: Request) -> dict[str, Any]:
    payload = None
    if await request.body():
        payload = (await read_body(request, TriggerRequest)).payload
    await get_admin(request).trigger_job(job_id=job_id, payload=payload)
    return ok(request, job_id=job_id, status=JobStatus.PENDING.value)


@router.delete("/{job_id}")
async def delete_job(job_id: str, request: Request) -> dict[str, Any]:
    await get_admin(request).delete_job(job_id=job_id)
    return ok(request, job_id=job_id, deleted=True)
