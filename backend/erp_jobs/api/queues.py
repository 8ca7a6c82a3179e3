from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from erp_jobs.api.deps import get_admin, ok, read_body
from erp_jobs.core.errors import ApiError, ErrorCode
from erp_jobs.jobs.model import QueueStatus

router = APIRouter(prefix="/jobs")


class QueueUpsertRequest(BaseModel):
    max_concurrent_jobs: int = Field(ge=0)
    description: str | None = None


@router.get("/queues")
async def list_queues(request: Request) -> dict[str, Any]:
    return ok(request, items=await get_admin(request).list_queues())


@router.get("/queues/{name}")
async def get_queue(name: str, request: Request) -> dict[str, Any]:
    item = await get_admin(request).get_queue(name=name)
    if item is None:
        raise ApiError(code=ErrorCode.NOT_FOUND, message="Queue not found", status_code=404)
    return ok(request, item=item)


@router.put("/queues/{name}")
async def upsert_queue(name: str, request: Request) -> dict[str, Any]:
    body = await read_body(request, QueueUpsertRequest)
    item = await get_admin(request).upsert_queue(
        name=name, max_concurrent_jobs=body.max_concurrent_jobs, description=body.description
    )
    return ok(request, item=item)


@router.post("/queues/{name}/pause")
async def pause_queue(name: str, request: Request) -> dict[str, Any]:
    return ok(request, item=await get_admin(request).pause_queue(name=name))


@router.post("/queues/{name}/resume")
async def resume_queue(name: str, request: Request) -> dict[str, Any]:
    return ok(request, item=await get_admin(request).resume_queue(name=name))


@router.post("/queues/{name}/stop")
async def stop_queue(name: str, request: Request) -> dict[str, Any]:
    return ok(request, item=await get_admin(request).set_queue_status(name=name, status=QueueStatus.STOPPED))


@router.get("/workers")
async def list_workers(request: Request) -> dict[str, Any]:
    return ok(request, items=await get_admin(request).list_workers())
