from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from erp_jobs.api.deps import get_admin, ok, read_body
from erp_jobs.core.errors import ApiError, ErrorCode

router = APIRouter(prefix="/jobs/bulk")


class BulkSubmitRequest(BaseModel):
    handler: str = Field(min_length=1)
    payloads: list[Any] = Field(min_length=1)
    name: str | None = None
    queue: str | None = None
    priority: int | str | None = None
    max_retries: int | None = Field(default=None, ge=0)
    timeout_seconds: int | None = Field(default=None, gt=0)
    created_by: str | None = None
    bulk_id: str | None = None


@router.post("")
async def submit_bulk(request: Request) -> dict[str, Any]:
    body = await read_body(request, BulkSubmitRequest)
    optional = {
        k: v
        for k, v in {"max_retries": body.max_retries, "timeout_seconds": body.timeout_seconds}.items()
        if v is not None
    }
    bulk_id = await get_admin(request).submit_bulk(
        handler=body.handler,
        payloads=body.payloads,
        name=body.name,
        queue=body.queue,
        priority=body.priority,
        created_by=body.created_by,
        bulk_id=body.bulk_id,
        **optional,
    )
    return ok(request, bulk_id=bulk_id, total=len(body.payloads))


@router.get("/{bulk_id}")
async def get_bulk(bulk_id: str, request: Request) -> dict[str, Any]:
    item = await get_admin(request).get_bulk(bulk_id=bulk_id)
    if item is None:
        raise ApiError(code=ErrorCode.NOT_FOUND, message="Bulk request not found", status_code=404)
    return ok(request, item=item)


@router.post("/{bulk_id}/cancel")
async def cancel_bulk(bulk_id: str, request: Request) -> dict[str, Any]:
    cancelled = await get_admin(request).cancel_bulk(bulk_id=bulk_id)
    return ok(request, bulk_id=bulk_id, cancelled=len(cancelled))
