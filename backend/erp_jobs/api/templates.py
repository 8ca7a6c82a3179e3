from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from erp_jobs.api.deps import get_admin, ok, read_body
from erp_jobs.core.errors import ApiError, ErrorCode

router = APIRouter(prefix="/jobs/templates")


class TemplateCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    code: str = Field(min_length=1)
    handler: str = Field(min_length=1)
    description: str | None = None
    default_payload: Any = None
    default_priority: int | str | None = None
    default_timeout_seconds: int = Field(default=300, gt=0)
    default_max_retries: int = Field(default=3, ge=0)
    default_retry_delay_seconds: int = Field(default=60, ge=0)
    queue: str | None = None
    tags: list[str] | None = None


@router.post("")
async def create_template(request: Request) -> dict[str, Any]:
    body = await read_body(request, TemplateCreateRequest)
    item = await get_admin(request).create_template(**body.model_dump())
    return ok(request, item=item)


@router.get("")
async def list_templates(request: Request) -> dict[str, Any]:
    return ok(request, items=await get_admin(request).list_templates())


@router.get("/{template_id}")
async def get_template(template_id: str, request: Request) -> dict[str, Any]:
    item = await get_admin(request).get_template(template_id=template_id)
    if item is None:
        raise ApiError(code=ErrorCode.NOT_FOUND, message="Template not found", status_code=404)
    return ok(request, item=item)
