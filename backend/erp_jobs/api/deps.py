from __future__ import annotations

from datetime import datetime
from typing import Any, TypeVar

from fastapi import Request
from pydantic import BaseModel, ValidationError

from erp_jobs.core.errors import ApiError, ErrorCode
from erp_jobs.core.request_id import get_or_create_request_id
from erp_jobs.core.time import parse_iso_utc
from erp_jobs.jobs.admin import AdminService

M = TypeVar("M", bound=BaseModel)


def get_admin(request: Request) -> AdminService:
    return request.app.state.admin


async def read_body(request: Request, model: type[M]) -> M:
    try:
        data = await request.json()
    except ValueError as exc:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Invalid JSON body", status_code=400) from exc
    if not isinstance(data, dict):
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Invalid JSON body", status_code=400)
    try:
        return model(**data)
    except ValidationError as exc:
        raise ApiError(
            code=ErrorCode.BAD_REQUEST,
            message="Invalid request body",
            status_code=400,
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def parse_optional_datetime(value: str | None, *, field: str) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return parse_iso_utc(raw)
    except ValueError as exc:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message=f"Invalid {field}", status_code=400) from exc


def ok(request: Request, **fields: Any) -> dict[str, Any]:
    return {"ok": True, **fields, "request_id": get_or_create_request_id(request)}
