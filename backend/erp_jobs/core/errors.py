from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INVALID_EXPRESSION = "INVALID_EXPRESSION"
    INVALID_STATE = "INVALID_STATE"
    DEPENDENCY_CYCLE = "DEPENDENCY_CYCLE"
    QUEUE_STOPPED = "QUEUE_STOPPED"


_DEFAULT_MESSAGE_BY_CODE: dict[ErrorCode, str] = {
    ErrorCode.BAD_REQUEST: "Bad request",
    ErrorCode.NOT_FOUND: "Not found",
    ErrorCode.CONFLICT: "Conflict",
    ErrorCode.INTERNAL_ERROR: "Internal server error",
    ErrorCode.STORE_UNAVAILABLE: "Store unavailable",
    ErrorCode.INVALID_EXPRESSION: "Invalid schedule expression",
    ErrorCode.INVALID_STATE: "Operation not allowed in the current state",
    ErrorCode.DEPENDENCY_CYCLE: "Dependency would create a cycle",
    ErrorCode.QUEUE_STOPPED: "Queue is stopped",
}


def normalize_error_message(*, code: ErrorCode, message: str) -> str:
    msg = str(message or "").strip()
    return msg or _DEFAULT_MESSAGE_BY_CODE.get(code, "Request failed")


@dataclass(frozen=True, slots=True)
class ApiError(Exception):
    code: ErrorCode
    message: str
    status_code: int = 400
    details: dict[str, Any] | None = None


UNKNOWN_REQUEST_ID = "req_unknown"


def _request_id_from_request(request: Any | None) -> str | None:
    if request is None:
        return None
    request_id = getattr(getattr(request, "state", None), "request_id", None)
    if request_id:
        return str(request_id)
    header = request.headers.get("X-Request-Id")
    return header.strip() if header else None


def error_body(
    *,
    code: ErrorCode,
    message: str,
    request_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "ok": False,
        "code": code.value,
        "message": normalize_error_message(code=code, message=message),
        "request_id": (request_id or "").strip() or UNKNOWN_REQUEST_ID,
        "details": details or {},
    }


def json_error_response(
    *,
    code: ErrorCode,
    message: str,
    status_code: int,
    request: Any | None = None,
    details: dict[str, Any] | None = None,
) -> Any:
    from fastapi.responses import JSONResponse

    return JSONResponse(
        status_code=status_code,
        content=error_body(
            code=code, message=message, request_id=_request_id_from_request(request), details=details
        ),
    )
