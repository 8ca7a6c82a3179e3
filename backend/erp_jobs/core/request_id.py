from __future__ import annotations

import secrets
from collections.abc import Mapping
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_ID_HEADER = "X-Request-Id"


def new_request_id() -> str:
    return "req_" + secrets.token_hex(8)


def get_request_id_from_headers(headers: Mapping[str, str] | None) -> str | None:
    if not headers:
        return None
    value = headers.get(REQUEST_ID_HEADER) or headers.get(REQUEST_ID_HEADER.lower())
    if not value:
        return None
    value = value.strip()
    return value if value else None


def get_or_create_request_id(request: Any) -> str:
    state = getattr(request, "state", None)
    if state is not None:
        rid = getattr(state, "request_id", None)
        if rid:
            return str(rid)
    return get_request_id_from_headers(getattr(request, "headers", None)) or new_request_id()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Stamps every request with an id (echoed in ``X-Request-Id`` and in JSON bodies)."""

    async def dispatch(self, request, call_next):  # type: ignore[no-untyped-def]
        rid = get_or_create_request_id(request)
        request.state.request_id = rid
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
