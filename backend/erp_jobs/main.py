from __future__ import annotations

import asyncio

from fastapi import FastAPI, Request

from erp_jobs.api.router import router as api_router
from erp_jobs.core.config import Settings, load_settings
from erp_jobs.core.errors import ApiError, ErrorCode, json_error_response
from erp_jobs.core.logging import configure_logging, get_logger
from erp_jobs.core.request_id import RequestIdMiddleware
from erp_jobs.db.engine import create_engine
from erp_jobs.jobs.admin import AdminService
from erp_jobs.jobs.errors import (
    DependencyCycleError,
    InvalidExpression,
    InvalidJobStateError,
    JobNotFoundError,
    QueueStoppedError,
    StoreUnavailableError,
)
from erp_jobs.jobs.registry import HandlerRegistry
from erp_jobs.jobs.rollup import MetricsAggregator
from erp_jobs.worker import load_handler_modules

log = get_logger(__name__)

# Checked in order; the first matching class wins.
_SCHEDULER_ERRORS: tuple[tuple[type[Exception], ErrorCode, int], ...] = (
    (JobNotFoundError, ErrorCode.NOT_FOUND, 404),
    (InvalidExpression, ErrorCode.INVALID_EXPRESSION, 400),
    (DependencyCycleError, ErrorCode.DEPENDENCY_CYCLE, 409),
    (InvalidJobStateError, ErrorCode.INVALID_STATE, 409),
    (QueueStoppedError, ErrorCode.QUEUE_STOPPED, 409),
    (StoreUnavailableError, ErrorCode.STORE_UNAVAILABLE, 503),
    (ValueError, ErrorCode.BAD_REQUEST, 400),
)


def create_app(*, settings: Settings | None = None, registry: HandlerRegistry | None = None) -> FastAPI:
    configure_logging()
    settings = settings or load_settings()
    registry = load_handler_modules(registry or HandlerRegistry(), settings.handler_modules)

    app = FastAPI(title="erp-jobs", docs_url="/api/docs", redoc_url="/api/redoc")

    @app.exception_handler(ApiError)
    async def _api_error_handler(request: Request, exc: ApiError):  # type: ignore[no-redef]
        return json_error_response(
            code=exc.code,
            message=exc.message,
            status_code=exc.status_code,
            request=request,
            details=exc.details,
        )

    async def _scheduler_error_handler(request: Request, exc: Exception):  # type: ignore[no-redef]
        for exc_type, code, status_code in _SCHEDULER_ERRORS:
            if isinstance(exc, exc_type):
                return json_error_response(code=code, message=str(exc), status_code=status_code, request=request)
        raise exc

    for exc_type, _code, _status in _SCHEDULER_ERRORS:
        app.add_exception_handler(exc_type, _scheduler_error_handler)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[no-redef]
        log.exception("unhandled_exception path=%s", str(getattr(request, "url", "")))
        return json_error_response(
            code=ErrorCode.INTERNAL_ERROR,
            message="Internal server error",
            status_code=500,
            request=request,
            details={"error_type": type(exc).__name__},
        )

    app.add_middleware(RequestIdMiddleware)

    engine = create_engine(settings.database_url)
    aggregator = MetricsAggregator()
    app.state.engine = engine
    app.state.settings = settings
    app.state.aggregator = aggregator
    app.state.admin = AdminService(
        engine,
        registry=registry,
        aggregator=aggregator,
        default_queue_concurrency=settings.default_queue_concurrency,
    )

    async def _flush_loop() -> None:
        while True:
            await asyncio.sleep(float(settings.metrics_flush_interval_s))
            try:
                await aggregator.flush(engine)
            except StoreUnavailableError as exc:
                log.warning("metrics_flush_failed err=%s", type(exc).__name__)

    @app.on_event("startup")
    async def _startup() -> None:  # type: ignore[no-redef]
        app.state.flush_task = asyncio.create_task(_flush_loop())

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # type: ignore[no-redef]
        task = getattr(app.state, "flush_task", None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        try:
            await aggregator.flush(engine)
        except StoreUnavailableError as exc:
            log.warning("metrics_flush_failed err=%s", type(exc).__name__)
        await engine.dispose()

    app.include_router(api_router)
    return app
