"""Worker runtime: runs one claimed attempt and reports its outcome.

No store transaction is held while the handler runs. The lease is renewed
every half lease from a side task; the handler is never killed by another
process, only abandoned when the lease is lost.
"""

from __future__ import annotations

import asyncio
import json
import random
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.core.clock import Clock, SystemClock
from erp_jobs.core.logging import JobLoggerAdapter, get_logger, job_logger
from erp_jobs.core.redact import clean_error_text
from erp_jobs.core.time import iso_utc_ms
from erp_jobs.db.session import is_sqlite_busy_error
from erp_jobs.jobs.backoff import backoff_seconds
from erp_jobs.jobs.claim import ClaimedJob
from erp_jobs.jobs.errors import ErrorKind, JobDeferError, LeaseLostError, StoreUnavailableError
from erp_jobs.jobs.leases import renew_lease
from erp_jobs.jobs.model import MAX_ERROR_STACK_LEN, Job
from erp_jobs.jobs.registry import HandlerRegistry, HandlerSpec, classify_error
from erp_jobs.jobs.transitions import FinishResult, Outcome, finish_job

log = get_logger(__name__)

MAX_RENEW_FAILURES = 3
HANDLER_NOT_REGISTERED = "handler not registered"


@dataclass(slots=True)
class JobContext:
    """Passed to every handler as its second argument."""

    job: Job
    execution_id: str
    execution_number: int
    worker_id: str
    logger: JobLoggerAdapter
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    renew: Callable[[], Awaitable[bool]] | None = None

    @property
    def attempt(self) -> int:
        return self.job.retry_count + 1

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def idempotency_key(self) -> str:
        return f"{self.job.id}:{self.execution_number}"

    async def renew_lease(self) -> None:
        """Extend the lease now; raises ``LeaseLostError`` once this worker no longer owns the job."""
        if self.renew is None or not await self.renew():
            raise LeaseLostError(f"lease lost for job {self.job.id}")

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise asyncio.CancelledError()


def _error_text(exc: BaseException) -> str:
    return clean_error_text(f"{type(exc).__name__}: {exc}")


def _stack_text(exc: BaseException) -> str:
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return clean_error_text(stack, max_len=MAX_ERROR_STACK_LEN)


def _discard(task: asyncio.Task) -> None:
    def _done(t: asyncio.Task) -> None:
        if not t.cancelled():
            t.exception()

    if task.done():
        _done(task)
    else:
        task.add_done_callback(_done)


def _defer_until(value: Any) -> str:
    if isinstance(value, datetime):
        return iso_utc_ms(value)
    return str(value)


async def _renew_loop(
    engine: AsyncEngine,
    *,
    claimed: ClaimedJob,
    worker_id: str,
    clock: Clock,
    ctx: JobContext,
    lost: asyncio.Event,
    interval_s: float,
) -> None:
    failures = 0
    while True:
        await asyncio.sleep(interval_s)
        try:
            renewal = await renew_lease(
                engine,
                job_id=claimed.job.id,
                worker_id=worker_id,
                lease_seconds=claimed.lease_seconds,
                now=clock.now(),
            )
        except (StoreUnavailableError, SQLAlchemyError) as exc:
            failures += 1
            log.warning(
                "lease_renew_failed id=%s failures=%s err=%s", claimed.job.id, failures, clean_error_text(str(exc))
            )
            if failures >= MAX_RENEW_FAILURES:
                lost.set()
                return
            continue
        failures = 0
        if not renewal.renewed:
            lost.set()
            return
        if renewal.cancel_requested and not ctx.cancel_event.is_set():
            ctx.logger.info("cancel_requested")
            ctx.cancel_event.set()


async def _report(
    engine: AsyncEngine,
    *,
    claimed: ClaimedJob,
    worker_id: str,
    outcome: Outcome,
    clock: Clock,
    failure_limit: int,
    rng: random.Random | None,
    report_retries: int,
) -> FinishResult | None:
    attempt = 0
    while True:
        try:
            return await finish_job(
                engine,
                job_id=claimed.job.id,
                worker_id=worker_id,
                execution_id=claimed.execution_id,
                outcome=outcome,
                now=clock.now(),
                failure_limit=failure_limit,
                rng=rng,
            )
        except StoreUnavailableError as exc:
            attempt += 1
            if attempt > int(report_retries):
                # Left to lease reclamation.
                log.error("job_report_abandoned id=%s err=%s", claimed.job.id, exc)
                return None
            delay = backoff_seconds(attempt, base_delay_s=0.5, rng=rng)
            log.warning("job_report_retry id=%s attempt=%s delay_s=%.2f", claimed.job.id, attempt, delay)
            await asyncio.sleep(delay)


def _start_handler(spec: HandlerSpec, payload: Any, ctx: JobContext) -> asyncio.Task:
    if spec.is_async:
        return asyncio.ensure_future(spec.fn(payload, ctx))
    return asyncio.ensure_future(asyncio.to_thread(spec.fn, payload, ctx))


async def execute_claimed_job(
    engine: AsyncEngine,
    registry: HandlerRegistry,
    claimed: ClaimedJob,
    *,
    worker_id: str,
    clock: Clock | None = None,
    rng: random.Random | None = None,
    failure_limit: int = 0,
    report_retries: int = 5,
    renew_interval_s: float | None = None,
) -> FinishResult | None:
    """Run the handler for ``claimed`` and record the outcome.

    Returns the applied ``FinishResult``; None when the attempt was abandoned
    (lease lost) or the report was a no-op because the worker no longer owns it.
    """
    worker_id = (worker_id or "").strip()
    if not worker_id:
        raise ValueError("worker_id is required")
    clock = clock or SystemClock()
    job = claimed.job
    ctx = JobContext(
        job=job,
        execution_id=claimed.execution_id,
        execution_number=claimed.execution_number,
        worker_id=worker_id,
        logger=job_logger(f"erp_jobs.handlers.{job.handler}", job_id=job.id, execution_number=claimed.execution_number),
    )

    async def _renew_now() -> bool:
        renewal = await renew_lease(
            engine, job_id=job.id, worker_id=worker_id, lease_seconds=claimed.lease_seconds, now=clock.now()
        )
        if renewal.cancel_requested:
            ctx.cancel_event.set()
        return renewal.renewed

    ctx.renew = _renew_now

    async def _finish(outcome: Outcome) -> FinishResult | None:
        return await _report(
            engine,
            claimed=claimed,
            worker_id=worker_id,
            outcome=outcome,
            clock=clock,
            failure_limit=failure_limit,
            rng=rng,
            report_retries=report_retries,
        )

    spec = registry.get(job.handler)
    if spec is None:
        log.warning("job_handler_missing id=%s handler=%s", job.id, job.handler)
        return await _finish(Outcome.failure(HANDLER_NOT_REGISTERED, kind=ErrorKind.NON_RETRYABLE, duration_ms=0))

    try:
        payload = json.loads(job.payload_json or "{}")
    except ValueError as exc:
        return await _finish(
            Outcome.failure(f"payload decode error: {_error_text(exc)}", kind=ErrorKind.NON_RETRYABLE, duration_ms=0)
        )

    timeout_s = float(job.timeout_seconds or registry.timeout_for(job.handler))
    lost = asyncio.Event()
    started_m = clock.monotonic()
    handler_task = _start_handler(spec, payload, ctx)
    lost_task = asyncio.ensure_future(lost.wait())
    renew_task = asyncio.ensure_future(
        _renew_loop(
            engine,
            claimed=claimed,
            worker_id=worker_id,
            clock=clock,
            ctx=ctx,
            lost=lost,
            interval_s=renew_interval_s if renew_interval_s is not None else max(0.05, claimed.lease_seconds / 2.0),
        )
    )
    ctx.logger.info("job_started handler=%s attempt=%s", job.handler, ctx.attempt)

    try:
        done, _ = await asyncio.wait({handler_task, lost_task}, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
    finally:
        renew_task.cancel()
        lost_task.cancel()
        _discard(renew_task)
        _discard(lost_task)
        if not handler_task.done():
            ctx.cancel_event.set()
            handler_task.cancel()
            _discard(handler_task)

    duration_ms = max(0, int(round((clock.monotonic() - started_m) * 1000.0)))

    if handler_task not in done:
        if lost.is_set():
            ctx.logger.warning("job_lease_lost abandoning attempt")
            return None
        ctx.logger.warning("job_timed_out timeout_s=%s", timeout_s)
        return await _finish(
            Outcome.failure(
                f"timed out after {timeout_s:g}s",
                kind=ErrorKind.TIMEOUT,
                duration_ms=duration_ms,
            )
        )

    if lost.is_set():
        ctx.logger.warning("job_lease_lost result discarded")
        return None

    exc = handler_task.exception() if not handler_task.cancelled() else asyncio.CancelledError()
    if exc is None:
        return await _finish(Outcome.success(handler_task.result(), duration_ms=duration_ms))

    if isinstance(exc, LeaseLostError):
        ctx.logger.warning("job_lease_lost handler stopped")
        return None

    if isinstance(exc, JobDeferError):
        return await _finish(
            Outcome.deferred(_defer_until(exc.run_after), error=_error_text(exc), duration_ms=duration_ms)
        )
    if isinstance(exc, asyncio.CancelledError):
        ctx.logger.info("job_handler_cancelled")
        return await _finish(Outcome.failure("cancelled", kind=ErrorKind.CANCELLED, duration_ms=duration_ms))
    if is_sqlite_busy_error(exc):
        delay_s = 2.0 + (rng or random).random() * 3.0
        run_after = iso_utc_ms(clock.now() + timedelta(seconds=delay_s))
        return await _finish(Outcome.deferred(run_after, error=_error_text(exc), duration_ms=duration_ms))

    kind = classify_error(spec, exc)
    ctx.logger.warning("job_handler_failed kind=%s err=%s", kind.value, _error_text(exc))
    return await _finish(
        Outcome.failure(_error_text(exc), kind=kind, stack=_stack_text(exc), duration_ms=duration_ms)
    )
