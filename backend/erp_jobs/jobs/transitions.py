from __future__ import annotations

import json
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from erp_jobs.core.logging import get_logger
from erp_jobs.core.metrics import observe_job_outcome
from erp_jobs.core.redact import clean_error_text
from erp_jobs.core.time import iso_utc_ms, ms_between, parse_iso_utc
from erp_jobs.db.session import with_sqlite_busy_retry
from erp_jobs.jobs.calendar import next_fire
from erp_jobs.jobs.dependencies import resolve_dependents
from erp_jobs.jobs.enqueue import recurrence_spec
from erp_jobs.jobs.errors import ErrorKind, InvalidExpression, Unbounded
from erp_jobs.jobs.model import (
    CANCEL_REASON_ADMIN,
    MAX_ERROR_STACK_LEN,
    ExecutionStatus,
    Job,
    JobStatus,
    JobTransition,
    job_from_row,
    on_job_cancelled,
    on_job_defer,
    on_job_failure,
    on_job_success,
)
from erp_jobs.jobs.queues import record_queue_outcome
from erp_jobs.jobs.terminal import record_terminal

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Outcome:
    """What happened to one attempt, as reported by the worker runtime or the reclaimer."""

    execution_status: ExecutionStatus
    kind: ErrorKind | None = None
    error_message: str | None = None
    error_stack: str | None = None
    result_json: str | None = None
    duration_ms: int | None = None
    defer_until: str | None = None

    @classmethod
    def success(cls, result: Any = None, *, duration_ms: int | None = None) -> Outcome:
        result_json = None
        if result is not None:
            result_json = json.dumps(result, ensure_ascii=False, separators=(",", ":"), default=str)
        return cls(ExecutionStatus.COMPLETED, result_json=result_json, duration_ms=duration_ms)

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        kind: ErrorKind = ErrorKind.RETRYABLE,
        stack: str | None = None,
        duration_ms: int | None = None,
    ) -> Outcome:
        status = ExecutionStatus.TIMEOUT if kind is ErrorKind.TIMEOUT else ExecutionStatus.FAILED
        return cls(status, kind=kind, error_message=error, error_stack=stack, duration_ms=duration_ms)

    @classmethod
    def deferred(cls, run_after: str, *, error: str, duration_ms: int | None = None) -> Outcome:
        return cls(
            ExecutionStatus.FAILED,
            kind=ErrorKind.RETRYABLE,
            error_message=error,
            duration_ms=duration_ms,
            defer_until=run_after,
        )


@dataclass(frozen=True, slots=True)
class FinishResult:
    job_id: str
    queue: str
    status: JobStatus
    execution_status: ExecutionStatus
    terminal: bool
    retried: bool
    readied: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)


def next_fire_for(job: Job, *, now: datetime) -> str | None:
    """Next occurrence of a recurring job strictly after ``now``; None once the series has ended."""
    if not job.is_recurring:
        return None
    origin_s = job.scheduled_at or job.created_at
    spec = recurrence_spec(
        kind=job.kind,
        cron_expression=job.cron_expression,
        interval_seconds=job.interval_seconds,
        timezone_name=job.timezone,
        origin=parse_iso_utc(origin_s) if origin_s else None,
    )
    if spec is None:
        return None
    try:
        fire = next_fire(spec, now)
    except (InvalidExpression, Unbounded) as exc:
        log.warning("job_recurrence_invalid id=%s err=%s", job.id, exc)
        return None
    return iso_utc_ms(fire) if fire is not None else None


def _plan(
    job: Job,
    job_row: dict[str, Any],
    outcome: Outcome,
    *,
    now: datetime,
    failure_limit: int,
    rng: random.Random | None,
) -> tuple[JobTransition, ExecutionStatus]:
    if job.cancel_requested:
        reason = str(job_row.get("cancel_reason") or "") or CANCEL_REASON_ADMIN
        return on_job_cancelled(job, reason=reason, now=now), ExecutionStatus.CANCELLED
    if outcome.execution_status is ExecutionStatus.COMPLETED:
        return on_job_success(job, now=now, next_fire_at=next_fire_for(job, now=now)), ExecutionStatus.COMPLETED
    error = outcome.error_message or (outcome.kind.value if outcome.kind else "failed")
    if outcome.defer_until:
        return on_job_defer(job, run_after=outcome.defer_until, error=error, now=now), outcome.execution_status
    if outcome.kind is ErrorKind.CANCELLED:
        return on_job_cancelled(job, reason=error, now=now), ExecutionStatus.CANCELLED
    transition = on_job_failure(
        job,
        error=error,
        kind=outcome.kind or ErrorKind.RETRYABLE,
        now=now,
        next_fire_at=next_fire_for(job, now=now),
        failure_limit=failure_limit,
        rng=rng,
    )
    return transition, outcome.execution_status


async def apply_outcome(
    conn: AsyncConnection,
    *,
    job_row: dict[str, Any],
    execution_id: str | None,
    outcome: Outcome,
    now: datetime,
    failure_limit: int = 0,
    rng: random.Random | None = None,
) -> FinishResult:
    """Record a finished attempt and move the job on, inside the caller's transaction."""
    job = job_from_row(job_row)
    now_s = iso_utc_ms(now)
    transition, execution_status = _plan(job, job_row, outcome, now=now, failure_limit=failure_limit, rng=rng)

    deferred = bool(outcome.defer_until) and transition.status is not JobStatus.CANCELLED
    cancelled = execution_status is ExecutionStatus.CANCELLED
    failed_attempt = not transition.succeeded and not cancelled and not deferred

    error_message: str | None = None
    error_stack: str | None = None
    if execution_status is not ExecutionStatus.COMPLETED:
        error_message = clean_error_text(
            outcome.error_message or (outcome.kind.value if outcome.kind else execution_status.value)
        )
        if cancelled and job.cancel_requested:
            error_message = transition.cancel_reason
        if outcome.error_stack:
            error_stack = clean_error_text(outcome.error_stack, max_len=MAX_ERROR_STACK_LEN)

    if execution_id is not None:
        await conn.exec_driver_sql(
            """
UPDATE job_executions
SET status=:status,
    completed_at=:now,
    duration_ms=:duration_ms,
    result_json=:result_json,
    error_message=:error_message,
    error_stack=:error_stack,
    error_kind=:error_kind
WHERE id=:id AND status='running';
""".strip(),
            {
                "status": execution_status.value,
                "now": now_s,
                "duration_ms": outcome.duration_ms,
                "result_json": outcome.result_json if execution_status is ExecutionStatus.COMPLETED else None,
                "error_message": error_message,
                "error_stack": error_stack,
                "error_kind": (outcome.kind.value if outcome.kind else None)
                if execution_status is not ExecutionStatus.COMPLETED
                else None,
                "id": execution_id,
            },
        )

    await conn.exec_driver_sql(
        """
UPDATE jobs
SET status=:status,
    next_run_at=:next_run_at,
    retry_count=:retry_count,
    consecutive_failures=:consecutive_failures,
    last_error=CASE WHEN :keep_error THEN last_error ELSE :last_error END,
    cancel_reason=:cancel_reason,
    cancel_requested=CASE WHEN :status = 'cancelled' THEN cancel_requested ELSE 0 END,
    run_count=run_count + :ran,
    success_count=success_count + :succeeded,
    failure_count=failure_count + :failed,
    last_duration_ms=COALESCE(:duration_ms, last_duration_ms),
    avg_duration_ms=CASE WHEN :duration_ms IS NULL THEN avg_duration_ms
        ELSE (COALESCE(avg_duration_ms, 0) * run_count + :duration_ms) / (run_count + 1) END,
    locked_by=NULL,
    locked_at=NULL,
    expires_at=NULL,
    last_run_at=:now,
    last_success_at=CASE WHEN :succeeded = 1 THEN :now ELSE last_success_at END,
    last_failure_at=CASE WHEN :failed = 1 THEN :now ELSE last_failure_at END,
    completed_at=CASE WHEN :terminal = 1 THEN :now ELSE completed_at END,
    updated_at=:now
WHERE id=:id;
""".strip(),
        {
            "status": transition.status.value,
            "next_run_at": transition.next_run_at,
            "retry_count": transition.retry_count,
            "consecutive_failures": transition.consecutive_failures,
            "keep_error": 1 if cancelled else 0,
            "last_error": transition.last_error,
            "cancel_reason": transition.cancel_reason,
            "ran": 1 if outcome.duration_ms is not None else 0,
            "succeeded": 1 if transition.succeeded else 0,
            "failed": 1 if failed_attempt else 0,
            "duration_ms": outcome.duration_ms,
            "now": now_s,
            "terminal": 1 if transition.terminal else 0,
            "id": job.id,
        },
    )

    await conn.exec_driver_sql("DELETE FROM job_locks WHERE job_id=:id", {"id": job.id})

    wait_ms: int | None = None
    started_s = job_row.get("started_at")
    if job.next_run_at and started_s:
        wait_ms = ms_between(parse_iso_utc(job.next_run_at), parse_iso_utc(str(started_s)))
    await record_queue_outcome(
        conn,
        name=job.queue,
        failed=failed_attempt,
        wait_ms=wait_ms,
        process_ms=outcome.duration_ms,
        now_s=now_s,
    )

    if job.locked_by:
        await conn.exec_driver_sql(
            """
UPDATE job_workers
SET jobs_processed = jobs_processed + 1,
    jobs_failed = jobs_failed + :failed,
    current_job_id = CASE WHEN current_job_id = :job_id THEN NULL ELSE current_job_id END
WHERE worker_id = :worker_id;
""".strip(),
            {"failed": 1 if failed_attempt else 0, "job_id": job.id, "worker_id": job.locked_by},
        )

    readied: list[str] = []
    dependents_cancelled: list[str] = []
    if transition.terminal:
        await record_terminal(conn, job_id=job.id, status=transition.status, now_s=now_s)
        readied, dependents_cancelled = await resolve_dependents(
            conn, prerequisite_id=job.id, status=transition.status, now=now
        )

    return FinishResult(
        job_id=job.id,
        queue=job.queue,
        status=transition.status,
        execution_status=execution_status,
        terminal=transition.terminal,
        retried=transition.retried,
        readied=readied,
        cancelled=dependents_cancelled,
    )


async def finish_job(
    engine: AsyncEngine,
    *,
    job_id: str,
    worker_id: str,
    execution_id: str,
    outcome: Outcome,
    now: datetime | None = None,
    failure_limit: int = 0,
    rng: random.Random | None = None,
) -> FinishResult | None:
    """Apply ``outcome`` if ``worker_id`` still owns the attempt; otherwise a no-op returning None."""
    now_dt = now or datetime.now(timezone.utc)

    async def _op() -> FinishResult | None:
        async with engine.begin() as conn:
            row = (
                await conn.exec_driver_sql(
                    "SELECT * FROM jobs WHERE id=:id AND status='running' AND locked_by=:worker_id",
                    {"id": job_id, "worker_id": worker_id},
                )
            ).mappings().first()
            if row is None:
                return None
            running = (
                await conn.exec_driver_sql(
                    "SELECT 1 FROM job_executions WHERE id=:id AND job_id=:job_id AND status='running'",
                    {"id": execution_id, "job_id": job_id},
                )
            ).first()
            if running is None:
                return None
            return await apply_outcome(
                conn,
                job_row=dict(row),
                execution_id=execution_id,
                outcome=outcome,
                now=now_dt,
                failure_limit=failure_limit,
                rng=rng,
            )

    result = await with_sqlite_busy_retry(_op)
    if result is None:
        log.info("job_finish_skipped id=%s worker=%s execution=%s", job_id, worker_id, execution_id)
        return None

    observe_job_outcome(
        queue=result.queue,
        succeeded=result.execution_status is ExecutionStatus.COMPLETED,
        kind=outcome.kind.value if outcome.kind else None,
        retried=result.retried,
        duration_s=(outcome.duration_ms / 1000.0) if outcome.duration_ms is not None else None,
    )
    log.info(
        "job_finished id=%s execution=%s status=%s attempt_status=%s",
        job_id,
        execution_id,
        result.status.value,
        result.execution_status.value,
    )
    return result


async def complete_job(
    engine: AsyncEngine,
    *,
    job_id: str,
    worker_id: str,
    execution_id: str,
    result: Any = None,
    duration_ms: int | None = None,
    now: datetime | None = None,
    **kwargs: Any,
) -> FinishResult | None:
    return await finish_job(
        engine,
        job_id=job_id,
        worker_id=worker_id,
        execution_id=execution_id,
        outcome=Outcome.success(result, duration_ms=duration_ms),
        now=now,
        **kwargs,
    )


async def fail_job(
    engine: AsyncEngine,
    *,
    job_id: str,
    worker_id: str,
    execution_id: str,
    error: str,
    kind: ErrorKind = ErrorKind.RETRYABLE,
    stack: str | None = None,
    duration_ms: int | None = None,
    now: datetime | None = None,
    **kwargs: Any,
) -> FinishResult | None:
    return await finish_job(
        engine,
        job_id=job_id,
        worker_id=worker_id,
        execution_id=execution_id,
        outcome=Outcome.failure(error, kind=kind, stack=stack, duration_ms=duration_ms),
        now=now,
        **kwargs,
    )
