from __future__ import annotations

import random
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any

from erp_jobs.core.redact import clean_error_text
from erp_jobs.core.time import iso_utc_ms
from erp_jobs.jobs.backoff import retry_delay
from erp_jobs.jobs.errors import ErrorKind


class JobStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class JobKind(str, Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"
    CRON = "cron"
    EVENT_TRIGGERED = "event_triggered"


class JobPriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class DependencyType(str, Enum):
    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    ON_COMPLETION = "on_completion"


class QueueStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


class WorkerStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    STOPPED = "stopped"
    CRASHED = "crashed"


class BulkStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
CLAIMABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.SCHEDULED})
RECURRING_KINDS = frozenset({JobKind.RECURRING, JobKind.CRON})

CANCEL_REASON_PREREQUISITE = "prerequisite did not succeed"
CANCEL_REASON_ADMIN = "cancelled by admin"
CANCEL_REASON_BULK = "bulk request cancelled"

MAX_ERROR_STACK_LEN = 8000

# Used when neither the job row nor its handler registration sets a timeout.
DEFAULT_TIMEOUT_S = 300


def parse_priority(value: Any) -> JobPriority:
    if isinstance(value, JobPriority):
        return value
    if value is None or value == "":
        return JobPriority.NORMAL
    if isinstance(value, str) and not value.strip().lstrip("-").isdigit():
        try:
            return JobPriority[value.strip().upper()]
        except KeyError:
            raise ValueError(f"unsupported priority: {value}") from None
    try:
        return JobPriority(int(value))
    except ValueError:
        raise ValueError(f"unsupported priority: {value}") from None


def format_tags(tags: Iterable[str] | None) -> str:
    items = [str(t).strip() for t in (tags or []) if str(t).strip()]
    items = list(dict.fromkeys(t.replace(",", "_") for t in items))
    return "," + ",".join(items) + "," if items else ""


def parse_tags(value: str | None) -> list[str]:
    return [t for t in str(value or "").split(",") if t]


def _as_int(value: Any, *, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s if s else None


@dataclass(frozen=True, slots=True)
class Job:
    id: str
    name: str
    handler: str
    queue: str
    status: JobStatus
    kind: JobKind = JobKind.ONE_TIME
    priority: JobPriority = JobPriority.NORMAL
    payload_json: str = "{}"
    cron_expression: str | None = None
    interval_seconds: int | None = None
    timezone: str = "UTC"
    scheduled_at: str | None = None
    next_run_at: str | None = None
    run_count: int = 0
    retry_count: int = 0
    max_retries: int = 3
    retry_delay_seconds: int = 60
    timeout_seconds: int | None = None
    consecutive_failures: int = 0
    avg_duration_ms: float | None = None
    locked_by: str | None = None
    expires_at: str | None = None
    cancel_requested: bool = False
    resource_key: str | None = None
    schedule_id: str | None = None
    bulk_request_id: str | None = None
    created_at: str | None = None

    @property
    def is_recurring(self) -> bool:
        return self.kind in RECURRING_KINDS


def job_from_row(row: Mapping[str, Any]) -> Job:
    return Job(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        handler=str(row.get("handler") or ""),
        queue=str(row.get("queue") or "default"),
        status=JobStatus(str(row.get("status") or JobStatus.PENDING.value)),
        kind=JobKind(str(row.get("kind") or JobKind.ONE_TIME.value)),
        priority=JobPriority(max(0, min(_as_int(row.get("priority"), default=1), 3))),
        payload_json=str(row.get("payload_json") or "{}"),
        cron_expression=_as_str(row.get("cron_expression")),
        interval_seconds=_as_int(row["interval_seconds"]) if row.get("interval_seconds") is not None else None,
        timezone=_as_str(row.get("timezone")) or "UTC",
        scheduled_at=_as_str(row.get("scheduled_at")),
        next_run_at=_as_str(row.get("next_run_at")),
        run_count=_as_int(row.get("run_count")),
        retry_count=_as_int(row.get("retry_count")),
        max_retries=max(0, _as_int(row.get("max_retries"), default=3)),
        retry_delay_seconds=max(0, _as_int(row.get("retry_delay_seconds"), default=60)),
        timeout_seconds=_as_int(row["timeout_seconds"]) if row.get("timeout_seconds") is not None else None,
        consecutive_failures=_as_int(row.get("consecutive_failures")),
        avg_duration_ms=float(row["avg_duration_ms"]) if row.get("avg_duration_ms") is not None else None,
        locked_by=_as_str(row.get("locked_by")),
        expires_at=_as_str(row.get("expires_at")),
        cancel_requested=bool(_as_int(row.get("cancel_requested"))),
        resource_key=_as_str(row.get("resource_key")),
        schedule_id=_as_str(row.get("schedule_id")),
        bulk_request_id=_as_str(row.get("bulk_request_id")),
        created_at=_as_str(row.get("created_at")),
    )


@dataclass(frozen=True, slots=True)
class JobTransition:
    """Outcome of one finished attempt, applied to the job row by the store."""

    status: JobStatus
    next_run_at: str | None
    retry_count: int
    consecutive_failures: int
    last_error: str | None
    cancel_reason: str | None
    succeeded: bool
    terminal: bool
    retried: bool
    updated_at: str


def on_job_success(job: Job, *, now: datetime | None = None, next_fire_at: str | None = None) -> JobTransition:
    now_dt = now or datetime.now(timezone.utc)
    if job.is_recurring and next_fire_at:
        return JobTransition(
            status=JobStatus.SCHEDULED,
            next_run_at=next_fire_at,
            retry_count=0,
            consecutive_failures=0,
            last_error=None,
            cancel_reason=None,
            succeeded=True,
            terminal=False,
            retried=False,
            updated_at=iso_utc_ms(now_dt),
        )
    return JobTransition(
        status=JobStatus.COMPLETED,
        next_run_at=None,
        retry_count=job.retry_count,
        consecutive_failures=0,
        last_error=None,
        cancel_reason=None,
        succeeded=True,
        terminal=True,
        retried=False,
        updated_at=iso_utc_ms(now_dt),
    )


def on_job_failure(
    job: Job,
    *,
    error: str,
    kind: ErrorKind = ErrorKind.RETRYABLE,
    now: datetime | None = None,
    next_fire_at: str | None = None,
    failure_limit: int = 0,
    rng: random.Random | None = None,
) -> JobTransition:
    now_dt = now or datetime.now(timezone.utc)
    attempt = job.retry_count + 1
    redacted_error = clean_error_text(error)

    delay_s = retry_delay(
        attempt=attempt,
        max_retries=job.max_retries,
        base_delay_s=job.retry_delay_seconds,
        kind=kind,
        rng=rng,
    )
    if delay_s is not None:
        return JobTransition(
            status=JobStatus.SCHEDULED,
            next_run_at=iso_utc_ms(now_dt + timedelta(seconds=delay_s)),
            retry_count=attempt,
            consecutive_failures=job.consecutive_failures,
            last_error=redacted_error,
            cancel_reason=None,
            succeeded=False,
            terminal=False,
            retried=True,
            updated_at=iso_utc_ms(now_dt),
        )

    if job.is_recurring and next_fire_at:
        # This occurrence is spent; the series carries on unless the breaker trips.
        failures = job.consecutive_failures + 1
        tripped = int(failure_limit) > 0 and failures >= int(failure_limit)
        return JobTransition(
            status=JobStatus.PAUSED if tripped else JobStatus.SCHEDULED,
            next_run_at=next_fire_at,
            retry_count=0,
            consecutive_failures=failures,
            last_error=redacted_error,
            cancel_reason=None,
            succeeded=False,
            terminal=False,
            retried=False,
            updated_at=iso_utc_ms(now_dt),
        )

    return JobTransition(
        status=JobStatus.FAILED,
        next_run_at=None,
        retry_count=job.retry_count,
        consecutive_failures=job.consecutive_failures + 1,
        last_error=redacted_error,
        cancel_reason=None,
        succeeded=False,
        terminal=True,
        retried=False,
        updated_at=iso_utc_ms(now_dt),
    )


def on_job_cancelled(job: Job, *, reason: str, now: datetime | None = None) -> JobTransition:
    now_dt = now or datetime.now(timezone.utc)
    return JobTransition(
        status=JobStatus.CANCELLED,
        next_run_at=None,
        retry_count=job.retry_count,
        consecutive_failures=job.consecutive_failures,
        last_error=None,
        cancel_reason=(reason or "").strip() or CANCEL_REASON_ADMIN,
        succeeded=False,
        terminal=True,
        retried=False,
        updated_at=iso_utc_ms(now_dt),
    )


def on_job_defer(job: Job, *, run_after: str, error: str, now: datetime | None = None) -> JobTransition:
    now_dt = now or datetime.now(timezone.utc)
    run_after = (run_after or "").strip()
    if not run_after:
        raise ValueError("run_after is required")

    return JobTransition(
        status=JobStatus.SCHEDULED,
        next_run_at=run_after,
        retry_count=job.retry_count,
        consecutive_failures=job.consecutive_failures,
        last_error=clean_error_text(error),
        cancel_reason=None,
        succeeded=False,
        terminal=False,
        retried=False,
        updated_at=iso_utc_ms(now_dt),
    )
