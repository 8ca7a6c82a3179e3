from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

JOB_STATUSES: tuple[str, ...] = (
    "pending",
    "scheduled",
    "running",
    "completed",
    "failed",
    "cancelled",
    "paused",
)

ERROR_KINDS: tuple[str, ...] = (
    "retryable",
    "non_retryable",
    "timeout",
    "lease_lost",
    "cancelled",
)

JOBS_CLAIM_TOTAL = Counter(
    "erp_jobs_claim_total",
    "Total jobs claimed by workers.",
    ["queue"],
)

JOBS_COMPLETED_TOTAL = Counter(
    "erp_jobs_completed_total",
    "Total job executions that completed successfully.",
    ["queue"],
)

JOBS_FAILED_TOTAL = Counter(
    "erp_jobs_failed_total",
    "Total job executions that ended in failure, by error kind.",
    ["queue", "kind"],
)

JOBS_RETRIED_TOTAL = Counter(
    "erp_jobs_retried_total",
    "Total failed executions rescheduled for another attempt.",
    ["queue"],
)

LEASES_RECLAIMED_TOTAL = Counter(
    "erp_jobs_leases_reclaimed_total",
    "Total running jobs republished after their lease expired.",
)

JOB_DURATION_SECONDS = Histogram(
    "erp_jobs_duration_seconds",
    "Handler wall duration (seconds).",
    buckets=(
        0.01,
        0.05,
        0.1,
        0.5,
        1.0,
        5.0,
        15.0,
        60.0,
        300.0,
        1800.0,
    ),
)

JOBS_STATUS_COUNT = Gauge(
    "erp_jobs_status_count",
    "Current jobs count by status (from the store).",
    ["status"],
)

QUEUE_RUNNING = Gauge(
    "erp_jobs_queue_running",
    "Current running jobs per queue (from the store).",
    ["queue"],
)

METRICS_SCRAPE_ERRORS_TOTAL = Counter(
    "erp_jobs_metrics_scrape_errors_total",
    "Total /metrics scrape errors while querying the store.",
)

METRICS_LAST_SCRAPE_SUCCESS = Gauge(
    "erp_jobs_metrics_last_scrape_success",
    "Last /metrics scrape success (1=ok, 0=error).",
)


def _init_labelsets() -> None:
    LEASES_RECLAIMED_TOTAL.inc(0)
    METRICS_SCRAPE_ERRORS_TOTAL.inc(0)
    for status in JOB_STATUSES:
        JOBS_STATUS_COUNT.labels(status=status).set(0)
    METRICS_LAST_SCRAPE_SUCCESS.set(1)


_init_labelsets()


def observe_claims(*, queue: str, count: int) -> None:
    if count > 0:
        JOBS_CLAIM_TOTAL.labels(queue=queue).inc(count)


def observe_job_outcome(*, queue: str, succeeded: bool, kind: str | None, retried: bool, duration_s: float | None) -> None:
    if succeeded:
        JOBS_COMPLETED_TOTAL.labels(queue=queue).inc()
    else:
        kind = (kind or "").strip()
        if kind not in ERROR_KINDS:
            kind = "retryable"
        JOBS_FAILED_TOTAL.labels(queue=queue, kind=kind).inc()
    if retried:
        JOBS_RETRIED_TOTAL.labels(queue=queue).inc()
    if duration_s is not None and duration_s >= 0:
        JOB_DURATION_SECONDS.observe(duration_s)


def set_jobs_status_counts(counts: dict[str, int]) -> None:
    for status in JOB_STATUSES:
        JOBS_STATUS_COUNT.labels(status=status).set(float(int(counts.get(status, 0) or 0)))


def set_queue_running_counts(counts: dict[str, int]) -> None:
    for queue, value in counts.items():
        QUEUE_RUNNING.labels(queue=queue).set(float(int(value or 0)))
