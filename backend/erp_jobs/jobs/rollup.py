"""Hourly per-queue counters, kept in memory and flushed to ``job_metrics``.

Observability only: nothing in the scheduler reads these rows back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.core.logging import get_logger
from erp_jobs.core.time import as_utc, iso_utc_ms
from erp_jobs.db.models.job_metrics import JobMetric
from erp_jobs.db.session import with_sqlite_busy_retry

log = get_logger(__name__)

BucketKey = tuple[str, int, str]


@dataclass(slots=True)
class _Bucket:
    submitted: int = 0
    started: int = 0
    completed: int = 0
    failed: int = 0
    wait_sum_ms: float = 0.0
    wait_samples: int = 0
    process_sum_ms: float = 0.0
    process_samples: int = 0

    @property
    def avg_wait_ms(self) -> float:
        return self.wait_sum_ms / self.wait_samples if self.wait_samples else 0.0

    @property
    def avg_process_ms(self) -> float:
        return self.process_sum_ms / self.process_samples if self.process_samples else 0.0


def bucket_key(queue: str, at: datetime | None = None) -> BucketKey:
    at_utc = as_utc(at or datetime.now(timezone.utc))
    return at_utc.strftime("%Y-%m-%d"), at_utc.hour, queue


class MetricsAggregator:
    def __init__(self) -> None:
        self._buckets: dict[BucketKey, _Bucket] = {}

    def _bucket(self, queue: str, at: datetime | None) -> _Bucket:
        key = bucket_key(queue, at)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = _Bucket()
        return bucket

    def record_submitted(self, queue: str, *, count: int = 1, at: datetime | None = None) -> None:
        self._bucket(queue, at).submitted += int(count)

    def record_started(self, queue: str, *, wait_ms: float | None = None, at: datetime | None = None) -> None:
        bucket = self._bucket(queue, at)
        bucket.started += 1
        if wait_ms is not None:
            bucket.wait_sum_ms += max(0.0, float(wait_ms))
            bucket.wait_samples += 1

    def record_finished(
        self,
        queue: str,
        *,
        succeeded: bool,
        process_ms: float | None = None,
        at: datetime | None = None,
    ) -> None:
        bucket = self._bucket(queue, at)
        if succeeded:
            bucket.completed += 1
        else:
            bucket.failed += 1
        if process_ms is not None:
            bucket.process_sum_ms += max(0.0, float(process_ms))
            bucket.process_samples += 1

    def pending(self) -> dict[BucketKey, _Bucket]:
        return dict(self._buckets)

    def _restore(self, buckets: dict[BucketKey, _Bucket]) -> None:
        for key, bucket in buckets.items():
            current = self._buckets.get(key)
            if current is None:
                self._buckets[key] = bucket
                continue
            current.submitted += bucket.submitted
            current.started += bucket.started
            current.completed += bucket.completed
            current.failed += bucket.failed
            current.wait_sum_ms += bucket.wait_sum_ms
            current.wait_samples += bucket.wait_samples
            current.process_sum_ms += bucket.process_sum_ms
            current.process_samples += bucket.process_samples

    async def flush(self, engine: AsyncEngine, *, now: datetime | None = None) -> int:
        """UPSERT every pending bucket; returns the number of buckets written.

        Buckets are handed back to the aggregator if the write fails so the next
        flush retries them.
        """
        if not self._buckets:
            return 0
        buckets, self._buckets = self._buckets, {}
        now_s = iso_utc_ms(now or datetime.now(timezone.utc))

        rows = [
            {
                "date": date_s,
                "hour": hour,
                "queue_name": queue,
                "jobs_submitted": b.submitted,
                "jobs_started": b.started,
                "jobs_completed": b.completed,
                "jobs_failed": b.failed,
                "avg_wait_time_ms": b.avg_wait_ms,
                "avg_process_time_ms": b.avg_process_ms,
                "created_at": now_s,
                "updated_at": now_s,
            }
            for (date_s, hour, queue), b in sorted(buckets.items())
        ]

        table = JobMetric.__table__
        c = table.c
        stmt = sqlite_insert(table).values(rows)
        ex = stmt.excluded
        done_old = c.jobs_completed + c.jobs_failed
        done_new = ex.jobs_completed + ex.jobs_failed
        stmt = stmt.on_conflict_do_update(
            index_elements=[c.date, c.hour, c.queue_name],
            set_={
                "jobs_submitted": c.jobs_submitted + ex.jobs_submitted,
                "jobs_started": c.jobs_started + ex.jobs_started,
                "jobs_completed": c.jobs_completed + ex.jobs_completed,
                "jobs_failed": c.jobs_failed + ex.jobs_failed,
                "avg_wait_time_ms": sa.case(
                    (
                        c.jobs_started + ex.jobs_started > 0,
                        (c.avg_wait_time_ms * c.jobs_started + ex.avg_wait_time_ms * ex.jobs_started)
                        / (c.jobs_started + ex.jobs_started),
                    ),
                    else_=c.avg_wait_time_ms,
                ),
                "avg_process_time_ms": sa.case(
                    (
                        done_old + done_new > 0,
                        (c.avg_process_time_ms * done_old + ex.avg_process_time_ms * done_new)
                        / (done_old + done_new),
                    ),
                    else_=c.avg_process_time_ms,
                ),
                "updated_at": ex.updated_at,
            },
        )

        async def _op() -> None:
            async with engine.begin() as conn:
                await conn.execute(stmt)

        try:
            await with_sqlite_busy_retry(_op)
        except Exception:
            self._restore(buckets)
            raise
        log.info("job_metrics_flushed buckets=%s", len(rows))
        return len(rows)
