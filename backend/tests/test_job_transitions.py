from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.jobs.claim import claim_jobs
from erp_jobs.jobs.enqueue import schedule_cron, schedule_interval, submit_job
from erp_jobs.jobs.errors import ErrorKind
from erp_jobs.jobs.model import ExecutionStatus, JobStatus
from erp_jobs.jobs.transitions import Outcome, complete_job, fail_job, finish_job

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


async def _job_row(engine: AsyncEngine, job_id: str) -> dict[str, Any]:
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql("SELECT * FROM jobs WHERE id=:id", {"id": job_id})
        return dict(result.mappings().one())


async def _executions(engine: AsyncEngine, job_id: str) -> list[dict[str, Any]]:
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql(
            "SELECT * FROM job_executions WHERE job_id=:id ORDER BY execution_number", {"id": job_id}
        )
        return [dict(r) for r in result.mappings().all()]


async def _claim_one(engine: AsyncEngine, now: datetime, worker_id: str = "w1"):
    claimed = await claim_jobs(engine, queue="default", worker_id=worker_id, limit=1, lease_seconds=60, now=now)
    assert len(claimed) == 1
    return claimed[0]


def test_two_failures_then_success(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        rng = random.Random(3)
        job_id = await submit_job(engine, handler="h", max_retries=3, retry_delay_seconds=1, now=T0)

        now = T0
        for _ in range(2):
            claimed = await _claim_one(engine, now)
            result = await fail_job(
                engine,
                job_id=job_id,
                worker_id="w1",
                execution_id=claimed.execution_id,
                error="connection reset",
                duration_ms=10,
                now=now,
                rng=rng,
            )
            assert result is not None
            assert result.status is JobStatus.SCHEDULED
            assert result.retried
            now += timedelta(seconds=10)

        claimed = await _claim_one(engine, now)
        assert claimed.execution_number == 3
        result = await complete_job(
            engine,
            job_id=job_id,
            worker_id="w1",
            execution_id=claimed.execution_id,
            result={"rows": 12},
            duration_ms=20,
            now=now,
        )
        assert result is not None
        assert result.status is JobStatus.COMPLETED
        assert result.terminal

        row = await _job_row(engine, job_id)
        assert row["status"] == "completed"
        assert row["retry_count"] == 2
        assert row["run_count"] == 3
        assert row["success_count"] == 1
        assert row["failure_count"] == 2
        assert row["locked_by"] is None
        assert row["completed_at"] is not None

        executions = await _executions(engine, job_id)
        assert [e["status"] for e in executions] == ["failed", "failed", "completed"]
        assert [e["retry_number"] for e in executions] == [0, 1, 2]
        assert executions[1]["retry_of"] == executions[0]["id"]
        assert executions[2]["result_json"] == '{"rows":12}'
        assert executions[0]["error_kind"] == ErrorKind.RETRYABLE.value
        await engine.dispose()

    asyncio.run(_run())


def test_retries_exhausted_marks_job_failed(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        job_id = await submit_job(engine, handler="h", max_retries=1, retry_delay_seconds=1, now=T0)

        claimed = await _claim_one(engine, T0)
        await fail_job(engine, job_id=job_id, worker_id="w1", execution_id=claimed.execution_id, error="x", now=T0)
        claimed = await _claim_one(engine, T0 + timedelta(seconds=5))
        result = await fail_job(
            engine, job_id=job_id, worker_id="w1", execution_id=claimed.execution_id, error="x again", now=T0
        )
        assert result is not None
        assert result.status is JobStatus.FAILED
        row = await _job_row(engine, job_id)
        assert row["status"] == "failed"
        assert row["last_error"] == "x again"
        assert row["next_run_at"] is None
        await engine.dispose()

    asyncio.run(_run())


def test_non_retryable_failure_is_final(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        job_id = await submit_job(engine, handler="h", max_retries=5, now=T0)
        claimed = await _claim_one(engine, T0)
        result = await fail_job(
            engine,
            job_id=job_id,
            worker_id="w1",
            execution_id=claimed.execution_id,
            error="invoice id missing",
            kind=ErrorKind.NON_RETRYABLE,
            now=T0,
        )
        assert result is not None
        assert result.status is JobStatus.FAILED
        await engine.dispose()

    asyncio.run(_run())


def test_stale_or_foreign_completion_is_ignored(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        job_id = await submit_job(engine, handler="h", now=T0)
        claimed = await _claim_one(engine, T0)

        assert (
            await complete_job(engine, job_id=job_id, worker_id="intruder", execution_id=claimed.execution_id, now=T0)
            is None
        )
        assert await complete_job(engine, job_id=job_id, worker_id="w1", execution_id=claimed.execution_id, now=T0)
        assert await complete_job(engine, job_id=job_id, worker_id="w1", execution_id=claimed.execution_id, now=T0) is None
        assert (await _job_row(engine, job_id))["status"] == "completed"
        await engine.dispose()

    asyncio.run(_run())


def test_timeout_outcome_records_timeout_execution(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        job_id = await submit_job(engine, handler="h", max_retries=0, now=T0)
        claimed = await _claim_one(engine, T0)
        result = await finish_job(
            engine,
            job_id=job_id,
            worker_id="w1",
            execution_id=claimed.execution_id,
            outcome=Outcome.failure("timed out after 300s", kind=ErrorKind.TIMEOUT, duration_ms=300_000),
            now=T0,
        )
        assert result is not None
        assert result.execution_status is ExecutionStatus.TIMEOUT
        assert result.status is JobStatus.FAILED
        assert (await _executions(engine, job_id))[0]["status"] == "timeout"
        await engine.dispose()

    asyncio.run(_run())


def test_deferred_outcome_keeps_retry_budget(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        job_id = await submit_job(engine, handler="h", max_retries=1, now=T0)
        claimed = await _claim_one(engine, T0)
        result = await finish_job(
            engine,
            job_id=job_id,
            worker_id="w1",
            execution_id=claimed.execution_id,
            outcome=Outcome.deferred("2025-01-06T09:30:00.000Z", error="upstream busy"),
            now=T0,
        )
        assert result is not None
        assert result.status is JobStatus.SCHEDULED
        row = await _job_row(engine, job_id)
        assert row["retry_count"] == 0
        assert row["next_run_at"] == "2025-01-06T09:30:00.000Z"
        assert row["failure_count"] == 0
        await engine.dispose()

    asyncio.run(_run())


def test_interval_job_reschedules_after_success(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        job_id = await schedule_interval(engine, name="sync", handler="h", interval_seconds=60, now=T0)
        row = await _job_row(engine, job_id)
        assert row["status"] == "scheduled"
        assert row["next_run_at"] == "2025-01-06T09:01:00.000Z"

        fire = T0 + timedelta(seconds=60)
        claimed = await _claim_one(engine, fire)
        result = await complete_job(
            engine, job_id=job_id, worker_id="w1", execution_id=claimed.execution_id, duration_ms=1, now=fire
        )
        assert result is not None
        assert result.status is JobStatus.SCHEDULED
        assert not result.terminal
        row = await _job_row(engine, job_id)
        assert row["next_run_at"] == "2025-01-06T09:02:00.000Z"
        assert row["completed_at"] is None
        await engine.dispose()

    asyncio.run(_run())


def test_cron_job_pauses_after_repeated_failures(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        job_id = await schedule_cron(
            engine, name="close", handler="h", cron_expression="* * * * *", max_retries=0, now=T0
        )
        assert (await _job_row(engine, job_id))["next_run_at"] == "2025-01-06T09:01:00.000Z"

        fire = T0 + timedelta(minutes=1)
        claimed = await _claim_one(engine, fire)
        first = await fail_job(
            engine,
            job_id=job_id,
            worker_id="w1",
            execution_id=claimed.execution_id,
            error="boom",
            now=fire,
            failure_limit=2,
        )
        assert first is not None
        assert first.status is JobStatus.SCHEDULED
        row = await _job_row(engine, job_id)
        assert row["consecutive_failures"] == 1
        assert row["next_run_at"] == "2025-01-06T09:02:00.000Z"

        fire = T0 + timedelta(minutes=2)
        claimed = await _claim_one(engine, fire)
        second = await fail_job(
            engine,
            job_id=job_id,
            worker_id="w1",
            execution_id=claimed.execution_id,
            error="boom",
            now=fire,
            failure_limit=2,
        )
        assert second is not None
        assert second.status is JobStatus.PAUSED
        await engine.dispose()

    asyncio.run(_run())
