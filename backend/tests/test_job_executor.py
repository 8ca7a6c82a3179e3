from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.core.clock import ManualClock
from erp_jobs.core.config import load_settings
from erp_jobs.jobs.claim import claim_jobs
from erp_jobs.jobs.enqueue import submit_job
from erp_jobs.jobs.errors import ErrorKind, JobDeferError, JobPermanentError, LeaseLostError
from erp_jobs.jobs import executor
from erp_jobs.jobs.executor import HANDLER_NOT_REGISTERED, MAX_RENEW_FAILURES, execute_claimed_job
from erp_jobs.jobs.model import ExecutionStatus, JobStatus
from erp_jobs.jobs.registry import HandlerRegistry
from erp_jobs.jobs.schedules import create_schedule, materialize_due

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


async def _job_row(engine: AsyncEngine, job_id: str) -> dict[str, Any]:
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql("SELECT * FROM jobs WHERE id=:id", {"id": job_id})
        return dict(result.mappings().one())


async def _submit_and_claim(engine: AsyncEngine, handler: str, **kwargs: Any):
    job_id = await submit_job(engine, handler=handler, now=T0, **kwargs)
    claimed = await claim_jobs(engine, queue="default", worker_id="w1", limit=1, lease_seconds=60, now=T0)
    assert claimed[0].job.id == job_id
    return claimed[0]


def test_async_handler_success_records_result(open_store) -> None:
    registry = HandlerRegistry()
    seen: dict[str, Any] = {}

    @registry.handler("ledger.post")
    async def _post(payload: Any, ctx: Any) -> dict[str, Any]:
        seen["attempt"] = ctx.attempt
        seen["key"] = ctx.idempotency_key
        return {"posted": payload["entries"]}

    async def _run() -> None:
        engine = await open_store()
        claimed = await _submit_and_claim(engine, "ledger.post", payload={"entries": 4})
        result = await execute_claimed_job(engine, registry, claimed, worker_id="w1", clock=ManualClock(T0))
        assert result is not None
        assert result.status is JobStatus.COMPLETED
        assert seen == {"attempt": 1, "key": f"{claimed.job.id}:1"}

        async with engine.connect() as conn:
            stored = (
                await conn.exec_driver_sql(
                    "SELECT result_json FROM job_executions WHERE id=:id", {"id": claimed.execution_id}
                )
            ).scalar_one()
        assert stored == '{"posted":4}'
        await engine.dispose()

    asyncio.run(_run())


def test_sync_handler_error_is_retried(open_store) -> None:
    registry = HandlerRegistry()

    def _flaky(payload: Any, ctx: Any) -> None:
        raise ConnectionError("smtp down")

    registry.register("mail.send", _flaky)

    async def _run() -> None:
        engine = await open_store()
        claimed = await _submit_and_claim(engine, "mail.send", max_retries=2)
        result = await execute_claimed_job(engine, registry, claimed, worker_id="w1", clock=ManualClock(T0))
        assert result is not None
        assert result.status is JobStatus.SCHEDULED
        assert result.retried

        row = await _job_row(engine, claimed.job.id)
        assert row["last_error"] == "ConnectionError: smtp down"
        async with engine.connect() as conn:
            stack = (
                await conn.exec_driver_sql(
                    "SELECT error_stack FROM job_executions WHERE id=:id", {"id": claimed.execution_id}
                )
            ).scalar_one()
        assert "Traceback" in stack
        await engine.dispose()

    asyncio.run(_run())


def test_permanent_and_classified_errors_are_not_retried(open_store) -> None:
    registry = HandlerRegistry()

    @registry.handler("import.bad")
    async def _bad(payload: Any, ctx: Any) -> None:
        raise JobPermanentError("malformed file")

    @registry.handler("import.lookup", classify=lambda e: ErrorKind.NON_RETRYABLE if isinstance(e, KeyError) else None)
    async def _lookup(payload: Any, ctx: Any) -> None:
        raise KeyError("account")

    async def _run() -> None:
        engine = await open_store()
        for handler in ("import.bad", "import.lookup"):
            claimed = await _submit_and_claim(engine, handler, max_retries=5)
            result = await execute_claimed_job(engine, registry, claimed, worker_id="w1", clock=ManualClock(T0))
            assert result is not None
            assert result.status is JobStatus.FAILED
        await engine.dispose()

    asyncio.run(_run())


def test_unknown_handler_fails_without_retry(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        claimed = await _submit_and_claim(engine, "not.there", max_retries=3)
        result = await execute_claimed_job(engine, HandlerRegistry(), claimed, worker_id="w1", clock=ManualClock(T0))
        assert result is not None
        assert result.status is JobStatus.FAILED
        assert (await _job_row(engine, claimed.job.id))["last_error"] == HANDLER_NOT_REGISTERED
        await engine.dispose()

    asyncio.run(_run())


def test_handler_timeout(open_store) -> None:
    registry = HandlerRegistry()
    flags: dict[str, bool] = {}

    @registry.handler("report.slow")
    async def _slow(payload: Any, ctx: Any) -> None:
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            flags["cancelled"] = ctx.cancelled
            raise

    async def _run() -> None:
        engine = await open_store()
        claimed = await _submit_and_claim(engine, "report.slow", timeout_seconds=1, max_retries=0)
        result = await execute_claimed_job(engine, registry, claimed, worker_id="w1", clock=ManualClock(T0))
        assert result is not None
        assert result.execution_status is ExecutionStatus.TIMEOUT
        assert result.status is JobStatus.FAILED
        await asyncio.sleep(0)
        assert flags == {"cancelled": True}
        await engine.dispose()

    asyncio.run(_run())


def test_defer_reschedules_without_consuming_retry(open_store) -> None:
    registry = HandlerRegistry()

    @registry.handler("bank.sync")
    async def _sync(payload: Any, ctx: Any) -> None:
        raise JobDeferError("rate limited", run_after="2025-01-06T10:00:00.000Z")

    async def _run() -> None:
        engine = await open_store()
        claimed = await _submit_and_claim(engine, "bank.sync")
        result = await execute_claimed_job(engine, registry, claimed, worker_id="w1", clock=ManualClock(T0))
        assert result is not None
        assert result.status is JobStatus.SCHEDULED
        row = await _job_row(engine, claimed.job.id)
        assert row["next_run_at"] == "2025-01-06T10:00:00.000Z"
        assert row["retry_count"] == 0
        await engine.dispose()

    asyncio.run(_run())


def test_cancel_request_reaches_running_handler(open_store) -> None:
    registry = HandlerRegistry()

    @registry.handler("export.big")
    async def _export(payload: Any, ctx: Any) -> None:
        for _ in range(500):
            ctx.raise_if_cancelled()
            await asyncio.sleep(0.01)

    async def _run() -> None:
        engine = await open_store()
        claimed = await _submit_and_claim(engine, "export.big")
        async with engine.begin() as conn:
            await conn.exec_driver_sql(
                "UPDATE jobs SET cancel_requested=1, cancel_reason='user request' WHERE id=:id", {"id": claimed.job.id}
            )
        result = await execute_claimed_job(
            engine, registry, claimed, worker_id="w1", clock=ManualClock(T0), renew_interval_s=0.05
        )
        assert result is not None
        assert result.status is JobStatus.CANCELLED
        assert result.execution_status is ExecutionStatus.CANCELLED
        row = await _job_row(engine, claimed.job.id)
        assert row["cancel_reason"] == "user request"
        await engine.dispose()

    asyncio.run(_run())


def test_lost_lease_abandons_attempt(open_store) -> None:
    registry = HandlerRegistry()

    @registry.handler("slow.sync")
    async def _slow(payload: Any, ctx: Any) -> str:
        await asyncio.sleep(2)
        return "done"

    async def _run() -> None:
        engine = await open_store()
        claimed = await _submit_and_claim(engine, "slow.sync")
        async with engine.begin() as conn:
            await conn.exec_driver_sql("UPDATE jobs SET locked_by='w2' WHERE id=:id", {"id": claimed.job.id})
        result = await execute_claimed_job(
            engine, registry, claimed, worker_id="w1", clock=ManualClock(T0), renew_interval_s=0.05
        )
        assert result is None
        row = await _job_row(engine, claimed.job.id)
        assert row["status"] == "running"
        assert row["locked_by"] == "w2"
        await engine.dispose()

    asyncio.run(_run())


def test_handler_renewal_after_takeover_raises_lease_lost(open_store) -> None:
    registry = HandlerRegistry()
    raised: list[BaseException] = []

    async def _run() -> None:
        engine = await open_store()

        @registry.handler("ledger.close")
        async def _close(payload: Any, ctx: Any) -> str:
            async with engine.begin() as conn:
                await conn.exec_driver_sql("UPDATE jobs SET locked_by='w2' WHERE id=:id", {"id": ctx.job.id})
            try:
                await ctx.renew_lease()
            except LeaseLostError as exc:
                raised.append(exc)
                raise
            return "closed"

        claimed = await _submit_and_claim(engine, "ledger.close")
        result = await execute_claimed_job(engine, registry, claimed, worker_id="w1", clock=ManualClock(T0))
        assert result is None
        assert len(raised) == 1
        row = await _job_row(engine, claimed.job.id)
        assert row["status"] == "running"
        assert row["locked_by"] == "w2"
        await engine.dispose()

    asyncio.run(_run())


def test_schedule_job_uses_handler_registered_timeout(open_store) -> None:
    registry = HandlerRegistry()
    settings = load_settings({})

    @registry.handler("report.slow", timeout_seconds=1)
    async def _slow(payload: Any, ctx: Any) -> None:
        await asyncio.sleep(30)

    async def _run() -> None:
        engine = await open_store()
        await create_schedule(
            engine,
            name="poll",
            schedule_kind="interval",
            handler="report.slow",
            interval_minutes=1,
            start_date=T0,
            now=T0,
        )
        await materialize_due(engine, horizon_s=60, now=T0)

        fire = T0 + timedelta(minutes=1)
        (claimed,) = await claim_jobs(
            engine,
            queue="default",
            worker_id="w1",
            limit=1,
            lease_for=settings.lease_seconds,
            timeout_for=registry.timeout_for,
            now=fire,
        )
        assert claimed.job.timeout_seconds is None
        assert claimed.lease_seconds == settings.lease_seconds(1)

        result = await execute_claimed_job(engine, registry, claimed, worker_id="w1", clock=ManualClock(fire))
        assert result is not None
        assert result.execution_status is ExecutionStatus.TIMEOUT
        await engine.dispose()

    asyncio.run(_run())


def test_registry_timeout_for_falls_back_to_default() -> None:
    registry = HandlerRegistry()
    registry.register("report.fast", lambda payload, ctx: None, timeout_seconds=45)
    registry.register("report.plain", lambda payload, ctx: None)
    assert registry.timeout_for("report.fast") == 45
    assert registry.timeout_for("report.plain") == 300
    assert registry.timeout_for("missing") == 300


def test_store_errors_during_renewal_abandon_attempt(open_store, monkeypatch: pytest.MonkeyPatch) -> None:
    registry = HandlerRegistry()
    calls: list[str] = []

    @registry.handler("slow.sync")
    async def _slow(payload: Any, ctx: Any) -> str:
        await asyncio.sleep(5)
        return "done"

    async def _broken_renew(engine: AsyncEngine, *, job_id: str, **kwargs: Any):
        calls.append(job_id)
        raise OperationalError("UPDATE jobs", {}, Exception("disk I/O error"))

    monkeypatch.setattr(executor, "renew_lease", _broken_renew)

    async def _run() -> None:
        engine = await open_store()
        claimed = await _submit_and_claim(engine, "slow.sync")
        result = await execute_claimed_job(
            engine, registry, claimed, worker_id="w1", clock=ManualClock(T0), renew_interval_s=0.05
        )
        assert result is None
        assert len(calls) == MAX_RENEW_FAILURES
        row = await _job_row(engine, claimed.job.id)
        assert row["status"] == "running"
        await engine.dispose()

    asyncio.run(_run())
