from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest

from erp_jobs.jobs.bulk import cancel_bulk, expand_bulk_requests, get_bulk, submit_bulk
from erp_jobs.jobs.claim import claim_jobs
from erp_jobs.jobs.errors import InvalidJobStateError, JobNotFoundError, QueueStoppedError
from erp_jobs.jobs.model import QueueStatus
from erp_jobs.jobs.queues import set_queue_status
from erp_jobs.jobs.transitions import complete_job, fail_job

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def test_bulk_expands_in_chunks_and_resubmit_is_noop(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        payloads = [{"invoice": n} for n in range(7)]
        bulk_id = await submit_bulk(engine, handler="invoice.send", payloads=payloads, bulk_id="b-1", now=T0)
        assert bulk_id == "b-1"
        assert await submit_bulk(engine, handler="invoice.send", payloads=payloads[:2], bulk_id="b-1", now=T0) == "b-1"

        bulk = await get_bulk(engine, bulk_id="b-1")
        assert bulk is not None
        assert bulk["total"] == 7
        assert bulk["status"] == "pending"
        assert "payloads_json" not in bulk

        emitted = await expand_bulk_requests(engine, chunk=3, now=T0)
        assert len(emitted) == 7
        assert await expand_bulk_requests(engine, chunk=3, now=T0) == []

        bulk = await get_bulk(engine, bulk_id="b-1")
        assert bulk is not None
        assert bulk["status"] == "completed"
        assert bulk["created"] == 7

        async with engine.connect() as conn:
            rows = (
                await conn.exec_driver_sql(
                    "SELECT bulk_index, payload_json FROM jobs WHERE bulk_request_id='b-1' ORDER BY bulk_index"
                )
            ).fetchall()
        assert [int(r[0]) for r in rows] == list(range(7))
        assert json.loads(rows[4][1]) == {"invoice": 4}
        await engine.dispose()

    asyncio.run(_run())


def test_bulk_counts_terminal_jobs(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        await submit_bulk(engine, handler="h", payloads=[1, 2], bulk_id="b-2", max_retries=0, now=T0)
        await expand_bulk_requests(engine, now=T0)
        ok, bad = await claim_jobs(engine, queue="default", worker_id="w1", limit=2, lease_seconds=60, now=T0)
        await complete_job(engine, job_id=ok.job.id, worker_id="w1", execution_id=ok.execution_id, now=T0)
        await fail_job(engine, job_id=bad.job.id, worker_id="w1", execution_id=bad.execution_id, error="x", now=T0)

        bulk = await get_bulk(engine, bulk_id="b-2")
        assert bulk is not None
        assert (bulk["completed"], bulk["failed"]) == (1, 1)
        await engine.dispose()

    asyncio.run(_run())


def test_cancel_bulk_cancels_pending_jobs(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        await submit_bulk(engine, handler="h", payloads=[1, 2, 3], bulk_id="b-3", now=T0)
        await expand_bulk_requests(engine, chunk=2, now=T0)
        running = await claim_jobs(engine, queue="default", worker_id="w1", limit=1, lease_seconds=60, now=T0)

        cancelled = await cancel_bulk(engine, bulk_id="b-3", now=T0)
        assert len(cancelled) == 2
        assert running[0].job.id not in cancelled
        with pytest.raises(InvalidJobStateError):
            await cancel_bulk(engine, bulk_id="b-3", now=T0)
        with pytest.raises(JobNotFoundError):
            await cancel_bulk(engine, bulk_id="nope", now=T0)
        await engine.dispose()

    asyncio.run(_run())


def test_bulk_on_stopped_queue_fails(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        await submit_bulk(engine, handler="h", payloads=[1], queue="batch", bulk_id="b-4", now=T0)
        await set_queue_status(engine, name="batch", status=QueueStatus.STOPPED, now=T0)
        assert await expand_bulk_requests(engine, now=T0) == []
        bulk = await get_bulk(engine, bulk_id="b-4")
        assert bulk is not None
        assert bulk["status"] == "failed"

        with pytest.raises(QueueStoppedError):
            await submit_bulk(engine, handler="h", payloads=[2], queue="batch", now=T0)
        with pytest.raises(ValueError):
            await submit_bulk(engine, handler="", payloads=[1], now=T0)
        await engine.dispose()

    asyncio.run(_run())
