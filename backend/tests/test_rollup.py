from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.jobs.rollup import MetricsAggregator, bucket_key

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


async def _rows(engine: AsyncEngine) -> list[dict]:
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql("SELECT * FROM job_metrics ORDER BY date, hour, queue_name")
        return [dict(r) for r in result.mappings().all()]


def test_bucket_key_is_utc_hour() -> None:
    berlin_noon = datetime(2025, 1, 6, 12, 30, tzinfo=timezone(timedelta(hours=1)))
    assert bucket_key("default", berlin_noon) == ("2025-01-06", 11, "default")


def test_flush_merges_into_existing_bucket(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        try:
            agg = MetricsAggregator()
            agg.record_submitted("default", count=2, at=T0)
            agg.record_started("default", wait_ms=100, at=T0)
            agg.record_finished("default", succeeded=True, process_ms=40, at=T0)
            assert await agg.flush(engine, now=T0) == 1
            assert agg.pending() == {}

            agg.record_started("default", wait_ms=300, at=T0 + timedelta(minutes=10))
            agg.record_finished("default", succeeded=False, process_ms=80, at=T0 + timedelta(minutes=10))
            agg.record_submitted("emails", at=T0 + timedelta(hours=1))
            assert await agg.flush(engine, now=T0 + timedelta(hours=1)) == 2

            rows = await _rows(engine)
            assert [(r["date"], r["hour"], r["queue_name"]) for r in rows] == [
                ("2025-01-06", 9, "default"),
                ("2025-01-06", 10, "emails"),
            ]
            default = rows[0]
            assert default["jobs_submitted"] == 2
            assert default["jobs_started"] == 2
            assert default["jobs_completed"] == 1
            assert default["jobs_failed"] == 1
            assert abs(default["avg_wait_time_ms"] - 200.0) < 1e-6
            assert abs(default["avg_process_time_ms"] - 60.0) < 1e-6
            assert rows[1]["jobs_submitted"] == 1
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_flush_with_nothing_pending_writes_nothing(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        try:
            assert await MetricsAggregator().flush(engine, now=T0) == 0
            assert await _rows(engine) == []
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_failed_flush_keeps_counts_for_next_attempt(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        try:
            async with engine.begin() as conn:
                await conn.exec_driver_sql("DROP TABLE job_metrics")

            agg = MetricsAggregator()
            agg.record_submitted("default", count=3, at=T0)
            with pytest.raises(Exception):
                await agg.flush(engine, now=T0)

            pending = agg.pending()
            assert pending[("2025-01-06", 9, "default")].submitted == 3
        finally:
            await engine.dispose()

    asyncio.run(_run())
