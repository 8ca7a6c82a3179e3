from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from erp_jobs.jobs.calendar import ScheduleKind
from erp_jobs.jobs.errors import InvalidExpression, JobNotFoundError
from erp_jobs.jobs.model import QueueStatus
from erp_jobs.jobs.queues import set_queue_status, upsert_queue
from erp_jobs.jobs.schedules import (
    create_schedule,
    delete_schedule,
    get_schedule,
    list_schedules,
    materialize_due,
    set_schedule_enabled,
)

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


async def _jobs_for(engine, schedule_id: str) -> list[tuple[str, str]]:
    async with engine.connect() as conn:
        rows = (
            await conn.exec_driver_sql(
                "SELECT schedule_fire_at, status FROM jobs WHERE schedule_id=:id ORDER BY schedule_fire_at",
                {"id": schedule_id},
            )
        ).fetchall()
    return [(str(r[0]), str(r[1])) for r in rows]


def test_create_schedule_computes_first_fire(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        schedule = await create_schedule(
            engine,
            name="nightly-close",
            schedule_kind=ScheduleKind.CRON,
            handler="gl.close",
            payload={"ledger": "main"},
            cron_expression="0 2 * * *",
            timezone_name="Europe/Berlin",
            now=T0,
        )
        assert schedule["enabled"] is True
        assert schedule["next_scheduled_run"] == "2025-01-07T01:00:00.000Z"
        assert schedule["default_payload"] == {"ledger": "main"}

        fetched = await get_schedule(engine, schedule_id=schedule["id"])
        assert fetched is not None
        assert fetched["name"] == "nightly-close"
        assert [s["id"] for s in await list_schedules(engine, enabled=True)] == [schedule["id"]]
        assert await list_schedules(engine, enabled=False) == []
        await engine.dispose()

    asyncio.run(_run())


@pytest.mark.parametrize(
    "kwargs",
    [
        {"schedule_kind": "cron", "cron_expression": "0 2 * * *", "interval_minutes": 5},
        {"schedule_kind": "interval", "interval_minutes": 0},
        {"schedule_kind": "daily", "cron_expression": "0 2 * * *"},
        {"schedule_kind": "cron", "cron_expression": "0 0 30 2 *"},
        {"schedule_kind": "specific_times", "specific_times": ["noday 10:00"]},
    ],
)
def test_create_schedule_rejects_bad_descriptors(open_store, kwargs) -> None:
    async def _run() -> None:
        engine = await open_store()
        with pytest.raises(ValueError):
            await create_schedule(engine, name="bad", handler="h", now=T0, **kwargs)
        await engine.dispose()

    asyncio.run(_run())


def test_materialize_emits_each_fire_once(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        schedule = await create_schedule(
            engine, name="poll", schedule_kind="interval", handler="h", interval_minutes=10, start_date=T0, now=T0
        )
        assert schedule["next_scheduled_run"] == "2025-01-06T09:10:00.000Z"

        emitted = await materialize_due(engine, horizon_s=1800, now=T0)
        assert len(emitted) == 3
        assert await _jobs_for(engine, schedule["id"]) == [
            ("2025-01-06T09:10:00.000Z", "scheduled"),
            ("2025-01-06T09:20:00.000Z", "scheduled"),
            ("2025-01-06T09:30:00.000Z", "scheduled"),
        ]
        assert await materialize_due(engine, horizon_s=1800, now=T0) == []

        # Rewinding the cursor replays fires that already exist; nothing is duplicated.
        async with engine.begin() as conn:
            await conn.exec_driver_sql(
                "UPDATE job_schedules SET next_scheduled_run='2025-01-06T09:10:00.000Z' WHERE id=:id",
                {"id": schedule["id"]},
            )
        assert await materialize_due(engine, horizon_s=1800, now=T0) == []
        assert len(await _jobs_for(engine, schedule["id"])) == 3
        await engine.dispose()

    asyncio.run(_run())


def test_materialize_across_spring_forward(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        now = datetime(2025, 3, 8, 5, 0, tzinfo=timezone.utc)
        schedule = await create_schedule(
            engine,
            name="ny-batch",
            schedule_kind="cron",
            handler="h",
            cron_expression="0 30 2 * * *",
            timezone_name="America/New_York",
            now=now,
        )
        await materialize_due(engine, horizon_s=3 * 24 * 3600, now=now)
        fires = [f for f, _ in await _jobs_for(engine, schedule["id"])]
        assert fires == [
            "2025-03-08T07:30:00.000Z",
            "2025-03-09T07:30:00.000Z",
            "2025-03-10T06:30:00.000Z",
        ]
        await engine.dispose()

    asyncio.run(_run())


def test_stopped_queue_skips_fires(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        schedule = await create_schedule(
            engine,
            name="poll",
            schedule_kind="interval",
            handler="h",
            queue="halted",
            interval_minutes=10,
            start_date=T0,
            now=T0,
        )
        await upsert_queue(engine, name="halted", max_concurrent_jobs=5, now=T0)
        await set_queue_status(engine, name="halted", status=QueueStatus.STOPPED, now=T0)

        later = T0 + timedelta(minutes=25)
        assert await materialize_due(engine, horizon_s=0, now=later) == []
        current = await get_schedule(engine, schedule_id=schedule["id"])
        assert current is not None
        assert current["next_scheduled_run"] == "2025-01-06T09:30:00.000Z"
        await engine.dispose()

    asyncio.run(_run())


def test_schedule_past_end_date_is_disabled(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        schedule = await create_schedule(
            engine,
            name="short",
            schedule_kind="interval",
            handler="h",
            interval_minutes=10,
            start_date=T0,
            end_date=T0 + timedelta(minutes=20),
            now=T0,
        )
        emitted = await materialize_due(engine, horizon_s=3600, now=T0)
        assert len(emitted) == 2
        current = await get_schedule(engine, schedule_id=schedule["id"])
        assert current is not None
        assert current["enabled"] is False
        assert current["next_scheduled_run"] is None
        await engine.dispose()

    asyncio.run(_run())


def test_reenable_skips_missed_fires_and_delete(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        schedule = await create_schedule(
            engine, name="poll", schedule_kind="interval", handler="h", interval_minutes=10, start_date=T0, now=T0
        )
        await set_schedule_enabled(engine, schedule_id=schedule["id"], enabled=False, now=T0)
        assert await materialize_due(engine, horizon_s=0, now=T0 + timedelta(hours=1)) == []

        later = T0 + timedelta(hours=2, minutes=5)
        enabled = await set_schedule_enabled(engine, schedule_id=schedule["id"], enabled=True, now=later)
        assert enabled["next_scheduled_run"] == "2025-01-06T11:10:00.000Z"

        await delete_schedule(engine, schedule_id=schedule["id"])
        with pytest.raises(JobNotFoundError):
            await delete_schedule(engine, schedule_id=schedule["id"])
        with pytest.raises(InvalidExpression):
            await create_schedule(
                engine, name="x", schedule_kind="interval", handler="h", interval_minutes=-1, now=T0
            )
        await engine.dispose()

    asyncio.run(_run())
