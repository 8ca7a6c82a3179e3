from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from erp_jobs.core.clock import ManualClock
from erp_jobs.core.config import load_settings
from erp_jobs.jobs.enqueue import submit_job
from erp_jobs.jobs.registry import HandlerRegistry
from erp_jobs.jobs.schedules import create_schedule
from erp_jobs.jobs.workers import list_workers
from erp_jobs.worker import BackgroundTasks, JobScheduler, load_handler_modules

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def _settings(**env: str):
    base = {"WORKER_ID": "w-test", "SCHEDULER_TICK_INTERVAL_MS": "20"}
    base.update(env)
    return load_settings(base)


async def _statuses(engine) -> list[str]:
    async with engine.connect() as conn:
        return [str(r[0]) for r in (await conn.exec_driver_sql("SELECT status FROM jobs ORDER BY created_at, id")).fetchall()]


def test_scheduler_tick_runs_claimed_jobs(open_store) -> None:
    registry = HandlerRegistry()
    ran: list[Any] = []

    @registry.handler("noop")
    async def _noop(payload: Any, ctx: Any) -> None:
        ran.append(payload["n"])

    async def _run() -> None:
        engine = await open_store()
        for n in range(3):
            await submit_job(engine, handler="noop", payload={"n": n}, now=T0)
        scheduler = JobScheduler(engine, registry, settings=_settings(), clock=ManualClock(T0))

        assert await scheduler.tick() == 3
        assert await scheduler.shutdown(grace_s=5) == 0
        assert sorted(ran) == [0, 1, 2]
        assert await _statuses(engine) == ["completed"] * 3

        buckets = scheduler.aggregator.pending()
        bucket = buckets[("2025-01-06", 9, "default")]
        assert (bucket.started, bucket.completed) == (3, 3)
        await engine.dispose()

    asyncio.run(_run())


def test_scheduler_respects_process_concurrency(open_store) -> None:
    registry = HandlerRegistry()
    release = asyncio.Event()

    @registry.handler("wait")
    async def _wait(payload: Any, ctx: Any) -> None:
        await release.wait()

    async def _run() -> None:
        engine = await open_store()
        for _ in range(3):
            await submit_job(engine, handler="wait", now=T0)
        scheduler = JobScheduler(
            engine, registry, settings=_settings(SCHEDULER_MAX_CONCURRENCY="2"), clock=ManualClock(T0)
        )
        assert await scheduler.tick() == 2
        assert await scheduler.tick() == 0
        assert len(scheduler.in_flight) == 2

        release.set()
        await scheduler.shutdown(grace_s=5)
        assert sorted(await _statuses(engine)) == ["completed", "completed", "pending"]
        await engine.dispose()

    asyncio.run(_run())


def test_shutdown_abandons_jobs_past_grace(open_store) -> None:
    registry = HandlerRegistry()

    @registry.handler("forever")
    async def _forever(payload: Any, ctx: Any) -> None:
        await asyncio.sleep(3600)

    async def _run() -> None:
        engine = await open_store()
        await submit_job(engine, handler="forever", now=T0)
        scheduler = JobScheduler(engine, registry, settings=_settings(), clock=ManualClock(T0))
        assert await scheduler.tick() == 1
        assert await scheduler.shutdown(grace_s=0.05) == 1
        # The lease reclaimer republishes it later.
        assert await _statuses(engine) == ["running"]
        assert await scheduler.tick() == 0
        await engine.dispose()

    asyncio.run(_run())


def test_scheduler_run_stops_after_iterations(open_store) -> None:
    registry = HandlerRegistry()
    registry.register("noop", lambda payload, ctx: None)

    async def _run() -> None:
        engine = await open_store()
        await submit_job(engine, handler="noop", now=T0)
        scheduler = JobScheduler(engine, registry, settings=_settings(), clock=ManualClock(T0))
        await scheduler.run(asyncio.Event(), max_iterations=1)
        await scheduler.shutdown(grace_s=5)
        assert await _statuses(engine) == ["completed"]
        await engine.dispose()

    asyncio.run(_run())


def test_background_materialize_and_heartbeat(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        await create_schedule(
            engine, name="poll", schedule_kind="interval", handler="noop", interval_minutes=1, start_date=T0, now=T0
        )
        clock = ManualClock(T0)
        settings = _settings(SCHEDULER_MATERIALIZER_HORIZON_S="120")
        scheduler = JobScheduler(engine, HandlerRegistry(), settings=settings, clock=clock)
        background = BackgroundTasks(engine, scheduler, settings=settings, clock=clock)

        assert await background.materialize() == 2
        assert scheduler.wake.is_set()

        # No worker row yet: the heartbeat is rejected and the worker re-registers.
        assert await background.beat() is False
        assert await background.beat() is True
        workers = await list_workers(engine)
        assert [w["worker_id"] for w in workers] == ["w-test"]

        assert await background.reclaim() == 0
        assert await background.expand_bulk() == 0
        assert await background.flush_metrics() == 1
        await engine.dispose()

    asyncio.run(_run())


def test_load_handler_modules(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "acme_handlers.py").write_text(
        "def register(registry):\n"
        "    registry.register('acme.ping', lambda payload, ctx: 'pong')\n",
        encoding="utf-8",
    )
    (tmp_path / "acme_empty.py").write_text("VALUE = 1\n", encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    monkeypatch.delitem(sys.modules, "acme_handlers", raising=False)

    registry = load_handler_modules(HandlerRegistry(), ["acme_handlers"])
    assert registry.names() == ["acme.ping"]

    with pytest.raises(ValueError):
        load_handler_modules(HandlerRegistry(), ["acme_empty"])

    registry.freeze()
    with pytest.raises(RuntimeError):
        registry.register("late", lambda payload, ctx: None)
