from __future__ import annotations

import asyncio
import importlib
import random
import signal
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.core.clock import Clock, SystemClock
from erp_jobs.core.config import Settings, load_settings
from erp_jobs.core.logging import configure_logging, get_logger
from erp_jobs.core.redact import redact_text
from erp_jobs.core.time import iso_utc_ms, ms_between, parse_iso_utc
from erp_jobs.db.engine import create_engine
from erp_jobs.jobs.bulk import expand_bulk_requests
from erp_jobs.jobs.claim import ClaimedJob, claim_jobs
from erp_jobs.jobs.errors import StoreUnavailableError
from erp_jobs.jobs.executor import execute_claimed_job
from erp_jobs.jobs.leases import purge_expired_locks, reclaim_expired
from erp_jobs.jobs.model import ExecutionStatus, WorkerStatus
from erp_jobs.jobs.queues import active_queue_names
from erp_jobs.jobs.registry import HandlerRegistry
from erp_jobs.jobs.rollup import MetricsAggregator
from erp_jobs.jobs.schedules import materialize_due
from erp_jobs.jobs.signals import WakeSignal
from erp_jobs.jobs.workers import expire_dead_workers, heartbeat, mark_worker_stopped, register_worker

log = get_logger(__name__)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    signals = [signal.SIGINT]
    if hasattr(signal, "SIGTERM"):
        signals.append(signal.SIGTERM)

    for sig in signals:
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())


def load_handler_modules(registry: HandlerRegistry, modules: Iterable[str]) -> HandlerRegistry:
    """Import each module and call its ``register(registry)`` hook."""
    for name in modules:
        module = importlib.import_module(name)
        hook = getattr(module, "register", None)
        if hook is None:
            raise ValueError(f"handler module {name!r} has no register(registry) function")
        hook(registry)
        log.info("handlers_loaded module=%s", name)
    return registry


def _task_error(exc: BaseException) -> str:
    return redact_text(f"{type(exc).__name__}: {exc}")


class JobScheduler:
    """Per-process dispatcher: claims due jobs and runs each on its own task."""

    def __init__(
        self,
        engine: AsyncEngine,
        registry: HandlerRegistry,
        *,
        settings: Settings,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        wake: WakeSignal | None = None,
        aggregator: MetricsAggregator | None = None,
    ) -> None:
        self._engine = engine
        self._registry = registry
        self._settings = settings
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self.wake = wake or WakeSignal()
        self.aggregator = aggregator or MetricsAggregator()
        self._tasks: dict[asyncio.Task, ClaimedJob] = {}
        self._stopping = False

    @property
    def worker_id(self) -> str:
        return self._settings.worker_id

    @property
    def in_flight(self) -> list[ClaimedJob]:
        return list(self._tasks.values())

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("job_task_failed err=%s", _task_error(exc))
        # A freed slot may admit more work right away.
        self.wake.post()

    async def served_queues(self) -> list[str]:
        if self._settings.queues:
            return list(self._settings.queues)
        return await active_queue_names(self._engine)

    async def _run(self, claimed: ClaimedJob) -> None:
        started_m = self._clock.monotonic()
        result = await execute_claimed_job(
            self._engine,
            self._registry,
            claimed,
            worker_id=self.worker_id,
            clock=self._clock,
            rng=self._rng,
            failure_limit=self._settings.recurring_failure_limit,
        )
        if result is not None:
            self.aggregator.record_finished(
                claimed.job.queue,
                succeeded=result.execution_status is ExecutionStatus.COMPLETED,
                process_ms=(self._clock.monotonic() - started_m) * 1000.0,
                at=self._clock.now(),
            )

    def _spawn(self, claimed: ClaimedJob) -> None:
        wait_ms = None
        if claimed.job.next_run_at:
            wait_ms = ms_between(parse_iso_utc(claimed.job.next_run_at), parse_iso_utc(claimed.claimed_at))
        self.aggregator.record_started(claimed.job.queue, wait_ms=wait_ms, at=self._clock.now())
        task = asyncio.create_task(self._run(claimed))
        self._tasks[task] = claimed
        task.add_done_callback(self._on_task_done)

    async def tick(self) -> int:
        """Claim from every served queue, shuffled, up to the free task slots."""
        if self._stopping:
            return 0
        free = max(0, int(self._settings.max_concurrency) - len(self._tasks))
        if free <= 0:
            return 0

        queues = await self.served_queues()
        self._rng.shuffle(queues)

        claimed = 0
        for queue in queues:
            if free <= 0 or self._stopping:
                break
            try:
                jobs = await claim_jobs(
                    self._engine,
                    queue=queue,
                    worker_id=self.worker_id,
                    limit=min(int(self._settings.default_batch), free),
                    lease_for=self._settings.lease_seconds,
                    timeout_for=self._registry.timeout_for,
                    now=self._clock.now(),
                )
            except StoreUnavailableError as exc:
                log.warning("jobs_claim_failed queue=%s err=%s", queue, _task_error(exc))
                break
            for job in jobs:
                self._spawn(job)
            free -= len(jobs)
            claimed += len(jobs)
        return claimed

    async def soonest_due_in(self) -> float | None:
        """Seconds until the earliest future ``next_run_at`` in the served queues, if any."""
        queues = await self.served_queues()
        if not queues:
            return None
        now = self._clock.now()
        params: dict[str, Any] = {"now": iso_utc_ms(now)}
        placeholders = []
        for i, name in enumerate(queues):
            params[f"q{i}"] = name
            placeholders.append(f":q{i}")
        sql = (
            "SELECT MIN(next_run_at) FROM jobs WHERE status IN ('pending','scheduled') "
            f"AND next_run_at > :now AND queue IN ({','.join(placeholders)})"
        )
        async with self._engine.connect() as conn:
            soonest = (await conn.exec_driver_sql(sql, params)).scalar()
        if not soonest:
            return None
        return max(0.0, (parse_iso_utc(str(soonest)) - now).total_seconds())

    async def run(self, stop_event: asyncio.Event, *, max_iterations: int | None = None) -> None:
        iterations = 0
        while not stop_event.is_set() and not self._stopping:
            try:
                await self.tick()
                delay = float(self._settings.tick_interval_s)
                soonest = await self.soonest_due_in()
                if soonest is not None:
                    delay = min(delay, soonest)
            except StoreUnavailableError as exc:
                log.warning("scheduler_tick_failed err=%s", _task_error(exc))
                delay = float(self._settings.tick_interval_s)

            iterations += 1
            if max_iterations is not None and iterations >= max_iterations:
                break
            if delay > 0:
                await _wait_any(stop_event, self.wake, delay)

    async def shutdown(self, *, grace_s: float | None = None) -> int:
        """Stop claiming, give in-flight jobs ``grace_s`` to finish, then abandon the rest.

        Abandoned jobs keep their Running row and are republished by lease reclamation.
        Returns the number of abandoned jobs.
        """
        self._stopping = True
        grace = float(self._settings.shutdown_grace_s if grace_s is None else grace_s)
        tasks = list(self._tasks)
        if not tasks:
            return 0
        log.info("scheduler_draining in_flight=%s grace_s=%s", len(tasks), grace)
        _, pending = await asyncio.wait(tasks, timeout=grace if grace > 0 else None)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            log.warning("scheduler_abandoned jobs=%s", len(pending))
        return len(pending)


async def _wait_any(stop_event: asyncio.Event, wake: WakeSignal, timeout: float) -> None:
    stop_task = asyncio.ensure_future(stop_event.wait())
    wake_task = asyncio.ensure_future(wake.wait(timeout))
    try:
        await asyncio.wait({stop_task, wake_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (stop_task, wake_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(stop_task, wake_task, return_exceptions=True)


async def _periodic(
    name: str,
    interval_s: float,
    fn: Callable[[], Awaitable[Any]],
    stop_event: asyncio.Event,
) -> None:
    while not stop_event.is_set():
        try:
            await fn()
        except StoreUnavailableError as exc:
            log.warning("%s_failed err=%s", name, _task_error(exc))
        except Exception as exc:
            log.exception("%s_crashed err=%s", name, _task_error(exc))
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=max(0.01, float(interval_s)))
        except asyncio.TimeoutError:
            continue


class BackgroundTasks:
    """Materializer, reclaimer, bulk expander, metrics flusher and heartbeat for one process."""

    def __init__(
        self,
        engine: AsyncEngine,
        scheduler: JobScheduler,
        *,
        settings: Settings,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._engine = engine
        self._scheduler = scheduler
        self._settings = settings
        self._clock = clock or SystemClock()
        self._rng = rng

    async def materialize(self) -> int:
        emitted = await materialize_due(
            self._engine,
            horizon_s=self._settings.materializer_horizon_s,
            now=self._clock.now(),
            default_queue_concurrency=self._settings.default_queue_concurrency,
        )
        for _, queue in emitted:
            self._scheduler.aggregator.record_submitted(queue, at=self._clock.now())
        if emitted:
            self._scheduler.wake.post()
        return len(emitted)

    async def reclaim(self) -> int:
        now = self._clock.now()
        await expire_dead_workers(self._engine, heartbeat_ttl_s=self._settings.heartbeat_ttl_s, now=now)
        results = await reclaim_expired(
            self._engine, now=now, failure_limit=self._settings.recurring_failure_limit, rng=self._rng
        )
        await purge_expired_locks(self._engine, now=now)
        if results:
            self._scheduler.wake.post()
        return len(results)

    async def expand_bulk(self) -> int:
        emitted = await expand_bulk_requests(
            self._engine,
            chunk=self._settings.bulk_chunk,
            now=self._clock.now(),
            default_queue_concurrency=self._settings.default_queue_concurrency,
        )
        for _, queue in emitted:
            self._scheduler.aggregator.record_submitted(queue, at=self._clock.now())
        if emitted:
            self._scheduler.wake.post()
        return len(emitted)

    async def flush_metrics(self) -> int:
        return await self._scheduler.aggregator.flush(self._engine, now=self._clock.now())

    async def beat(self) -> bool:
        in_flight = self._scheduler.in_flight
        alive = await heartbeat(
            self._engine,
            worker_id=self._scheduler.worker_id,
            status=WorkerStatus.BUSY if in_flight else WorkerStatus.IDLE,
            current_job_id=in_flight[0].job.id if in_flight else None,
            now=self._clock.now(),
        )
        if not alive:
            log.warning("worker_heartbeat_rejected worker=%s reregistering", self._scheduler.worker_id)
            await register_worker(
                self._engine,
                worker_id=self._scheduler.worker_id,
                queues=self._settings.queues,
                now=self._clock.now(),
            )
        return alive

    def start(self, stop_event: asyncio.Event) -> list[asyncio.Task]:
        s = self._settings
        loops = [
            ("schedule_materializer", s.materializer_interval_s, self.materialize),
            ("lease_reclaimer", s.reclaim_interval_s, self.reclaim),
            ("bulk_expander", max(1.0, s.tick_interval_s), self.expand_bulk),
            ("metrics_flusher", s.metrics_flush_interval_s, self.flush_metrics),
            ("worker_heartbeat", s.heartbeat_interval_s, self.beat),
        ]
        return [asyncio.create_task(_periodic(name, interval, fn, stop_event), name=name) for name, interval, fn in loops]


async def main_async(
    *,
    registry: HandlerRegistry | None = None,
    settings: Settings | None = None,
    max_iterations: int | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    configure_logging()
    settings = settings or load_settings()
    registry = load_handler_modules(registry or HandlerRegistry(), settings.handler_modules)
    registry.freeze()

    engine = create_engine(settings.database_url)
    stop_event = stop_event or asyncio.Event()
    _install_signal_handlers(stop_event)

    scheduler = JobScheduler(engine, registry, settings=settings)
    background = BackgroundTasks(engine, scheduler, settings=settings)
    loops: list[asyncio.Task] = []
    try:
        await register_worker(engine, worker_id=settings.worker_id, queues=settings.queues)
        log.info(
            "worker_start env=%s worker=%s handlers=%s queues=%s",
            settings.app_env,
            settings.worker_id,
            ",".join(registry.names()),
            ",".join(settings.queues) or "*",
        )
        loops = background.start(stop_event)
        await scheduler.run(stop_event, max_iterations=max_iterations)
    finally:
        stop_event.set()
        await scheduler.shutdown()
        for task in loops:
            task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        try:
            await scheduler.aggregator.flush(engine)
            await mark_worker_stopped(engine, worker_id=settings.worker_id)
        except StoreUnavailableError as exc:
            log.warning("worker_stop_bookkeeping_failed err=%s", _task_error(exc))
        await engine.dispose()
        log.info("worker_stop worker=%s at=%s", settings.worker_id, iso_utc_ms())


def main(argv: list[str] | None = None) -> None:
    _ = argv
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
