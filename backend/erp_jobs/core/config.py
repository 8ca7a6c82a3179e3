from __future__ import annotations

import os
import secrets
import socket
from dataclasses import dataclass
from typing import Mapping

from erp_jobs.core.logging import get_logger

log = get_logger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./data/jobs.db"


@dataclass(frozen=True, slots=True)
class Settings:
    app_env: str
    database_url: str
    worker_id: str
    queues: tuple[str, ...]
    tick_interval_s: float
    default_batch: int
    max_concurrency: int
    heartbeat_ttl_s: float
    materializer_horizon_s: float
    materializer_interval_s: float
    reclaim_interval_s: float
    metrics_flush_interval_s: float
    bulk_chunk: int
    lease_min_s: int
    lease_max_s: int
    shutdown_grace_s: float
    default_queue_concurrency: int
    recurring_failure_limit: int
    handler_modules: tuple[str, ...] = ()

    @property
    def is_prod(self) -> bool:
        return self.app_env in {"prod", "production"}

    @property
    def heartbeat_interval_s(self) -> float:
        return max(1.0, self.heartbeat_ttl_s / 3.0)

    def lease_seconds(self, timeout_seconds: int | None) -> int:
        """Lease for a claimed job: twice its timeout, clamped to [lease_min_s, lease_max_s]."""
        timeout_i = int(timeout_seconds or 0)
        return max(int(self.lease_min_s), min(2 * timeout_i, int(self.lease_max_s)))


def _get(env: Mapping[str, str], key: str, default: str) -> str:
    value = env.get(key, default)
    return (value or "").strip()


def _get_int(env: Mapping[str, str], key: str, *, default: int, min_v: int, max_v: int) -> int:
    raw = _get(env, key, "")
    if not raw:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        log.warning("config_value_invalid key=%s value=%s", key, raw)
        return int(default)
    return max(int(min_v), min(value, int(max_v)))


def _get_float(env: Mapping[str, str], key: str, *, default: float, min_v: float, max_v: float) -> float:
    raw = _get(env, key, "")
    if not raw:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        log.warning("config_value_invalid key=%s value=%s", key, raw)
        return float(default)
    return max(float(min_v), min(value, float(max_v)))


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(3)}"


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env

    app_env = _get(env, "APP_ENV", "dev").lower()
    explicit_db = _get(env, "DATABASE_URL", "")
    database_url = explicit_db or DEFAULT_DATABASE_URL

    queues_raw = _get(env, "SCHEDULER_QUEUES", "")
    queues = tuple(dict.fromkeys(q.strip() for q in queues_raw.split(",") if q.strip()))
    modules_raw = _get(env, "SCHEDULER_HANDLER_MODULES", "")
    handler_modules = tuple(dict.fromkeys(m.strip() for m in modules_raw.split(",") if m.strip()))

    lease_min_s = _get_int(env, "SCHEDULER_LEASE_MIN_S", default=60, min_v=5, max_v=3600)
    lease_max_s = _get_int(env, "SCHEDULER_LEASE_MAX_S", default=3600, min_v=lease_min_s, max_v=24 * 3600)

    settings = Settings(
        app_env=app_env,
        database_url=database_url,
        worker_id=_get(env, "WORKER_ID", "") or _default_worker_id(),
        queues=queues,
        tick_interval_s=_get_int(env, "SCHEDULER_TICK_INTERVAL_MS", default=500, min_v=10, max_v=60_000) / 1000.0,
        default_batch=_get_int(env, "SCHEDULER_DEFAULT_BATCH", default=32, min_v=1, max_v=1000),
        max_concurrency=_get_int(env, "SCHEDULER_MAX_CONCURRENCY", default=20, min_v=1, max_v=1000),
        heartbeat_ttl_s=_get_float(env, "SCHEDULER_HEARTBEAT_TTL_S", default=30.0, min_v=3.0, max_v=3600.0),
        materializer_horizon_s=_get_float(
            env, "SCHEDULER_MATERIALIZER_HORIZON_S", default=300.0, min_v=0.0, max_v=7 * 24 * 3600.0
        ),
        materializer_interval_s=_get_float(
            env, "SCHEDULER_MATERIALIZER_INTERVAL_S", default=60.0, min_v=1.0, max_v=3600.0
        ),
        reclaim_interval_s=_get_float(env, "SCHEDULER_RECLAIM_INTERVAL_S", default=15.0, min_v=1.0, max_v=3600.0),
        metrics_flush_interval_s=_get_float(
            env, "SCHEDULER_METRICS_FLUSH_INTERVAL_S", default=60.0, min_v=1.0, max_v=3600.0
        ),
        bulk_chunk=_get_int(env, "SCHEDULER_BULK_CHUNK", default=500, min_v=1, max_v=100_000),
        lease_min_s=lease_min_s,
        lease_max_s=lease_max_s,
        shutdown_grace_s=_get_float(env, "SCHEDULER_SHUTDOWN_GRACE_S", default=30.0, min_v=0.0, max_v=3600.0),
        default_queue_concurrency=_get_int(
            env, "SCHEDULER_DEFAULT_QUEUE_CONCURRENCY", default=10, min_v=1, max_v=10_000
        ),
        recurring_failure_limit=_get_int(env, "SCHEDULER_RECURRING_FAILURE_LIMIT", default=0, min_v=0, max_v=10_000),
        handler_modules=handler_modules,
    )

    if settings.is_prod:
        missing: list[str] = []
        if not explicit_db:
            missing.append("DATABASE_URL")
        if missing:
            raise ValueError(f"Missing required env vars for prod: {', '.join(missing)}")

    return settings
