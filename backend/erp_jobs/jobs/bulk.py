"""Bulk requests: one stored payload list expanded into indexed jobs in chunks."""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from erp_jobs.core.ids import new_id
from erp_jobs.core.logging import get_logger
from erp_jobs.core.time import iso_utc_ms
from erp_jobs.db.session import with_sqlite_busy_retry
from erp_jobs.jobs.dependencies import resolve_dependents
from erp_jobs.jobs.enqueue import DEFAULT_MAX_RETRIES, insert_jobs_stmt
from erp_jobs.jobs.errors import InvalidJobStateError, JobNotFoundError
from erp_jobs.jobs.model import CANCEL_REASON_BULK, BulkStatus, JobKind, JobStatus, QueueStatus, parse_priority
from erp_jobs.jobs.queues import DEFAULT_MAX_CONCURRENT_JOBS, ensure_queue, normalize_queue_name, require_accepting_queue
from erp_jobs.jobs.terminal import record_terminal

log = get_logger(__name__)

DEFAULT_BULK_CHUNK = 500


def serialize_bulk(row: Any) -> dict[str, Any]:
    out = dict(row)
    out.pop("payloads_json", None)
    return out


async def submit_bulk(
    engine: AsyncEngine,
    *,
    handler: str,
    payloads: Sequence[Any],
    name: str | None = None,
    queue: str | None = None,
    priority: Any = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    timeout_seconds: int | None = None,
    created_by: str | None = None,
    bulk_id: str | None = None,
    default_queue_concurrency: int = DEFAULT_MAX_CONCURRENT_JOBS,
    now: datetime | None = None,
) -> str:
    """Store a bulk request; resubmitting an existing ``bulk_id`` is a no-op."""
    handler = (handler or "").strip()
    if not handler:
        raise ValueError("handler is required")
    if (timeout_seconds is not None and int(timeout_seconds) <= 0) or int(max_retries) < 0:
        raise ValueError("invalid retry/timeout settings")
    payloads_json = json.dumps(list(payloads), ensure_ascii=False, separators=(",", ":"))
    queue_v = normalize_queue_name(queue)
    priority_v = parse_priority(priority)
    request_id = bulk_id or new_id()
    now_s = iso_utc_ms(now or datetime.now(timezone.utc))

    async def _op() -> bool:
        async with engine.begin() as conn:
            await require_accepting_queue(
                conn, name=queue_v, now_s=now_s, max_concurrent_jobs=int(default_queue_concurrency)
            )
            result = await conn.exec_driver_sql(
                """
INSERT INTO bulk_requests (
  id, name, handler, payloads_json, queue, priority, max_retries, timeout_seconds, created_by,
  status, total, created, completed, failed, created_at, updated_at
) VALUES (
  :id, :name, :handler, :payloads_json, :queue, :priority, :max_retries, :timeout_seconds, :created_by,
  'pending', :total, 0, 0, 0, :now, :now
)
ON CONFLICT(id) DO NOTHING;
""".strip(),
                {
                    "id": request_id,
                    "name": (name or handler).strip(),
                    "handler": handler,
                    "payloads_json": payloads_json,
                    "queue": queue_v,
                    "priority": int(priority_v),
                    "max_retries": int(max_retries),
                    "timeout_seconds": int(timeout_seconds) if timeout_seconds is not None else None,
                    "created_by": created_by,
                    "total": len(payloads),
                    "now": now_s,
                },
            )
            return (result.rowcount or 0) > 0

    inserted = await with_sqlite_busy_retry(_op)
    if inserted:
        log.info("bulk_submitted id=%s handler=%s total=%s", request_id, handler, len(payloads))
    else:
        log.info("bulk_resubmitted id=%s", request_id)
    return request_id


async def _expand_chunk(
    conn: AsyncConnection,
    *,
    request_id: str,
    chunk: int,
    now_s: str,
    default_queue_concurrency: int,
) -> tuple[list[tuple[str, str]], bool]:
    """Insert the next chunk of one request. Returns ``(new jobs, done)``."""
    row = (
        await conn.exec_driver_sql(
            "SELECT * FROM bulk_requests WHERE id=:id AND status IN ('pending','processing')", {"id": request_id}
        )
    ).mappings().first()
    if row is None:
        return [], True

    queue = str(row["queue"])
    queue_status = await ensure_queue(
        conn, name=queue, now_s=now_s, max_concurrent_jobs=int(default_queue_concurrency)
    )
    if queue_status is QueueStatus.STOPPED:
        await conn.exec_driver_sql(
            "UPDATE bulk_requests SET status='failed', last_error=:err, updated_at=:now WHERE id=:id",
            {"err": f"queue {queue!r} is stopped", "now": now_s, "id": request_id},
        )
        log.warning("bulk_failed id=%s reason=queue_stopped", request_id)
        return [], True

    total = int(row["total"])
    start = int(row["created"])
    payloads = json.loads(str(row["payloads_json"]))
    end = min(total, start + max(1, int(chunk)))

    rows: list[dict[str, Any]] = []
    for index in range(start, end):
        rows.append(
            {
                "id": new_id(),
                "name": f"{row['name']}[{index}]",
                "handler": row["handler"],
                "payload_json": json.dumps(payloads[index], ensure_ascii=False, separators=(",", ":")),
                "queue": queue,
                "priority": int(row["priority"]),
                "kind": JobKind.ONE_TIME.value,
                "next_run_at": now_s,
                "status": JobStatus.PENDING.value,
                "max_retries": int(row["max_retries"]),
                "timeout_seconds": row["timeout_seconds"],
                "created_by": row["created_by"],
                "bulk_request_id": request_id,
                "bulk_index": index,
                "created_at": now_s,
                "updated_at": now_s,
            }
        )

    emitted: list[tuple[str, str]] = []
    if rows:
        await conn.execute(insert_jobs_stmt(rows, ignore_conflicts=True))
        ids = [r["id"] for r in rows]
        placeholders = ",".join(f":id{i}" for i in range(len(ids)))
        present = await conn.exec_driver_sql(
            f"SELECT id FROM jobs WHERE id IN ({placeholders})", {f"id{i}": v for i, v in enumerate(ids)}
        )
        emitted = [(str(r[0]), queue) for r in present.fetchall()]

    done = end >= total
    await conn.exec_driver_sql(
        "UPDATE bulk_requests SET created=:created, status=:status, updated_at=:now WHERE id=:id",
        {
            "created": end,
            "status": (BulkStatus.COMPLETED if done else BulkStatus.PROCESSING).value,
            "now": now_s,
            "id": request_id,
        },
    )
    return emitted, done


async def expand_bulk_requests(
    engine: AsyncEngine,
    *,
    chunk: int = DEFAULT_BULK_CHUNK,
    now: datetime | None = None,
    default_queue_concurrency: int = DEFAULT_MAX_CONCURRENT_JOBS,
) -> list[tuple[str, str]]:
    """Expand every open bulk request, one transaction per chunk.

    The ``created`` counter and the ``(bulk_request_id, bulk_index)`` key make a
    resumed expansion continue where a crashed one stopped.
    """
    now_s = iso_utc_ms(now or datetime.now(timezone.utc))
    async with engine.connect() as conn:
        open_ids = [
            str(r[0])
            for r in (
                await conn.exec_driver_sql(
                    "SELECT id FROM bulk_requests WHERE status IN ('pending','processing') ORDER BY created_at, id"
                )
            ).fetchall()
        ]

    emitted: list[tuple[str, str]] = []
    for request_id in open_ids:
        done = False
        while not done:

            async def _op(rid: str = request_id) -> tuple[list[tuple[str, str]], bool]:
                async with engine.begin() as conn:
                    return await _expand_chunk(
                        conn,
                        request_id=rid,
                        chunk=chunk,
                        now_s=now_s,
                        default_queue_concurrency=default_queue_concurrency,
                    )

            jobs, done = await with_sqlite_busy_retry(_op)
            emitted.extend(jobs)
        log.info("bulk_expanded id=%s", request_id)
    return emitted


async def cancel_bulk(engine: AsyncEngine, *, bulk_id: str, now: datetime | None = None) -> list[str]:
    """Stop expansion and cancel the request's jobs that are still Pending."""
    now_dt = now or datetime.now(timezone.utc)
    now_s = iso_utc_ms(now_dt)

    async def _op() -> list[str]:
        async with engine.begin() as conn:
            row = (
                await conn.exec_driver_sql("SELECT status FROM bulk_requests WHERE id=:id", {"id": bulk_id})
            ).first()
            if row is None:
                raise JobNotFoundError(f"bulk request not found: {bulk_id}")
            if str(row[0]) in {BulkStatus.CANCELLED.value, BulkStatus.FAILED.value}:
                raise InvalidJobStateError(f"bulk request is already {row[0]}")
            await conn.exec_driver_sql(
                "UPDATE bulk_requests SET status='cancelled', updated_at=:now WHERE id=:id",
                {"now": now_s, "id": bulk_id},
            )
            result = await conn.exec_driver_sql(
                """
UPDATE jobs
SET status='cancelled', cancel_reason=:reason, next_run_at=NULL, completed_at=:now, updated_at=:now
WHERE bulk_request_id=:id AND status='pending'
RETURNING id;
""".strip(),
                {"reason": CANCEL_REASON_BULK, "now": now_s, "id": bulk_id},
            )
            cancelled = [str(r[0]) for r in result.fetchall()]
            for job_id in cancelled:
                await record_terminal(conn, job_id=job_id, status=JobStatus.CANCELLED, now_s=now_s)
                await resolve_dependents(conn, prerequisite_id=job_id, status=JobStatus.CANCELLED, now=now_dt)
            return cancelled

    cancelled = await with_sqlite_busy_retry(_op)
    log.info("bulk_cancelled id=%s jobs=%s", bulk_id, len(cancelled))
    return cancelled


async def get_bulk(engine: AsyncEngine, *, bulk_id: str) -> dict[str, Any] | None:
    async with engine.connect() as conn:
        row = (
            await conn.exec_driver_sql("SELECT * FROM bulk_requests WHERE id=:id", {"id": bulk_id})
        ).mappings().first()
        return serialize_bulk(row) if row is not None else None
