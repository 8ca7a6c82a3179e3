from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import Response
from prometheus_client.exposition import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.core.logging import get_logger
from erp_jobs.core.metrics import (
    METRICS_LAST_SCRAPE_SUCCESS,
    METRICS_SCRAPE_ERRORS_TOTAL,
    set_jobs_status_counts,
    set_queue_running_counts,
)

router = APIRouter()
log = get_logger(__name__)


async def query_job_status_counts(engine: AsyncEngine) -> dict[str, int]:
    sql = "SELECT status, COUNT(*) AS c FROM jobs GROUP BY status"
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql(sql)
        return {str(row[0]): int(row[1]) for row in result.fetchall()}


async def _query_queue_running(engine: AsyncEngine) -> dict[str, int]:
    sql = """
SELECT q.name, COUNT(j.id)
FROM job_queues q
LEFT JOIN jobs j ON j.queue = q.name AND j.status = 'running'
GROUP BY q.name
""".strip()
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql(sql)
        return {str(row[0]): int(row[1]) for row in result.fetchall()}


@router.get("/metrics")
async def metrics(request: Request) -> Response:
    engine: AsyncEngine | None = getattr(request.app.state, "engine", None)
    if engine is not None:
        try:
            set_jobs_status_counts(await query_job_status_counts(engine))
            set_queue_running_counts(await _query_queue_running(engine))
            METRICS_LAST_SCRAPE_SUCCESS.set(1)
        except Exception as exc:
            log.warning("metrics_scrape_failed err=%s", type(exc).__name__)
            METRICS_SCRAPE_ERRORS_TOTAL.inc()
            METRICS_LAST_SCRAPE_SUCCESS.set(0)

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
