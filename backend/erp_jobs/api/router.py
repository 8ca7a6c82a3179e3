from __future__ import annotations

from fastapi import APIRouter

from erp_jobs.api import bulk, healthz, jobs, metrics, queues, schedules, templates

router = APIRouter()

# Fixed-prefix routers go first so "/jobs/{job_id}" cannot shadow them.
router.include_router(bulk.router)
router.include_router(schedules.router)
router.include_router(templates.router)
router.include_router(queues.router)
router.include_router(jobs.router)
router.include_router(healthz.router)
router.include_router(metrics.router)
