from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.core.ids import new_id
from erp_jobs.core.time import iso_utc_ms
from erp_jobs.db.models.job_templates import JobTemplate
from erp_jobs.db.session import create_sessionmaker, with_sqlite_busy_retry
from erp_jobs.jobs.errors import InvalidJobStateError
from erp_jobs.jobs.model import format_tags, parse_priority, parse_tags
from erp_jobs.jobs.queues import normalize_queue_name


def serialize_template(row: JobTemplate) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "code": row.code,
        "description": row.description,
        "handler": row.handler,
        "default_payload": json.loads(row.default_payload_json or "{}"),
        "default_priority": int(row.default_priority),
        "default_timeout_seconds": int(row.default_timeout_seconds),
        "default_max_retries": int(row.default_max_retries),
        "default_retry_delay_seconds": int(row.default_retry_delay_seconds),
        "queue": row.queue,
        "tags": parse_tags(row.tags),
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def create_template(
    engine: AsyncEngine,
    *,
    name: str,
    code: str,
    handler: str,
    default_payload: Any = None,
    default_priority: Any = None,
    default_timeout_seconds: int = 300,
    default_max_retries: int = 3,
    default_retry_delay_seconds: int = 60,
    queue: str | None = None,
    tags: Iterable[str] | None = None,
    description: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    name = (name or "").strip()
    code = (code or "").strip()
    handler = (handler or "").strip()
    if not name or not code or not handler:
        raise ValueError("name, code and handler are required")
    if int(default_timeout_seconds) <= 0:
        raise ValueError("default_timeout_seconds must be > 0")
    if int(default_max_retries) < 0 or int(default_retry_delay_seconds) < 0:
        raise ValueError("retry settings must be >= 0")

    now_s = iso_utc_ms(now or datetime.now(timezone.utc))
    Session = create_sessionmaker(engine)

    async def _op() -> dict[str, Any]:
        async with Session() as session:
            row = JobTemplate(
                id=new_id(),
                name=name,
                code=code,
                description=description,
                handler=handler,
                default_payload_json=json.dumps(
                    {} if default_payload is None else default_payload, ensure_ascii=False, separators=(",", ":")
                ),
                default_priority=int(parse_priority(default_priority)),
                default_timeout_seconds=int(default_timeout_seconds),
                default_max_retries=int(default_max_retries),
                default_retry_delay_seconds=int(default_retry_delay_seconds),
                queue=normalize_queue_name(queue),
                tags=format_tags(tags),
                created_at=now_s,
                updated_at=now_s,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise InvalidJobStateError(f"template code already exists: {code}") from exc
            return serialize_template(row)

    return await with_sqlite_busy_retry(_op)


async def get_template(engine: AsyncEngine, *, template_id: str) -> dict[str, Any] | None:
    Session = create_sessionmaker(engine)
    async with Session() as session:
        row = await session.get(JobTemplate, template_id)
        return serialize_template(row) if row is not None else None


async def get_template_by_code(engine: AsyncEngine, *, code: str) -> dict[str, Any] | None:
    Session = create_sessionmaker(engine)
    async with Session() as session:
        row = (await session.execute(sa.select(JobTemplate).where(JobTemplate.code == code))).scalar_one_or_none()
        return serialize_template(row) if row is not None else None


async def list_templates(engine: AsyncEngine) -> list[dict[str, Any]]:
    Session = create_sessionmaker(engine)
    async with Session() as session:
        rows = (await session.execute(sa.select(JobTemplate).order_by(JobTemplate.code.asc()))).scalars().all()
        return [serialize_template(r) for r in rows]
