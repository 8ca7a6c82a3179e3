from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from erp_jobs.jobs.enqueue import submit_job
from erp_jobs.jobs.errors import InvalidJobStateError, JobNotFoundError
from erp_jobs.jobs.templates import create_template, get_template, get_template_by_code, list_templates

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def test_template_defaults_flow_into_submitted_jobs(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        template = await create_template(
            engine,
            name="Payroll export",
            code="payroll.export",
            handler="payroll.export",
            default_payload={"format": "csv"},
            default_priority="high",
            default_timeout_seconds=900,
            default_max_retries=5,
            queue="payroll",
            tags=["finance", "monthly"],
            now=T0,
        )
        assert template["tags"] == ["finance", "monthly"]
        assert template["default_priority"] == 2

        job_id = await submit_job(engine, template_id=template["id"], now=T0)
        async with engine.connect() as conn:
            row = (await conn.exec_driver_sql("SELECT * FROM jobs WHERE id=:id", {"id": job_id})).mappings().one()
        assert row["handler"] == "payroll.export"
        assert row["queue"] == "payroll"
        assert row["priority"] == 2
        assert row["timeout_seconds"] == 900
        assert row["max_retries"] == 5
        assert row["payload_json"] == '{"format":"csv"}'
        assert row["tags"] == ",finance,monthly,"

        overridden = await submit_job(engine, template_id=template["id"], payload={"format": "xlsx"}, priority=0, now=T0)
        async with engine.connect() as conn:
            row = (await conn.exec_driver_sql("SELECT * FROM jobs WHERE id=:id", {"id": overridden})).mappings().one()
        assert row["payload_json"] == '{"format":"xlsx"}'
        assert row["priority"] == 0
        await engine.dispose()

    asyncio.run(_run())


def test_template_codes_are_unique_and_lookups(open_store) -> None:
    async def _run() -> None:
        engine = await open_store()
        t = await create_template(engine, name="A", code="a", handler="h", now=T0)
        with pytest.raises(InvalidJobStateError):
            await create_template(engine, name="A2", code="a", handler="h", now=T0)
        with pytest.raises(ValueError):
            await create_template(engine, name="", code="b", handler="h", now=T0)

        assert (await get_template(engine, template_id=t["id"]))["code"] == "a"
        assert (await get_template_by_code(engine, code="a"))["id"] == t["id"]
        assert await get_template(engine, template_id="missing") is None
        assert [x["code"] for x in await list_templates(engine)] == ["a"]

        with pytest.raises(JobNotFoundError):
            await submit_job(engine, template_id="missing", now=T0)
        await engine.dispose()

    asyncio.run(_run())
