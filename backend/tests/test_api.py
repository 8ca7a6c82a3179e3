from __future__ import annotations

import asyncio
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from erp_jobs.core.config import load_settings
from erp_jobs.db.engine import create_engine
from erp_jobs.db.models.base import Base
from erp_jobs.main import create_app


async def _create_schema(db_url: str) -> None:
    engine = create_engine(db_url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()


@pytest.fixture
def client(db_url: str) -> Iterator[TestClient]:
    asyncio.run(_create_schema(db_url))
    app = create_app(settings=load_settings({"DATABASE_URL": db_url, "WORKER_ID": "api-test"}))
    with TestClient(app) as c:
        yield c


def _submit(client: TestClient, **body) -> str:
    resp = client.post("/jobs", json={"handler": "reports.build", **body})
    assert resp.status_code == 200, resp.text
    return resp.json()["job_id"]


def test_submit_then_get_and_list(client: TestClient) -> None:
    job_id = _submit(client, payload={"month": "2024-12"}, tags=["monthly"], priority="high")

    resp = client.get(f"/jobs/{job_id}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    item = body["item"]
    assert item["status"] == "pending"
    assert item["payload"] == {"month": "2024-12"}
    assert item["tags"] == ["monthly"]
    assert item["priority"] == 2

    resp = client.get("/jobs", params={"tag": "monthly", "status": "pending"})
    assert resp.status_code == 200
    body = resp.json()
    assert [j["id"] for j in body["items"]] == [job_id]
    assert body["next_cursor"] == ""


def test_list_paging_follows_cursor(client: TestClient) -> None:
    for _ in range(3):
        _submit(client)
    first = client.get("/jobs", params={"limit": 2}).json()
    assert len(first["items"]) == 2
    assert first["next_cursor"]
    second = client.get("/jobs", params={"limit": 2, "cursor": first["next_cursor"]}).json()
    assert len(second["items"]) == 1
    assert second["next_cursor"] == ""


@pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 500}, {"status": "sleeping"}, {"cursor": "nope"}])
def test_list_rejects_bad_query(client: TestClient, params: dict) -> None:
    resp = client.get("/jobs", params=params)
    assert resp.status_code == 400
    assert resp.json()["code"] == "BAD_REQUEST"


def test_missing_job_uses_error_envelope(client: TestClient) -> None:
    resp = client.get("/jobs/does-not-exist", headers={"X-Request-Id": "req_test"})
    assert resp.status_code == 404
    body = resp.json()
    assert body["ok"] is False
    assert body["code"] == "NOT_FOUND"
    assert body["request_id"] == "req_test"
    assert resp.headers["X-Request-Id"] == "req_test"


def test_submit_validation_errors(client: TestClient) -> None:
    resp = client.post("/jobs", json={"handler": "reports.build", "kind": "sometimes"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "BAD_REQUEST"
    assert resp.json()["details"]["errors"]

    resp = client.post("/jobs", json={"payload": {}})
    assert resp.status_code == 400
    assert resp.json()["code"] == "BAD_REQUEST"

    resp = client.post("/jobs", content=b"not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400

    resp = client.post("/jobs", json={"handler": "reports.build", "kind": "cron", "cron_expression": "61 * * * *"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_EXPRESSION"


def test_cancel_and_state_conflicts(client: TestClient) -> None:
    job_id = _submit(client)
    resp = client.post(f"/jobs/{job_id}/cancel", json={"reason": "not needed"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "cancelled"
    assert body["cancel_requested"] is False
    assert client.get(f"/jobs/{job_id}").json()["item"]["cancel_reason"] == "not needed"

    resp = client.post(f"/jobs/{job_id}/cancel")
    assert resp.status_code == 409
    assert resp.json()["code"] == "INVALID_STATE"

    resp = client.post(f"/jobs/{job_id}/rerun")
    assert resp.status_code == 200
    copy_id = resp.json()["job_id"]
    assert client.get(f"/jobs/{copy_id}").json()["item"]["rerun_of"] == job_id

    assert client.delete(f"/jobs/{job_id}").json()["deleted"] is True
    assert client.get(f"/jobs/{job_id}").status_code == 404


def test_pause_resume_and_trigger(client: TestClient) -> None:
    job_id = _submit(client, scheduled_at="2099-01-01T00:00:00Z")
    assert client.post(f"/jobs/{job_id}/pause").json()["status"] == "paused"
    assert client.post(f"/jobs/{job_id}/resume").json()["status"] == "scheduled"

    event_id = _submit(client, kind="event_triggered")
    resp = client.post(f"/jobs/{event_id}/trigger", json={"payload": {"file": "a.csv"}})
    assert resp.status_code == 200
    item = client.get(f"/jobs/{event_id}").json()["item"]
    assert item["payload"] == {"file": "a.csv"}
    assert item["next_run_at"] is not None

    resp = client.post(f"/jobs/{job_id}/trigger")
    assert resp.status_code == 409


def test_dependencies_endpoints(client: TestClient) -> None:
    first = _submit(client)
    second = _submit(client, depends_on=[{"job_id": first, "type": "on_success"}])

    items = client.get(f"/jobs/{second}/dependencies").json()["items"]
    assert [d["depends_on_job_id"] for d in items] == [first]
    assert client.get(f"/jobs/{second}").json()["item"]["next_run_at"] is None

    resp = client.post(f"/jobs/{first}/dependencies", json={"job_id": second})
    assert resp.status_code == 409
    assert resp.json()["code"] == "DEPENDENCY_CYCLE"

    assert client.get(f"/jobs/{first}/executions").json()["items"] == []


def test_queue_endpoints(client: TestClient) -> None:
    resp = client.put("/jobs/queues/reports", json={"max_concurrent_jobs": 2, "description": "monthly reports"})
    assert resp.status_code == 200
    assert resp.json()["item"]["max_concurrent_jobs"] == 2

    assert client.post("/jobs/queues/reports/pause").json()["item"]["status"] == "paused"
    assert client.post("/jobs/queues/reports/resume").json()["item"]["status"] == "active"
    assert client.post("/jobs/queues/reports/stop").json()["item"]["status"] == "stopped"

    resp = client.post("/jobs", json={"handler": "reports.build", "queue": "reports"})
    assert resp.status_code == 409
    assert resp.json()["code"] == "QUEUE_STOPPED"

    names = [q["name"] for q in client.get("/jobs/queues").json()["items"]]
    assert "reports" in names
    assert client.get("/jobs/queues/nowhere").status_code == 404
    assert client.get("/jobs/workers").json()["items"] == []


def test_schedule_endpoints(client: TestClient) -> None:
    resp = client.post(
        "/jobs/schedules",
        json={
            "name": "nightly export",
            "schedule_kind": "daily",
            "handler": "exports.nightly",
            "specific_times": ["02:00"],
            "timezone": "Europe/Berlin",
        },
    )
    assert resp.status_code == 200, resp.text
    item = resp.json()["item"]
    assert item["enabled"] is True
    assert item["next_scheduled_run"] is not None
    schedule_id = item["id"]

    assert client.post(f"/jobs/schedules/{schedule_id}/disable").json()["item"]["enabled"] is False
    assert client.get("/jobs/schedules", params={"enabled": "false"}).json()["items"][0]["id"] == schedule_id
    assert client.get("/jobs/schedules", params={"enabled": "maybe"}).status_code == 400
    assert client.post(f"/jobs/schedules/{schedule_id}/enable").json()["item"]["enabled"] is True

    assert client.delete(f"/jobs/schedules/{schedule_id}").json()["deleted"] is True
    assert client.get(f"/jobs/schedules/{schedule_id}").status_code == 404

    resp = client.post(
        "/jobs/schedules",
        json={"name": "broken", "schedule_kind": "cron", "handler": "x", "cron_expression": "* * *"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_EXPRESSION"


def test_template_endpoints(client: TestClient) -> None:
    resp = client.post(
        "/jobs/templates",
        json={"name": "Invoice run", "code": "invoice-run", "handler": "invoices.send", "default_max_retries": 5},
    )
    assert resp.status_code == 200, resp.text
    template_id = resp.json()["item"]["id"]

    job_id = client.post("/jobs", json={"template_id": template_id}).json()["job_id"]
    item = client.get(f"/jobs/{job_id}").json()["item"]
    assert item["handler"] == "invoices.send"
    assert item["max_retries"] == 5

    resp = client.post(
        "/jobs/templates", json={"name": "Again", "code": "invoice-run", "handler": "invoices.send"}
    )
    assert resp.status_code == 409
    assert [t["id"] for t in client.get("/jobs/templates").json()["items"]] == [template_id]
    assert client.get("/jobs/templates/missing").status_code == 404


def test_bulk_endpoints(client: TestClient) -> None:
    resp = client.post("/jobs/bulk", json={"handler": "emails.send", "payloads": [{"to": "a"}, {"to": "b"}]})
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 2
    bulk_id = body["bulk_id"]

    item = client.get(f"/jobs/bulk/{bulk_id}").json()["item"]
    assert item["total"] == 2
    assert item["status"] == "pending"
    assert "payloads_json" not in item

    assert client.post(f"/jobs/bulk/{bulk_id}/cancel").json()["ok"] is True
    assert client.get("/jobs/bulk/missing").status_code == 404
    assert client.post("/jobs/bulk", json={"handler": "emails.send", "payloads": []}).status_code == 400


def test_healthz_and_metrics(client: TestClient) -> None:
    _submit(client)

    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["db_ok"] is True
    assert body["worker_ok"] is False
    assert body["worker"]["reason"] == "no_heartbeat"
    assert body["jobs"]["counts"]["pending"] == 1
    assert body["jobs"]["counts"]["running"] == 0
    assert resp.headers["X-Request-Id"] == body["request_id"]

    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert 'erp_jobs_status_count{status="pending"} 1.0' in resp.text
