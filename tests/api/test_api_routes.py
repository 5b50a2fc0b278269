"""
API tests: health, runs, tasks and watermarks
"""

import asyncio
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from api.dependencies import get_db, get_pipeline_definition, get_scheduler, get_watermark_store
from api.main import app
from core.database import build_engine, build_session_maker
from core.exceptions import ConfigurationError, SchemaMismatch
from ingestion.scheduler import TaskOutcome, TaskScheduler
from ingestion.watermarks import WatermarkStore
from models.base import Base
from schemas.source import PipelineDefinition, RunRequest
from tests.factories import make_source


async def create_tables(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
def api(tmp_path):
    """TestClient over a file-backed SQLite database (no workers, no triggers)"""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    asyncio.run(create_tables(engine))
    session_maker = build_session_maker(engine)
    scheduler = TaskScheduler(session_maker)
    watermark_store = WatermarkStore(session_maker)
    definition = PipelineDefinition(sources=[make_source("orders"), make_source("customers")])

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    app.dependency_overrides[get_watermark_store] = lambda: watermark_store
    app.dependency_overrides[get_pipeline_definition] = lambda: definition

    yield SimpleNamespace(
        client=TestClient(app),
        scheduler=scheduler,
        watermark_store=watermark_store,
        definition=definition,
    )

    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


def submit_orders_run(api):
    request = RunRequest(sources=[make_source("orders")])
    return asyncio.run(api.scheduler.submit(request))


def fail_extract(api, handle):
    async def _fail():
        task = await api.scheduler.poll("worker-1")
        await api.scheduler.complete(task.id, TaskOutcome.failure(SchemaMismatch("missing id")))
        return task.id
    return asyncio.run(_fail())


class TestHealthEndpoint:
    """Tests for /health"""

    def test_health_check(self, api):
        submit_orders_run(api)

        response = api.client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["tasks_by_state"] == {"pending": 3}
        assert data["last_run"]["status"] == "pending"

    def test_failed_tasks_degrade_health(self, api):
        handle = submit_orders_run(api)
        fail_extract(api, handle)

        data = api.client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["tasks_by_state"] == {"failed": 1, "blocked": 2}

    def test_request_id_is_echoed(self, api):
        response = api.client.get("/health", headers={"X-Request-ID": "abc123"})

        assert response.headers["X-Request-ID"] == "abc123"
        assert "X-API-Latency-ms" in response.headers

    def test_root(self, api):
        response = api.client.get("/")
        assert response.status_code == 200
        assert response.json()["endpoints"]["runs"] == "/runs"


class TestRunEndpoints:
    """Tests for /runs and /tasks"""

    def test_submit_run_for_all_sources(self, api):
        response = api.client.post("/runs")

        assert response.status_code == 202
        data = response.json()
        assert set(data["task_ids"]) == {
            "extract:orders", "stage:orders", "load:orders",
            "extract:customers", "stage:customers", "load:customers",
        }

        detail = api.client.get(f"/runs/{data['run_id']}").json()
        assert detail["trigger"] == "manual"
        assert detail["trigger_ref"].startswith("api:")
        assert detail["status"] == "pending"

    def test_submit_run_for_subset(self, api):
        response = api.client.post("/runs", json={"source_ids": ["customers"], "trigger_ref": "backfill"})

        assert response.status_code == 202
        assert set(response.json()["task_ids"]) == {"extract:customers", "stage:customers", "load:customers"}

    def test_submit_run_unknown_source(self, api):
        response = api.client.post("/runs", json={"source_ids": ["invoices"]})

        assert response.status_code == 422
        assert "invoices" in response.json()["detail"]

    def test_submit_run_without_definition(self, api):
        def missing_definition():
            raise ConfigurationError("Pipeline definition not found: pipeline.yaml")

        app.dependency_overrides[get_pipeline_definition] = missing_definition

        response = api.client.post("/runs")

        assert response.status_code == 503
        assert response.json()["error"] == "Pipeline not configured"

    def test_list_runs(self, api):
        submit_orders_run(api)
        submit_orders_run(api)

        data = api.client.get("/runs").json()
        assert data["count"] == 2

        assert api.client.get("/runs", params={"status": "succeeded"}).json()["count"] == 0
        assert api.client.get("/runs", params={"limit": 0}).status_code == 422

    def test_run_detail(self, api):
        handle = submit_orders_run(api)

        response = api.client.get(f"/runs/{handle.run_id}")

        assert response.status_code == 200
        tasks = {task["name"]: task for task in response.json()["tasks"]}
        assert tasks["load:orders"]["depends_on"] == [handle.task_ids["stage:orders"]]
        assert tasks["extract:orders"]["state"] == "pending"

    def test_run_not_found(self, api):
        assert api.client.get("/runs/does-not-exist").status_code == 404
        assert api.client.post("/runs/does-not-exist/cancel").status_code == 404

    def test_cancel_run(self, api):
        handle = submit_orders_run(api)

        response = api.client.post(f"/runs/{handle.run_id}/cancel")

        assert response.status_code == 200
        assert response.json() == {"run_id": handle.run_id, "cancelled": 3, "flagged": 0}
        assert api.client.get(f"/runs/{handle.run_id}").json()["status"] == "cancelled"

    def test_task_detail_with_events(self, api):
        handle = submit_orders_run(api)
        task_id = fail_extract(api, handle)

        response = api.client.get(f"/tasks/{task_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "failed"
        assert data["attempts"] == 1
        assert data["last_error"]["error_type"] == "SchemaMismatch"
        assert [e["to_state"] for e in data["events"]] == ["pending", "running", "failed"]

    def test_task_not_found(self, api):
        assert api.client.get("/tasks/999").status_code == 404
        assert api.client.post("/tasks/999/retrigger").status_code == 404

    def test_retrigger_failed_task(self, api):
        handle = submit_orders_run(api)
        task_id = fail_extract(api, handle)

        response = api.client.post(f"/tasks/{task_id}/retrigger")

        assert response.status_code == 202
        data = response.json()
        assert data["retry_of"] == task_id
        assert data["state"] == "pending"
        assert api.client.get(f"/tasks/{task_id}").json()["superseded_by"] == data["id"]
        assert api.client.get(f"/runs/{handle.run_id}").json()["status"] == "running"

    def test_retrigger_pending_task_conflicts(self, api):
        handle = submit_orders_run(api)

        response = api.client.post(f"/tasks/{handle.task_ids['extract:orders']}/retrigger")

        assert response.status_code == 409


class TestWatermarkEndpoints:
    """Tests for /watermarks"""

    def test_set_and_read_watermark(self, api):
        response = api.client.post(
            "/watermarks/orders/reset",
            json={"kind": "integer", "value": 100, "reason": "backfill from 100"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "source_id": "orders",
            "previous": None,
            "current": {"kind": "integer", "value": "100", "sequence": 0},
        }

        data = api.client.get("/watermarks/orders").json()
        assert data["value"] == "100"
        assert data["advanced_by"] == "operator"
        assert data["note"] == "backfill from 100"
        assert len(api.client.get("/watermarks").json()) == 1

    def test_clear_watermark(self, api):
        api.client.post("/watermarks/orders/reset", json={"kind": "integer", "value": 100, "reason": "set"})

        response = api.client.post("/watermarks/orders/reset", json={"reason": "full reload"})

        assert response.json()["previous"]["value"] == "100"
        assert response.json()["current"] is None
        assert api.client.get("/watermarks/orders").status_code == 404

    def test_watermark_not_found(self, api):
        assert api.client.get("/watermarks/nothing").status_code == 404

    def test_invalid_reset(self, api):
        # Value without a kind
        response = api.client.post("/watermarks/orders/reset", json={"value": 5, "reason": "x"})
        assert response.status_code == 422

        response = api.client.post(
            "/watermarks/orders/reset",
            json={"kind": "integer", "value": "abc", "reason": "x"}
        )
        assert response.status_code == 422
