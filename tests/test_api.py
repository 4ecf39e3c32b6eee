"""
Test API endpoints.

This module tests the HTTP endpoints with various scenarios including:
- Happy path scenarios
- Error conditions
- Validation errors
- Lifespan wiring of the engine and the snapshot store

The engine is driven by a ManualClock scheduler; tests move time forward
from the test thread and flush the snapshot recorder before reading the
store.

Version: 0.1.0
"""

import random

from fastapi.testclient import TestClient

from flowops.config import Settings, TriggerPolicy
from flowops.engine import PipelineEngine
from flowops.main import create_app
from flowops.models import LogEntry, LogEntryLevel, Metric, Snapshot, Step
from flowops.models import Run as RunModel
from flowops.scheduler import ManualClock, Scheduler
from flowops.storage import InMemoryStore


def _build(policy=TriggerPolicy.queue, store=None):
    settings = Settings(
        simulation_autorun=False,
        failure_probability=0.0,
        trigger_policy=policy,
    )
    engine = PipelineEngine(
        settings, scheduler=Scheduler(ManualClock()), rng=random.Random(0)
    )
    store = store or InMemoryStore()
    return create_app(settings, engine=engine, store=store), engine, store


class TestAPIEndpoints:
    """Test the read endpoints."""

    def setup_method(self):
        self.app, self.engine, self.store = _build()

    def test_health(self):
        with TestClient(self.app) as client:
            response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == "0.1.0"
        assert data["engine_running"] is True
        assert data["storage"] == "InMemoryStore"

    def test_latest_pipeline(self):
        with TestClient(self.app) as client:
            response = client.get("/api/pipeline/latest")

        assert response.status_code == 200
        data = response.json()
        assert data["run"]["id"] == 1
        assert data["run"]["status"] == "running"
        assert "startTime" in data["run"]
        assert [step["name"] for step in data["steps"]] == ["Code Push", "Build", "Test", "Deploy"]
        assert data["steps"][0]["runId"] == 1
        assert data["steps"][0]["status"] == "running"

    def test_latest_pipeline_not_found(self):
        # Without the lifespan nothing has been recorded
        client = TestClient(self.app)
        response = client.get("/api/pipeline/latest")

        assert response.status_code == 404
        assert response.json()["detail"] == "No pipeline run recorded yet"

    def test_latest_pipeline_after_completion(self):
        with TestClient(self.app) as client:
            self.engine.scheduler.advance(9.6)
            self.app.state.recorder.flush()
            data = client.get("/api/pipeline/latest").json()

        assert data["run"]["status"] == "success"
        assert all(step["duration"] in (2, 3, 4) for step in data["steps"])
        assert data["run"]["endTime"] is not None

    def test_metrics(self):
        with TestClient(self.app) as client:
            response = client.get("/api/metrics")

        assert response.status_code == 200
        labels = [metric["label"] for metric in response.json()]
        assert labels == [
            "Success Rate",
            "Total Deployments",
            "Failed Deployments",
            "Avg Deploy Time",
        ]

    def test_logs_oldest_first(self):
        with TestClient(self.app) as client:
            self.engine.scheduler.advance(6)
            self.app.state.recorder.flush()
            response = client.get("/api/logs", params={"limit": 5})

        assert response.status_code == 200
        entries = response.json()
        assert len(entries) == 5
        ids = [entry["id"] for entry in entries]
        assert ids == sorted(ids)
        assert all(entry["level"] in ("INFO", "SUCCESS", "ERROR") for entry in entries)

    def test_logs_limit_validation(self):
        with TestClient(self.app) as client:
            too_small = client.get("/api/logs", params={"limit": 0})
            too_large = client.get("/api/logs", params={"limit": 51})

        assert too_small.status_code == 422
        assert too_large.status_code == 422
        detail = too_small.json()["detail"]
        assert detail[0]["loc"] == ["query", "limit"]

    def test_runs_newest_first(self):
        with TestClient(self.app) as client:
            self.engine.scheduler.advance(10.6)
            self.app.state.recorder.flush()
            response = client.get("/api/runs")

        runs = response.json()
        assert [run["id"] for run in runs] == [2, 1]
        assert runs[0]["status"] == "running"
        assert runs[1]["status"] == "success"

    def test_chart(self):
        with TestClient(self.app) as client:
            response = client.get("/api/chart")

        assert response.status_code == 200
        samples = response.json()
        assert len(samples) == 6
        assert {"time", "success", "latency"} <= set(samples[0])

    def test_lifespan_stops_engine(self):
        with TestClient(self.app):
            assert self.engine.running

        assert not self.engine.running
        assert self.engine.scheduler.pending == 0

    def test_store_not_updated_after_shutdown(self):
        with TestClient(self.app):
            pass
        logs = self.store.get_logs()

        self.engine.state.add_log(LogEntryLevel.INFO, "after shutdown")
        assert self.store.get_logs() == logs


class TestTriggerEndpoint:
    """Test manual deployment triggers over HTTP."""

    def test_queue_policy(self):
        app, engine, _ = _build(TriggerPolicy.queue)
        with TestClient(app) as client:
            response = client.post("/api/pipeline/trigger")

        assert response.status_code == 202
        assert response.json() == {"outcome": "queued", "runId": 1}

    def test_reject_policy(self):
        app, engine, _ = _build(TriggerPolicy.reject)
        with TestClient(app) as client:
            response = client.post("/api/pipeline/trigger")

        assert response.status_code == 409
        assert "already in progress" in response.json()["detail"]

    def test_restart_policy(self):
        app, engine, _ = _build(TriggerPolicy.restart)
        with TestClient(app) as client:
            response = client.post("/api/pipeline/trigger")
            app.state.recorder.flush()
            latest = client.get("/api/pipeline/latest").json()

        assert response.status_code == 202
        assert response.json() == {"outcome": "restarted", "runId": 2}
        assert latest["run"]["id"] == 2

    def test_idle_engine_starts_run(self):
        app, engine, _ = _build(TriggerPolicy.reject)
        with TestClient(app) as client:
            engine.scheduler.advance(9.6)
            response = client.post("/api/pipeline/trigger")

        assert response.status_code == 202
        assert response.json() == {"outcome": "started", "runId": 2}

    def test_stopped_engine(self):
        app, engine, _ = _build()
        with TestClient(app) as client:
            engine.stop()
            response = client.post("/api/pipeline/trigger")

        assert response.status_code == 503


class TestRestoreFromStore:
    """Test that a restarted service continues the persisted history."""

    def test_ids_continue(self):
        store = InMemoryStore()
        steps = [Step(id=i, run_id=3, name=f"Stage {i}", status="success") for i in range(9, 13)]
        store.record(
            Snapshot(
                run=RunModel.from_steps(3, steps),
                steps=steps,
                logs=[
                    LogEntry(
                        id=77,
                        level=LogEntryLevel.SUCCESS,
                        message="Deploy completed successfully",
                        timestamp="2024-01-01T00:00:00Z",
                    )
                ],
                metrics=[Metric(id=2, label="Total Deployments", value="500")],
            )
        )
        app, engine, _ = _build(store=store)

        with TestClient(app) as client:
            latest = client.get("/api/pipeline/latest").json()
            metrics = client.get("/api/metrics").json()

        assert latest["run"]["id"] == 4
        assert latest["steps"][0]["id"] == 13
        assert engine.get_state().logs[0].id == 78
        total = int(metrics[0]["value"])
        assert 501 <= total <= 503
