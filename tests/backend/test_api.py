import pytest

from callstack_anomaly.backend.app import create_app
from callstack_anomaly.backend.services.analysis_service import AnalysisService


@pytest.fixture
def client(isolated_settings):
    from callstack_anomaly.backend.routes import api as api_routes

    api_routes.service = AnalysisService()
    app = create_app()
    app.config.update({"TESTING": True})
    with app.test_client() as client:
        yield client


def _run_to_completion(client):
    response = client.post("/api/analysis", json={})
    assert response.status_code == 202
    from callstack_anomaly.backend.routes import api as api_routes

    assert api_routes.service.wait(timeout=30)


def test_health_endpoint(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_status_before_any_run(client):
    response = client.get("/api/analysis/status")
    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "idle"
    assert data["running"] is False
    assert data["report"] is None


def test_results_missing_before_any_run(client):
    assert client.get("/api/analysis/results").status_code == 404


def test_start_analysis_and_fetch_results(client):
    _run_to_completion(client)

    status = client.get("/api/analysis/status").get_json()
    assert status["status"] == "completed"
    assert status["report"]["state"] == "done"

    results = client.get("/api/analysis/results").get_json()
    assert len(results["Results"]) == 7
    assert set(results["Info"]) == {"min", "max", "threshold"}
    assert results["anomalies"]


def test_invalid_overrides_are_rejected(client):
    response = client.post("/api/analysis", json={"overrides": {"n_value": 500}})
    assert response.status_code == 400
    response = client.post("/api/analysis", json={"overrides": {"analysis_variant": "model_apply"}})
    assert response.status_code == 400


def test_invalid_trace_is_rejected(client):
    response = client.post("/api/analysis", json={"trace": {"calls": [{"address": "x", "start": 0}]}})
    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid trace"


def test_cancel_without_running_analysis(client):
    response = client.post("/api/analysis/cancel")
    assert response.status_code == 200
    assert response.get_json() == {"cancelled": False}


def test_arrays_info_and_admin_delete(client, monkeypatch):
    _run_to_completion(client)
    info = client.get("/api/analysis/arrays").get_json()
    assert info["exists"] is True

    monkeypatch.setenv("ADMIN_API_KEY", "secret")
    assert client.delete("/api/analysis/arrays").status_code == 401
    response = client.delete("/api/analysis/arrays", headers={"X-API-KEY": "secret"})
    assert response.status_code == 200
    assert response.get_json() == {"deleted": True}
    assert client.get("/api/analysis/arrays").get_json()["exists"] is False


def test_metrics_endpoint(client):
    _run_to_completion(client)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert b"analysis_pipeline_runs_total" in response.data
