"""
API tests using FastAPI's TestClient. Background jobs run against the fake
workbook and finish before the request returns.
"""

import functools

import pytest
from fastapi.testclient import TestClient

import main
from conftest import FakeSheetsClient
from orchestrator import run_analysis_with_retry
from resume_cache import InMemoryResumeCache


INPUTS = {
    "name": "Jane Doe",
    "income": "$100,000",
    "state": "California",
    "filingStatus": "Single",
}


@pytest.fixture
def shared_cache():
    return InMemoryResumeCache()


@pytest.fixture
def clients():
    return []


@pytest.fixture
def api(monkeypatch, shared_cache, clients):
    """TestClient whose jobs use fake workbooks and no retry delay."""
    def create_client():
        return clients.pop(0) if clients else FakeSheetsClient()

    monkeypatch.setattr(main, "create_client", create_client)
    monkeypatch.setattr(main, "get_resume_cache", lambda: shared_cache)
    monkeypatch.setattr(
        main, "run_analysis_with_retry", functools.partial(run_analysis_with_retry, retry_delay=0)
    )
    return TestClient(main.app)


class TestReferenceEndpoints:
    """Test health and reference data."""

    def test_root(self, api):
        response = api.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_reports_backend_configuration(self, api, monkeypatch):
        monkeypatch.delenv("GOOGLE_APPS_SCRIPT_URL", raising=False)
        components = api.get("/api/health").json()["components"]
        assert components["calculation_backend"] == "not_configured"

    def test_states(self, api):
        states = api.get("/api/reference/states").json()["states"]
        assert len(states) == 51

    def test_scenarios(self, api):
        data = api.get("/api/reference/scenarios").json()
        assert [s["number"] for s in data["scenarios"]] == [1, 2, 3, 4, 5, 6]
        assert data["plans"]["full"] == [1, 2, 3, 4, 5]
        assert data["filing_statuses"]["MarriedJointly"] == "Married Filing Jointly"


class TestAnalysisJobs:
    """Test the analysis job lifecycle."""

    def test_completed_analysis(self, api):
        """A submitted analysis runs in the background and reports all scenarios."""
        response = api.post("/api/analyses", json={"inputs": INPUTS})
        assert response.status_code == 200
        job_id = response.json()["job_id"]

        job = api.get(f"/api/analyses/{job_id}").json()
        assert job["status"] == "completed"
        assert job["progress"] == 100
        assert job["message"] == "Analysis complete!"
        assert job["results"]["scenario1"]["agi"] == 100000
        assert set(job["results"]["scenario3"]) == {"min", "max"}
        assert job["results"]["scenario6"] is None

    def test_custom_selection(self, api):
        response = api.post("/api/analyses", json={"inputs": INPUTS, "scenarios": [2]})
        job = api.get(f"/api/analyses/{response.json()['job_id']}").json()

        assert job["status"] == "completed"
        assert job["results"]["scenario2"] is not None
        assert job["results"]["scenario3"] is None

    def test_failed_then_retried(self, api, clients):
        """A failed job reports its error; retry resumes from the cache."""
        # Both automatic attempts share one client, so it fails twice
        clients.append(FakeSheetsClient(fail_on_output="scenario5_max"))
        job_id = api.post("/api/analyses", json={"inputs": INPUTS, "plan": "scenario5_only"}).json()["job_id"]

        job = api.get(f"/api/analyses/{job_id}").json()
        assert job["status"] == "failed"
        assert "HTTP 500" in job["error"]

        healthy = FakeSheetsClient()
        clients.append(healthy)
        response = api.post(f"/api/analyses/{job_id}/retry")
        assert response.status_code == 200

        job = api.get(f"/api/analyses/{job_id}").json()
        assert job["status"] == "completed"
        assert "error" not in job
        assert healthy.output_reads == ["scenario5_max", "scenario5_min"]

    def test_retry_requires_failed_job(self, api):
        job_id = api.post("/api/analyses", json={"inputs": INPUTS}).json()["job_id"]
        assert api.post(f"/api/analyses/{job_id}/retry").status_code == 409

    def test_unknown_job(self, api):
        assert api.get("/api/analyses/missing").status_code == 404
        assert api.post("/api/analyses/missing/retry").status_code == 404

    def test_unknown_plan(self, api):
        response = api.post("/api/analyses", json={"inputs": INPUTS, "plan": "everything"})
        assert response.status_code == 400

    def test_unknown_scenario(self, api):
        response = api.post("/api/analyses", json={"inputs": INPUTS, "scenarios": [9]})
        assert response.status_code == 400

    def test_invalid_inputs(self, api):
        """Validation errors are rejected before a job is created."""
        bad = dict(INPUTS, state="Atlantis")
        assert api.post("/api/analyses", json={"inputs": bad}).status_code == 422
