"""HTTP tests for the reports router and healthcheck.

WHAT:
    POST /clients/{client_id}/metrics/resolve returns the resolution result
    with provenance; malformed ranges are 422; upstream failures stay 200.

REFERENCES:
    - adreport/routers/reports.py
    - adreport/main.py
"""

import pytest
from fastapi.testclient import TestClient

from adreport.exceptions import TokenExpiredError
from adreport.main import create_app
from adreport.state import get_resolution_engine


@pytest.fixture
def client(engine):
    app = create_app()
    app.dependency_overrides[get_resolution_engine] = lambda: engine
    return TestClient(app)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestResolveEndpoint:
    def test_current_month_is_resolved_live_then_cached(self, client, meta_adapter):
        body = {"start": "2025-09-01", "end": "2025-09-30", "platform": "meta"}

        first = client.post("/clients/client-1/metrics/resolve", json=body)
        second = client.post("/clients/client-1/metrics/resolve", json=body)

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["debug"]["source"] == "live-api"
        assert first.json()["data"]["stats"]["total_spend"] == 100.0
        assert second.json()["debug"]["source"] == "cache-fresh"
        assert second.json()["validation"]["is_consistent"] is True
        assert meta_adapter.calls == 1

    def test_start_after_end_is_unprocessable(self, client, meta_adapter):
        response = client.post(
            "/clients/client-1/metrics/resolve",
            json={"start": "2025-09-30", "end": "2025-09-01", "platform": "meta"},
        )

        assert response.status_code == 422
        assert meta_adapter.calls == 0

    def test_unknown_platform_is_unprocessable(self, client):
        response = client.post(
            "/clients/client-1/metrics/resolve",
            json={"start": "2025-09-01", "end": "2025-09-30", "platform": "tiktok"},
        )

        assert response.status_code == 422

    def test_upstream_failure_is_reported_in_body(self, client, meta_adapter):
        """WHAT: A platform error is success=false with the platform message, not a 5xx."""
        meta_adapter.errors = [TokenExpiredError("meta", message="Error validating access token")]

        response = client.post(
            "/clients/client-1/metrics/resolve",
            json={"start": "2025-09-01", "end": "2025-09-30", "platform": "meta", "force_fresh": True},
        )

        assert response.status_code == 200
        payload = response.json()
        assert payload["success"] is False
        assert payload["data"] is None
        assert payload["debug"]["reason"] == "Error validating access token"
