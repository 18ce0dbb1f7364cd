"""
Application wiring: health check, mounted routers and the 500 handler.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from src.api.deps import get_ingestion_service
from src.api.main import app


class ExplodingService:
    def ingest(self, data):
        raise RuntimeError("unexpected")


@pytest.fixture
def client():
    # No context manager: lifespan (rules + migrations) is not run here
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "api"}


def test_routes_mounted() -> None:
    paths = {route.path for route in app.routes}
    assert "/api/analytics/event" in paths
    assert "/api/analytics/batch" in paths
    assert "/api/analytics/query/dashboard" in paths
    assert "/api/analytics/query/social" in paths


def test_ingest_through_app(client: TestClient, service) -> None:
    app.dependency_overrides[get_ingestion_service] = lambda: service
    response = client.post(
        "/api/analytics/event", json={"identityId": "U1", "scopeId": "P1", "kind": "scan"}
    )
    assert response.status_code == 202


def test_unhandled_error_is_generic_500(client: TestClient) -> None:
    app.dependency_overrides[get_ingestion_service] = lambda: ExplodingService()
    response = client.post("/api/analytics/event", json={"kind": "scan"})
    assert response.status_code == 500
    assert response.json() == {"ok": False, "detail": "Internal server error"}
