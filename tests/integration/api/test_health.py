"""
Integration tests for health and readiness endpoints.
"""

from __future__ import annotations

from typing import Iterator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from channel_core.dependencies import get_db_engine
from channel_core.main import app


@pytest.fixture
def client(db_engine: Engine) -> Iterator[TestClient]:
    """Test client whose readiness probe checks the test database."""
    app.dependency_overrides[get_db_engine] = lambda: db_engine
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.mark.integration
def test_health_endpoint_returns_ok(client: TestClient) -> None:
    """Test that /health endpoint returns 200 with status ok."""
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.integration
def test_readiness_endpoint_returns_ready_when_db_accessible(client: TestClient) -> None:
    """Test that /ready endpoint returns 200 when database is accessible."""
    response = client.get("/ready")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"]["database"] == "ok"


@pytest.mark.integration
def test_readiness_endpoint_returns_503_when_db_not_accessible(client: TestClient) -> None:
    """Test that /ready endpoint returns 503 when database is not accessible."""
    with patch("channel_core.routes.health.check_engine_health") as mock_health:
        mock_health.return_value = False

        response = client.get("/ready")

    assert response.status_code == 503
    data = response.json()
    assert data["status"] == "not ready"
    assert data["checks"]["database"] == "failed"


@pytest.mark.integration
def test_health_endpoint_ignores_database_state(client: TestClient) -> None:
    """Liveness only reports that the process runs; dependencies are for /ready."""
    with patch("channel_core.routes.health.check_engine_health", return_value=False):
        response = client.get("/health")

    assert response.status_code == 200
