"""
Unit tests for middleware components.
"""

from __future__ import annotations

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from channel_core.logging_config import current_correlation_id
from channel_core.middleware import REQUEST_ID_HEADER, RequestIDMiddleware


@pytest.fixture
def app_with_middleware() -> FastAPI:
    """Create FastAPI app with RequestIDMiddleware for testing."""
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware)

    @app.get("/test")
    async def test_endpoint(request: Request) -> dict[str, object]:
        """Test endpoint that returns the request ID and the bound correlation id."""
        return {"request_id": request.state.request_id, "correlation_id": current_correlation_id()}

    return app


@pytest.fixture
def client(app_with_middleware: FastAPI) -> TestClient:
    """FastAPI test client with middleware."""
    return TestClient(app_with_middleware)


@pytest.mark.unit
def test_request_id_middleware_adds_header(client: TestClient) -> None:
    """Test that RequestIDMiddleware adds X-Request-ID header to response."""
    response = client.get("/test")

    assert response.status_code == 200
    assert len(response.headers[REQUEST_ID_HEADER]) == 36  # UUID length


@pytest.mark.unit
def test_request_id_matches_state_and_log_context(client: TestClient) -> None:
    """The header, request.state and the log correlation id carry the same value."""
    response = client.get("/test")

    data = response.json()
    assert data["request_id"] == response.headers[REQUEST_ID_HEADER]
    assert data["correlation_id"] == data["request_id"]


@pytest.mark.unit
def test_incoming_request_id_is_reused(client: TestClient) -> None:
    """A caller-supplied X-Request-ID is kept end to end."""
    response = client.get("/test", headers={REQUEST_ID_HEADER: "trace-123"})

    assert response.headers[REQUEST_ID_HEADER] == "trace-123"
    assert response.json()["request_id"] == "trace-123"


@pytest.mark.unit
def test_request_id_middleware_unique_per_request(client: TestClient) -> None:
    """Test that each request gets a unique request ID."""
    response1 = client.get("/test")
    response2 = client.get("/test")

    assert response1.headers[REQUEST_ID_HEADER] != response2.headers[REQUEST_ID_HEADER]
