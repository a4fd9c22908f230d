"""
Integration tests for the explicit hotel sync trigger.
"""

from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from channel_core.dependencies import get_runtime
from channel_core.main import app
from channel_core.runtime import CoreRuntime
from channel_core.services.ledger import PRIORITY_HIGH


@pytest.fixture
def client(runtime: CoreRuntime) -> Iterator[TestClient]:
    """Test client serving the test runtime."""
    app.dependency_overrides[get_runtime] = lambda: runtime
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.mark.integration
def test_sync_queues_every_room_type(client: TestClient, runtime: CoreRuntime) -> None:
    """The trigger queues the hotel's room types at high priority."""
    response = client.post("/hotels/hotel-1/sync")

    assert response.status_code == 202
    assert response.json() == {"hotel_id": "hotel-1", "room_types_queued": 1}
    [entry] = runtime.coordinator.queue.snapshot()
    assert (entry.room_type_id, entry.priority) == ("deluxe", PRIORITY_HIGH)


@pytest.mark.integration
def test_sync_unknown_hotel(client: TestClient, runtime: CoreRuntime) -> None:
    """Hotels without room types answer 404 and queue nothing."""
    response = client.post("/hotels/nowhere/sync")

    assert response.status_code == 404
    assert len(runtime.coordinator.queue) == 0
