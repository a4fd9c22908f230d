"""
Integration tests for the channel webhook receiver.
"""

from __future__ import annotations

import base64
from datetime import date, datetime, timedelta
from typing import Any, Iterator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from channel_core.dependencies import get_runtime
from channel_core.main import app
from channel_core.runtime import CoreRuntime
from channel_core.schemas.channels import ChannelConfig

WEBHOOK_URL = "/hotels/hotel-1/channels/fake-1/webhooks"


def make_basic_auth_header(username: str, password: str) -> str:
    """Create HTTP Basic Auth header."""
    encoded = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("utf-8")
    return f"Basic {encoded}"


AUTH = {"Authorization": make_basic_auth_header("testuser", "testpass")}


@pytest.fixture
def webhook_app(runtime: CoreRuntime, monkeypatch: pytest.MonkeyPatch) -> Iterator[FastAPI]:
    """The app serving the test runtime, with webhook credentials configured."""
    monkeypatch.setattr("channel_core.config.WEBHOOK_USERNAME", "testuser")
    monkeypatch.setattr("channel_core.config.WEBHOOK_PASSWORD", "testpass")
    app.dependency_overrides[get_runtime] = lambda: runtime
    yield app
    app.dependency_overrides.clear()


def reservation(check_in: date, reservation_id: str = "R-1", room: str = "DLX") -> dict[str, Any]:
    """One normalized reservation as the fake channel sends it."""
    return {
        "channel_reservation_id": reservation_id,
        "channel_room_type_id": room,
        "check_in": check_in.isoformat(),
        "check_out": (check_in + timedelta(days=1)).isoformat(),
        "total_amount": 1000,
    }


async def post(webhook_app: FastAPI, url: str = WEBHOOK_URL, **kwargs: Any) -> Any:
    """POST to the app through the ASGI transport."""
    transport = ASGITransport(app=webhook_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        return await ac.post(url, **kwargs)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_webhook_missing_auth(webhook_app: FastAPI) -> None:
    """Requests without credentials are refused."""
    response = await post(webhook_app, json={"reservations": []})

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_webhook_invalid_auth(webhook_app: FastAPI) -> None:
    """Wrong credentials are refused."""
    response = await post(
        webhook_app,
        json={"reservations": []},
        headers={"Authorization": make_basic_auth_header("wrong", "credentials")},
    )

    assert response.status_code == 401


@pytest.mark.integration
@pytest.mark.asyncio
async def test_webhook_refused_without_configured_credentials(
    webhook_app: FastAPI, monkeypatch: pytest.MonkeyPatch
) -> None:
    """With no webhook credentials configured every request is refused."""
    monkeypatch.setattr("channel_core.config.WEBHOOK_PASSWORD", None)

    response = await post(webhook_app, json={"reservations": []}, headers=AUTH)

    assert response.status_code == 401


@pytest.mark.integration
@pytest.mark.asyncio
async def test_webhook_invalid_json(webhook_app: FastAPI, channel: ChannelConfig) -> None:
    """A body that is not a JSON object is a bad request."""
    response = await post(
        webhook_app, content=b"[1, 2", headers={**AUTH, "Content-Type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON"}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_webhook_unknown_channel(webhook_app: FastAPI) -> None:
    """Webhooks for channels that are not registered are answered with 404."""
    response = await post(webhook_app, json={"reservations": []}, headers=AUTH)

    assert response.status_code == 404
    assert response.json()["detail"]["kind"] == "not_found"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_webhook_acks_each_reservation(
    webhook_app: FastAPI, runtime: CoreRuntime, channel: ChannelConfig, now: datetime
) -> None:
    """Every reservation in the payload gets its own ACK or NACK."""
    check_in = now.date() + timedelta(days=7)

    response = await post(
        webhook_app,
        json={"reservations": [reservation(check_in), reservation(check_in, "R-2", room="PENTHOUSE")]},
        headers=AUTH,
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert [(r["channel_reservation_id"], r["ack"], r["status"]) for r in results] == [
        ("R-1", True, "created"),
        ("R-2", False, "mapping_missing"),
    ]
    assert runtime.bookings.get(results[0]["booking_id"]).channel_booking_id == "R-1"
    assert "X-Request-ID" in response.headers
