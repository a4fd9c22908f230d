"""
Shared fixtures: an in-memory SQLite store with one seeded hotel, a
scriptable channel adaptor and a fully wired runtime.
"""

from __future__ import annotations

import os
import threading
from datetime import date, datetime
from typing import Any, Callable, Optional

from cryptography.fernet import Fernet

# Configuration is read at import time, so the environment goes first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CREDENTIALS_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DRY_RUN", "true")

import pytest  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402

from channel_core.adaptors.base import (  # noqa: E402
    ChannelAdaptor,
    ConnectionCheck,
    PushRecord,
    PushResult,
)
from channel_core.adaptors.registry import AdaptorRegistry  # noqa: E402
from channel_core.config import Settings  # noqa: E402
from channel_core.credentials import CredentialCipher, generate_key  # noqa: E402
from channel_core.db.engine import create_db_engine  # noqa: E402
from channel_core.db.schema import create_all  # noqa: E402
from channel_core.db.writers.hotels import upsert_hotels, upsert_room_types  # noqa: E402
from channel_core.errors import AdaptorError  # noqa: E402
from channel_core.runtime import CoreRuntime  # noqa: E402
from channel_core.schemas.channels import (  # noqa: E402
    ChannelConfig,
    ChannelRegistration,
    RateParitySettings,
    RoomMapping,
)
from channel_core.schemas.reservations import NormalizedReservation  # noqa: E402
from channel_core.utils.datetime import utc_now  # noqa: E402

HOTEL_ID = "hotel-1"
ROOM_TYPE_ID = "deluxe"
CHANNEL_ROOM_TYPE_ID = "DLX"


class FakeAdaptor(ChannelAdaptor):
    """
    In-memory adaptor. Records every push, serves queued reservations and
    scripted parity rates, and can be told to fail pushes.
    """

    category = "fake"

    def __init__(self) -> None:
        super().__init__(base_url="http://fake.test")
        self.pushes: list[tuple[str, list[PushRecord]]] = []
        self.push_error: Optional[AdaptorError] = None
        self.rates: dict[str, dict[date, float]] = {}
        self.reservations: list[NormalizedReservation] = []
        self.pull_error: Optional[AdaptorError] = None
        self.connection_ok = True
        self._lock = threading.Lock()

    def test_connection(self, credentials: dict[str, Any]) -> ConnectionCheck:
        if not self.connection_ok:
            return ConnectionCheck(ok=False, details={"error": "bad credentials"})
        return ConnectionCheck(ok=True, details={"token": credentials.get("token")})

    def push_updates(
        self, channel: ChannelConfig, credentials: dict[str, Any], records: list[PushRecord]
    ) -> PushResult:
        with self._lock:
            self.pushes.append((channel.channel_id, list(records)))
        if self.push_error is not None:
            raise self.push_error
        return PushResult.ok(len(records))

    def pull_reservations(
        self, channel: ChannelConfig, credentials: dict[str, Any], since: Optional[datetime]
    ) -> list[NormalizedReservation]:
        if self.pull_error is not None:
            raise self.pull_error
        return list(self.reservations)

    def fetch_rates(
        self,
        channel: ChannelConfig,
        credentials: dict[str, Any],
        channel_room_type_id: str,
        dates: list[date],
    ) -> dict[date, float]:
        published = self.rates.get(channel.channel_id, {})
        return {day: rate for day, rate in published.items() if day in dates}

    def parse_webhook(self, channel: ChannelConfig, payload: dict[str, Any]) -> list[NormalizedReservation]:
        return [NormalizedReservation.model_validate(item) for item in payload.get("reservations", [])]


@pytest.fixture
def now() -> datetime:
    """Current UTC time without microseconds."""
    return utc_now().replace(microsecond=0)


@pytest.fixture
def db_engine() -> Engine:
    """Fresh in-memory database with every table created."""
    test_engine = create_db_engine("sqlite://")
    create_all(test_engine)
    return test_engine


@pytest.fixture
def seeded_engine(db_engine: Engine) -> Engine:
    """Database with one hotel and a 10-room deluxe room type priced at 1000."""
    upsert_hotels(db_engine, [{"id": HOTEL_ID, "name": "Seaview", "currency": "INR"}])
    upsert_room_types(
        db_engine,
        HOTEL_ID,
        [{"id": ROOM_TYPE_ID, "name": "Deluxe", "base_price": 1000, "total_rooms": 10}],
    )
    return db_engine


@pytest.fixture
def fake_adaptor() -> FakeAdaptor:
    """Scriptable adaptor registered under the ``fake`` category."""
    return FakeAdaptor()


@pytest.fixture
def runtime(seeded_engine: Engine, fake_adaptor: FakeAdaptor) -> CoreRuntime:
    """Runtime wired against the seeded store and the fake adaptor; loops not started."""
    return CoreRuntime(
        seeded_engine,
        Settings(),
        adaptors=AdaptorRegistry([fake_adaptor]),
        cipher=CredentialCipher(generate_key()),
    )


@pytest.fixture
def register_channel(runtime: CoreRuntime, now: datetime) -> Callable[..., ChannelConfig]:
    """
    Factory that registers a connected fake channel.

    Registration queues the whole hotel for sync; the queue is drained so
    tests start from an empty queue.
    """

    def _register(
        channel_id: str = "fake-1",
        mappings: Optional[list[RoomMapping]] = None,
        rate_parity: Optional[RateParitySettings] = None,
        **settings: Any,
    ) -> ChannelConfig:
        registration = ChannelRegistration(
            hotel_id=HOTEL_ID,
            channel_id=channel_id,
            name=f"Fake OTA {channel_id}",
            category=FakeAdaptor.category,
            credentials={"token": f"secret-{channel_id}"},
            settings=settings or {},
            room_mappings=(
                mappings
                if mappings is not None
                else [RoomMapping(hotel_room_type_id=ROOM_TYPE_ID, channel_room_type_id=CHANNEL_ROOM_TYPE_ID)]
            ),
            rate_parity=rate_parity or RateParitySettings(),
        )
        channel = runtime.channels.register(registration)
        runtime.coordinator.tick(now)
        return channel

    return _register


@pytest.fixture
def channel(register_channel: Callable[..., ChannelConfig]) -> ChannelConfig:
    """A connected fake channel mapping deluxe to DLX."""
    return register_channel()
