"""
Channel adaptor contract.

An adaptor translates between one OTA family's wire format and the canonical
records of the ledger. It is identified by its ``category`` string and only
it ever sees decrypted credentials.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from channel_core.config import ADAPTOR_TIMEOUT_SECONDS
from channel_core.errors import AdaptorError
from channel_core.schemas.channels import ChannelConfig
from channel_core.schemas.reservations import NormalizedReservation


@dataclass(frozen=True)
class PushRecord:
    """One canonical (date, room type) update sent to a channel."""

    date: date
    channel_room_type_id: str
    rate_plan_id: str
    availability: int
    rate: float
    currency: str
    restrictions: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "channel_room_type_id": self.channel_room_type_id,
            "rate_plan_id": self.rate_plan_id,
            "availability": self.availability,
            "rate": self.rate,
            "currency": self.currency,
            "restrictions": dict(self.restrictions),
        }


class PushStatus(str, Enum):
    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class PushResult:
    """
    Outcome of a push: ``ok``, ``partial`` (some records refused) or
    ``failed`` with a failure kind.
    """

    status: PushStatus
    attempted: int
    accepted: int = 0
    errors: list[str] = field(default_factory=list)
    failure_kind: Optional[str] = None
    retryable: bool = True

    @classmethod
    def ok(cls, attempted: int) -> "PushResult":
        return cls(PushStatus.OK, attempted=attempted, accepted=attempted)

    @classmethod
    def partial(cls, attempted: int, accepted: int, errors: list[str]) -> "PushResult":
        return cls(
            PushStatus.PARTIAL,
            attempted=attempted,
            accepted=accepted,
            errors=errors,
            failure_kind=AdaptorError.REJECTED,
        )

    @classmethod
    def failed(
        cls, attempted: int, failure_kind: str, error: str, retryable: bool = True
    ) -> "PushResult":
        return cls(
            PushStatus.FAILED,
            attempted=attempted,
            errors=[error],
            failure_kind=failure_kind,
            retryable=retryable,
        )

    @property
    def is_ok(self) -> bool:
        return self.status == PushStatus.OK

    @property
    def error_message(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None


@dataclass(frozen=True)
class ConnectionCheck:
    ok: bool
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EndpointCheck:
    ok: bool
    latency_ms: float
    error: Optional[str] = None


class ChannelAdaptor(ABC):
    """
    Base class for OTA adaptors.

    Subclasses set ``category`` and implement the wire calls. ``push_updates``
    must not raise for channel-side failures; it reports them in the result.
    """

    category: str = ""

    def __init__(self, base_url: Optional[str] = None, timeout: float = ADAPTOR_TIMEOUT_SECONDS):
        self.base_url = (base_url or self.default_base_url()).rstrip("/")
        self.timeout = timeout

    def default_base_url(self) -> str:
        return ""

    @abstractmethod
    def test_connection(self, credentials: dict[str, Any]) -> ConnectionCheck:
        """Verify credentials against the channel."""

    @abstractmethod
    def push_updates(
        self, channel: ChannelConfig, credentials: dict[str, Any], records: list[PushRecord]
    ) -> PushResult:
        """Send canonical availability, rate and restriction records."""

    @abstractmethod
    def pull_reservations(
        self, channel: ChannelConfig, credentials: dict[str, Any], since: Optional[datetime]
    ) -> list[NormalizedReservation]:
        """Fetch reservation messages received by the channel since ``since``."""

    def fetch_rates(
        self,
        channel: ChannelConfig,
        credentials: dict[str, Any],
        channel_room_type_id: str,
        dates: list[date],
    ) -> dict[date, float]:
        """
        Rates the channel currently publishes, for parity checks.

        Adaptors without a rate read-back return an empty mapping, which
        excludes the channel from the check.
        """
        return {}

    def parse_webhook(self, channel: ChannelConfig, payload: dict[str, Any]) -> list[NormalizedReservation]:
        """Translate a webhook body into reservation messages."""
        raise AdaptorError(
            f"{self.category} does not deliver webhooks", AdaptorError.REJECTED, retryable=False
        )

    def test_endpoint(self, channel: ChannelConfig, credentials: dict[str, Any]) -> EndpointCheck:
        """Time a connection check against the channel."""
        start = time.time()
        try:
            check = self.test_connection(credentials)
        except AdaptorError as e:
            return EndpointCheck(ok=False, latency_ms=(time.time() - start) * 1000, error=e.message)
        latency_ms = (time.time() - start) * 1000
        error = None if check.ok else str(check.details.get("error", "connection refused"))
        return EndpointCheck(ok=check.ok, latency_ms=latency_ms, error=error)
