"""
Expedia adaptor.

Updates are grouped per room type and rate plan into a single availability
request; bookings come from the property's booking feed. Requests carry the
partner API key as a bearer token.
"""

from collections import defaultdict
from datetime import date, datetime
from typing import Any, Optional

import structlog

from channel_core.adaptors.base import (
    ChannelAdaptor,
    ConnectionCheck,
    PushRecord,
    PushResult,
)
from channel_core.config import EXPEDIA_API_BASE
from channel_core.errors import AdaptorError
from channel_core.network.client import send_request
from channel_core.schemas.channels import ChannelConfig
from channel_core.schemas.reservations import NormalizedReservation, ReservationMessageType

logger = structlog.get_logger(__name__)

_MESSAGE_TYPES = {
    "booked": ReservationMessageType.NEW,
    "modified": ReservationMessageType.MODIFIED,
    "cancelled": ReservationMessageType.CANCELLED,
}


def _headers(credentials: dict[str, Any]) -> dict[str, str]:
    api_key = credentials.get("api_key")
    if not api_key:
        raise AdaptorError("Expedia credentials missing api_key", AdaptorError.AUTH, retryable=False)
    return {"Authorization": f"Bearer {api_key}", "Accept": "application/json"}


def _property(credentials: dict[str, Any]) -> str:
    property_id = credentials.get("property_id")
    if not property_id:
        raise AdaptorError("Expedia credentials missing property_id", AdaptorError.AUTH, retryable=False)
    return str(property_id)


def normalize_booking(data: dict[str, Any]) -> NormalizedReservation:
    """Convert one Expedia booking object into a NormalizedReservation."""
    amount = data.get("totalAmount") or {}
    return NormalizedReservation(
        channel_reservation_id=str(data["id"]),
        message_type=_MESSAGE_TYPES.get(str(data.get("status", "booked")).lower(), ReservationMessageType.NEW),
        channel_room_type_id=str(data["roomTypeId"]),
        check_in=date.fromisoformat(data["checkInDate"]),
        check_out=date.fromisoformat(data["checkOutDate"]),
        rooms_count=int(data.get("roomCount") or 1),
        total_amount=float(amount.get("value") or 0),
        currency=amount.get("currency") or "INR",
        guest=dict(data.get("primaryGuest") or {}),
        payment_status="paid" if data.get("paymentModel") == "ExpediaCollect" else "pending",
        channel_amendment_id=data.get("amendmentId"),
        raw_payload=data,
    )


class ExpediaAdaptor(ChannelAdaptor):
    category = "expedia"

    def default_base_url(self) -> str:
        return EXPEDIA_API_BASE

    def test_connection(self, credentials: dict[str, Any]) -> ConnectionCheck:
        try:
            info = send_request(
                "GET",
                f"{self.base_url}/properties/{_property(credentials)}",
                endpoint="expedia:property",
                headers=_headers(credentials),
                timeout=min(self.timeout, 10),
            )
        except AdaptorError as e:
            return ConnectionCheck(ok=False, details={"error": e.message, "failure_kind": e.failure_kind})
        return ConnectionCheck(ok=True, details={"property": info.get("entity", info)})

    def push_updates(
        self, channel: ChannelConfig, credentials: dict[str, Any], records: list[PushRecord]
    ) -> PushResult:
        if not records:
            return PushResult.ok(0)

        grouped: dict[tuple[str, str], list[PushRecord]] = defaultdict(list)
        for record in records:
            grouped[(record.channel_room_type_id, record.rate_plan_id)].append(record)

        body = {
            "roomTypes": [
                {
                    "id": room_type_id,
                    "ratePlanId": rate_plan_id,
                    "dates": [
                        {
                            "date": r.date.isoformat(),
                            "totalInventoryAvailable": r.availability,
                            "rate": {"amount": r.rate, "currency": r.currency},
                            "closed": r.restrictions.get("closed", False),
                            "restrictions": {
                                "closedToArrival": r.restrictions.get("closed_to_arrival", False),
                                "closedToDeparture": r.restrictions.get("closed_to_departure", False),
                                "minLOS": r.restrictions.get("min_length_of_stay"),
                                "maxLOS": r.restrictions.get("max_length_of_stay"),
                            },
                        }
                        for r in sorted(items, key=lambda r: r.date)
                    ],
                }
                for (room_type_id, rate_plan_id), items in grouped.items()
            ]
        }
        try:
            response = send_request(
                "PUT",
                f"{self.base_url}/properties/{_property(credentials)}/availability",
                endpoint="expedia:availability",
                json=body,
                headers=_headers(credentials),
                timeout=self.timeout,
            )
        except AdaptorError as e:
            return PushResult.failed(len(records), e.failure_kind, e.message, e.retryable)

        rejected = [r for r in response.get("results") or [] if r.get("status") != "accepted"]
        if rejected:
            errors = [f"{r.get('date', '?')}: {r.get('reason', 'rejected')}" for r in rejected]
            return PushResult.partial(len(records), len(records) - len(rejected), errors)
        return PushResult.ok(len(records))

    def pull_reservations(
        self, channel: ChannelConfig, credentials: dict[str, Any], since: Optional[datetime]
    ) -> list[NormalizedReservation]:
        params = {"since": since.isoformat()} if since else None
        response = send_request(
            "GET",
            f"{self.base_url}/properties/{_property(credentials)}/bookings",
            endpoint="expedia:bookings",
            params=params,
            headers=_headers(credentials),
            timeout=self.timeout,
        )
        return self._normalize_all(response.get("entity") or [])

    def fetch_rates(
        self,
        channel: ChannelConfig,
        credentials: dict[str, Any],
        channel_room_type_id: str,
        dates: list[date],
    ) -> dict[date, float]:
        if not dates:
            return {}
        response = send_request(
            "GET",
            f"{self.base_url}/properties/{_property(credentials)}/roomTypes/{channel_room_type_id}/rates",
            endpoint="expedia:rates",
            params={"from": min(dates).isoformat(), "to": max(dates).isoformat()},
            headers=_headers(credentials),
            timeout=self.timeout,
        )
        wanted = set(dates)
        return {
            date.fromisoformat(entry["date"]): float(entry["amount"])
            for entry in response.get("entity") or []
            if date.fromisoformat(entry["date"]) in wanted
        }

    def parse_webhook(self, channel: ChannelConfig, payload: dict[str, Any]) -> list[NormalizedReservation]:
        items = payload.get("entity")
        if items is None:
            items = [payload.get("booking", payload)]
        if isinstance(items, dict):
            items = [items]
        return self._normalize_all(items)

    def _normalize_all(self, items: list[dict[str, Any]]) -> list[NormalizedReservation]:
        bookings = []
        for item in items:
            try:
                bookings.append(normalize_booking(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "reservation_unparseable",
                    channel="expedia",
                    booking_id=item.get("id") if isinstance(item, dict) else None,
                    error=str(e),
                )
        return bookings
