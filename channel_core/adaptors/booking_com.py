"""
Booking.com adaptor.

Inventory, rates and restrictions are pushed as one ``inventory_updates``
batch per room type; reservations are pulled from the hotel's reservation
feed. Requests authenticate with HTTP Basic credentials.
"""

from datetime import date, datetime
from typing import Any, Optional

import structlog

from channel_core.adaptors.base import (
    ChannelAdaptor,
    ConnectionCheck,
    PushRecord,
    PushResult,
)
from channel_core.config import BOOKINGCOM_API_BASE
from channel_core.errors import AdaptorError
from channel_core.network.client import send_request
from channel_core.schemas.channels import ChannelConfig
from channel_core.schemas.reservations import NormalizedReservation, ReservationMessageType

logger = structlog.get_logger(__name__)

_MESSAGE_TYPES = {
    "new": ReservationMessageType.NEW,
    "confirmed": ReservationMessageType.NEW,
    "modified": ReservationMessageType.MODIFIED,
    "cancelled": ReservationMessageType.CANCELLED,
}


def _auth(credentials: dict[str, Any]) -> tuple[str, str]:
    try:
        return credentials["username"], credentials["password"]
    except KeyError as e:
        raise AdaptorError(
            f"Booking.com credentials missing {e.args[0]}", AdaptorError.AUTH, retryable=False
        ) from e


def _hotel(credentials: dict[str, Any]) -> str:
    hotel_id = credentials.get("hotel_id")
    if not hotel_id:
        raise AdaptorError("Booking.com credentials missing hotel_id", AdaptorError.AUTH, retryable=False)
    return str(hotel_id)


def normalize_reservation(data: dict[str, Any]) -> NormalizedReservation:
    """
    Convert one Booking.com reservation object into a NormalizedReservation.

    Args:
        data (dict): Reservation as delivered by the feed or a webhook

    Returns:
        NormalizedReservation: Canonical message
    """
    guest = dict(data.get("guest_details") or {})
    if data.get("special_requests"):
        guest["special_requests"] = data["special_requests"]
    if data.get("confirmation_code"):
        guest["confirmation_code"] = data["confirmation_code"]

    return NormalizedReservation(
        channel_reservation_id=str(data.get("booking_id") or data.get("reservation_id") or ""),
        message_type=_MESSAGE_TYPES.get(str(data.get("status", "new")).lower(), ReservationMessageType.NEW),
        channel_room_type_id=str(data["room_type_id"]),
        check_in=date.fromisoformat(data["checkin_date"]),
        check_out=date.fromisoformat(data["checkout_date"]),
        rooms_count=int(data.get("rooms") or 1),
        total_amount=float(data.get("total_amount") or 0),
        currency=data.get("currency") or "INR",
        guest=guest,
        # Booking.com collects payment itself
        payment_status="paid",
        channel_amendment_id=data.get("modification_id"),
        raw_payload=data,
    )


class BookingComAdaptor(ChannelAdaptor):
    category = "booking.com"

    def default_base_url(self) -> str:
        return BOOKINGCOM_API_BASE

    def test_connection(self, credentials: dict[str, Any]) -> ConnectionCheck:
        try:
            info = send_request(
                "GET",
                f"{self.base_url}/v1/hotels/{_hotel(credentials)}/info",
                endpoint="booking.com:info",
                auth=_auth(credentials),
                timeout=min(self.timeout, 10),
            )
        except AdaptorError as e:
            return ConnectionCheck(ok=False, details={"error": e.message, "failure_kind": e.failure_kind})
        return ConnectionCheck(ok=True, details={"hotel_info": info})

    def push_updates(
        self, channel: ChannelConfig, credentials: dict[str, Any], records: list[PushRecord]
    ) -> PushResult:
        if not records:
            return PushResult.ok(0)
        body = {
            "inventory_updates": [
                {
                    "date": record.date.isoformat(),
                    "room_type_id": record.channel_room_type_id,
                    "rate_plan_id": record.rate_plan_id,
                    "availability": record.availability,
                    "rate": record.rate,
                    "currency": record.currency,
                    "restrictions": record.restrictions,
                }
                for record in records
            ]
        }
        try:
            response = send_request(
                "POST",
                f"{self.base_url}/v1/hotels/{_hotel(credentials)}/inventory",
                endpoint="booking.com:inventory",
                json=body,
                auth=_auth(credentials),
                timeout=self.timeout,
            )
        except AdaptorError as e:
            return PushResult.failed(len(records), e.failure_kind, e.message, e.retryable)

        errors = [
            f"{err.get('date', '?')}: {err.get('message', 'rejected')}"
            for err in response.get("errors") or []
        ]
        if errors:
            accepted = int(response.get("processed", len(records) - len(errors)))
            return PushResult.partial(len(records), accepted, errors)
        return PushResult.ok(len(records))

    def pull_reservations(
        self, channel: ChannelConfig, credentials: dict[str, Any], since: Optional[datetime]
    ) -> list[NormalizedReservation]:
        params = {"since": since.isoformat()} if since else None
        response = send_request(
            "GET",
            f"{self.base_url}/v1/hotels/{_hotel(credentials)}/reservations",
            endpoint="booking.com:reservations",
            params=params,
            auth=_auth(credentials),
            timeout=self.timeout,
        )
        return self._normalize_all(response.get("reservations") or [])

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
            f"{self.base_url}/v1/hotels/{_hotel(credentials)}/rates",
            endpoint="booking.com:rates",
            params={
                "room_type_id": channel_room_type_id,
                "from": min(dates).isoformat(),
                "to": max(dates).isoformat(),
            },
            auth=_auth(credentials),
            timeout=self.timeout,
        )
        wanted = set(dates)
        rates: dict[date, float] = {}
        for entry in response.get("rates") or []:
            day = date.fromisoformat(entry["date"])
            if day in wanted:
                rates[day] = float(entry["rate"])
        return rates

    def parse_webhook(self, channel: ChannelConfig, payload: dict[str, Any]) -> list[NormalizedReservation]:
        items = payload.get("reservations")
        if items is None:
            items = [payload.get("reservation", payload)]
        return self._normalize_all(items)

    def _normalize_all(self, items: list[dict[str, Any]]) -> list[NormalizedReservation]:
        reservations = []
        for item in items:
            try:
                reservations.append(normalize_reservation(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "reservation_unparseable",
                    channel="booking.com",
                    booking_id=item.get("booking_id") if isinstance(item, dict) else None,
                    error=str(e),
                )
        return reservations
