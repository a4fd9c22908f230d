"""
Unit tests for the Booking.com adaptor wire mapping.
"""

from __future__ import annotations

from datetime import date
from typing import Any
from unittest.mock import Mock, patch

import pytest

from channel_core.adaptors.base import PushRecord, PushStatus
from channel_core.adaptors.booking_com import BookingComAdaptor, normalize_reservation
from channel_core.errors import AdaptorError
from channel_core.schemas.reservations import ReservationMessageType

CREDENTIALS = {"username": "bdc-user", "password": "bdc-pass", "hotel_id": "4711"}


@pytest.fixture
def adaptor() -> BookingComAdaptor:
    """Adaptor pointed at a test base URL."""
    return BookingComAdaptor(base_url="https://bdc.test/")


def record(day: date, availability: int = 4) -> PushRecord:
    """One canonical update for room type DLX."""
    return PushRecord(
        date=day,
        channel_room_type_id="DLX",
        rate_plan_id="BAR",
        availability=availability,
        rate=1200.0,
        currency="INR",
        restrictions={"closed": False, "min_length_of_stay": 2},
    )


def feed_item(**overrides: Any) -> dict[str, Any]:
    """Reservation as it appears in the Booking.com feed."""
    data: dict[str, Any] = {
        "booking_id": 998877,
        "status": "new",
        "room_type_id": "DLX",
        "checkin_date": "2025-06-01",
        "checkout_date": "2025-06-03",
        "rooms": 2,
        "total_amount": "4800.00",
        "currency": "EUR",
        "guest_details": {"name": "Lena Vogel", "email": "lena@example.com"},
        "special_requests": "late arrival",
    }
    data.update(overrides)
    return data


@pytest.mark.unit
def test_normalize_reservation_maps_fields() -> None:
    """Feed fields land on the canonical message; payment is collected by the channel."""
    reservation = normalize_reservation(feed_item(modification_id="MOD-1", status="Modified"))

    assert reservation.channel_reservation_id == "998877"
    assert reservation.message_type == ReservationMessageType.MODIFIED
    assert (reservation.check_in, reservation.check_out) == (date(2025, 6, 1), date(2025, 6, 3))
    assert reservation.rooms_count == 2
    assert reservation.total_amount == 4800.0
    assert reservation.currency == "EUR"
    assert reservation.guest["special_requests"] == "late arrival"
    assert reservation.payment_status == "paid"
    assert reservation.channel_amendment_id == "MOD-1"
    assert reservation.raw_payload["booking_id"] == 998877


@pytest.mark.unit
def test_unknown_status_is_treated_as_new() -> None:
    """Statuses outside the known set default to a new reservation."""
    assert normalize_reservation(feed_item(status="pending_review")).message_type == ReservationMessageType.NEW


@pytest.mark.unit
@patch("channel_core.adaptors.booking_com.send_request")
def test_push_updates_sends_one_batch(mock_send: Mock, adaptor: BookingComAdaptor) -> None:
    """All records go out in one inventory request with Basic credentials."""
    mock_send.return_value = {"processed": 2}

    result = adaptor.push_updates(Mock(), CREDENTIALS, [record(date(2025, 6, 1)), record(date(2025, 6, 2), 3)])

    assert result.status == PushStatus.OK
    assert result.accepted == 2
    args, kwargs = mock_send.call_args
    assert args == ("POST", "https://bdc.test/v1/hotels/4711/inventory")
    assert kwargs["auth"] == ("bdc-user", "bdc-pass")
    updates = kwargs["json"]["inventory_updates"]
    assert [u["availability"] for u in updates] == [4, 3]
    assert updates[0]["restrictions"] == {"closed": False, "min_length_of_stay": 2}


@pytest.mark.unit
@patch("channel_core.adaptors.booking_com.send_request")
def test_push_updates_reports_partial_rejection(mock_send: Mock, adaptor: BookingComAdaptor) -> None:
    """Per-date errors in the response make the push partial."""
    mock_send.return_value = {"processed": 1, "errors": [{"date": "2025-06-02", "message": "rate below floor"}]}

    result = adaptor.push_updates(Mock(), CREDENTIALS, [record(date(2025, 6, 1)), record(date(2025, 6, 2))])

    assert result.status == PushStatus.PARTIAL
    assert result.accepted == 1
    assert result.error_message == "2025-06-02: rate below floor"
    assert result.is_ok is False


@pytest.mark.unit
@patch("channel_core.adaptors.booking_com.send_request")
def test_push_updates_turns_transport_errors_into_results(mock_send: Mock, adaptor: BookingComAdaptor) -> None:
    """Channel failures are reported in the result instead of raised."""
    mock_send.side_effect = AdaptorError("Request timed out", AdaptorError.TIMEOUT)

    result = adaptor.push_updates(Mock(), CREDENTIALS, [record(date(2025, 6, 1))])

    assert result.status == PushStatus.FAILED
    assert result.failure_kind == AdaptorError.TIMEOUT
    assert result.retryable is True


@pytest.mark.unit
@patch("channel_core.adaptors.booking_com.send_request")
def test_empty_push_makes_no_request(mock_send: Mock, adaptor: BookingComAdaptor) -> None:
    """Nothing to send means no call to the channel."""
    assert adaptor.push_updates(Mock(), CREDENTIALS, []).is_ok

    mock_send.assert_not_called()


@pytest.mark.unit
def test_missing_credentials_are_auth_failures(adaptor: BookingComAdaptor) -> None:
    """Credentials without a hotel id cannot be used."""
    with pytest.raises(AdaptorError) as exc_info:
        adaptor.pull_reservations(Mock(), {"username": "u", "password": "p"}, None)

    assert exc_info.value.failure_kind == AdaptorError.AUTH
    assert exc_info.value.retryable is False


@pytest.mark.unit
@patch("channel_core.adaptors.booking_com.send_request")
def test_pull_reservations_skips_unparseable_items(mock_send: Mock, adaptor: BookingComAdaptor) -> None:
    """Broken feed items are logged and skipped; the rest are returned."""
    mock_send.return_value = {"reservations": [feed_item(), {"booking_id": 1}]}

    reservations = adaptor.pull_reservations(Mock(), CREDENTIALS, None)

    assert [r.channel_reservation_id for r in reservations] == ["998877"]
    assert mock_send.call_args.kwargs["params"] is None


@pytest.mark.unit
@patch("channel_core.adaptors.booking_com.send_request")
def test_fetch_rates_keeps_requested_dates(mock_send: Mock, adaptor: BookingComAdaptor) -> None:
    """Only the asked-for dates are returned from the rate read-back."""
    mock_send.return_value = {
        "rates": [{"date": "2025-06-01", "rate": "1150"}, {"date": "2025-06-05", "rate": "990"}]
    }

    rates = adaptor.fetch_rates(Mock(), CREDENTIALS, "DLX", [date(2025, 6, 1), date(2025, 6, 2)])

    assert rates == {date(2025, 6, 1): 1150.0}
    assert mock_send.call_args.kwargs["params"] == {"room_type_id": "DLX", "from": "2025-06-01", "to": "2025-06-02"}


@pytest.mark.unit
def test_parse_webhook_accepts_single_and_batched_payloads(adaptor: BookingComAdaptor) -> None:
    """A webhook may carry one reservation or a list of them."""
    single = adaptor.parse_webhook(Mock(), {"reservation": feed_item()})
    batch = adaptor.parse_webhook(Mock(), {"reservations": [feed_item(), feed_item(booking_id=2)]})

    assert [r.channel_reservation_id for r in single] == ["998877"]
    assert [r.channel_reservation_id for r in batch] == ["998877", "2"]


@pytest.mark.unit
@patch("channel_core.adaptors.booking_com.send_request")
def test_connection_check(mock_send: Mock, adaptor: BookingComAdaptor) -> None:
    """Refused credentials give a failed check rather than an exception."""
    mock_send.side_effect = AdaptorError("Channel refused credentials (401)", AdaptorError.AUTH, retryable=False)

    check = adaptor.test_connection(CREDENTIALS)

    assert check.ok is False
    assert check.details["failure_kind"] == AdaptorError.AUTH
