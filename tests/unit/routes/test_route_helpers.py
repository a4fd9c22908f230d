"""
Unit tests for webhook authentication and error translation helpers.
"""

from __future__ import annotations

import base64
from datetime import date

import pytest
from fastapi import HTTPException

from channel_core.errors import (
    ConflictError,
    InvalidTransition,
    NotFound,
    OversoldError,
    ValidationError,
)
from channel_core.routes._helpers import raise_http_error, status_for, validate_basic_auth


def basic(value: str) -> str:
    """Encode a raw user:password string as a Basic header."""
    return "Basic " + base64.b64encode(value.encode("utf-8")).decode("utf-8")


@pytest.fixture(autouse=True)
def webhook_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Configure webhook credentials for every test in this module."""
    monkeypatch.setattr("channel_core.config.WEBHOOK_USERNAME", "hook")
    monkeypatch.setattr("channel_core.config.WEBHOOK_PASSWORD", "pa:ss")


@pytest.mark.unit
@pytest.mark.parametrize(
    "header, expected",
    [
        (basic("hook:pa:ss"), True),
        (basic("hook:wrong"), False),
        (basic("no-colon"), False),
        ("Basic !!!not-base64", False),
        ("Bearer abc", False),
        (None, False),
    ],
)
def test_validate_basic_auth(header: str | None, expected: bool) -> None:
    """Only a well-formed header with the configured pair is accepted."""
    assert validate_basic_auth(header) is expected


@pytest.mark.unit
def test_validate_basic_auth_without_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    """Without configured credentials nothing authenticates."""
    monkeypatch.setattr("channel_core.config.WEBHOOK_USERNAME", None)

    assert validate_basic_auth(basic("hook:pa:ss")) is False


@pytest.mark.unit
@pytest.mark.parametrize(
    "error, code",
    [
        (NotFound("missing"), 404),
        (ConflictError("stale"), 409),
        (InvalidTransition("pending", "checked_out", ["confirmed", "cancelled"]), 409),
        (ValidationError("bad"), 400),
    ],
)
def test_status_for(error: Exception, code: int) -> None:
    """Core errors map onto HTTP status codes."""
    assert status_for(error) == code


@pytest.mark.unit
def test_raise_http_error_carries_serialized_error() -> None:
    """The HTTP error detail is the error's serialized form."""
    error = OversoldError(date(2025, 3, 10), OversoldError.CAPACITY)

    with pytest.raises(HTTPException) as exc_info:
        raise_http_error(error)

    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["kind"] == "oversold"
    assert exc_info.value.detail["details"]["reason"] == "capacity"
