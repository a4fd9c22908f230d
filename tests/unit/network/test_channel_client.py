"""
Unit tests for the channel HTTP transport: retries and failure classification.
"""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
import requests

from channel_core.errors import AdaptorError
from channel_core.network.client import classify_failure, send_request, should_retry

URL = "https://channel.test/v1/inventory"


def response(status_code: int, body: bytes = b'{"ok": true}') -> Mock:
    """A requests.Response stand-in."""
    res = Mock(spec=requests.Response)
    res.status_code = status_code
    res.ok = status_code < 400
    res.content = body
    res.text = body.decode()
    res.json.return_value = {"ok": True}
    return res


@pytest.mark.unit
@patch("channel_core.network.client.requests.request")
def test_send_request_returns_json(mock_request: Mock) -> None:
    """A 2xx response is decoded and returned."""
    mock_request.return_value = response(200)

    assert send_request("POST", URL, endpoint="test:inventory", json={"a": 1}) == {"ok": True}
    assert mock_request.call_args.kwargs["json"] == {"a": 1}


@pytest.mark.unit
@patch("channel_core.network.client.requests.request")
def test_empty_body_is_empty_dict(mock_request: Mock) -> None:
    """204-style empty bodies decode to an empty dict."""
    mock_request.return_value = response(204, body=b"")

    assert send_request("PUT", URL, endpoint="test:inventory") == {}


@pytest.mark.unit
@patch("channel_core.network.client.time.sleep")
@patch("channel_core.network.client.requests.request")
def test_server_errors_are_retried(mock_request: Mock, mock_sleep: Mock) -> None:
    """A 503 followed by a 200 succeeds after one backoff sleep."""
    mock_request.side_effect = [response(503, b"busy"), response(200)]

    assert send_request("GET", URL, endpoint="test:inventory") == {"ok": True}
    assert mock_request.call_count == 2
    mock_sleep.assert_called_once_with(1.0)


@pytest.mark.unit
@patch("channel_core.network.client.time.sleep")
@patch("channel_core.network.client.requests.request")
def test_timeouts_exhaust_retries(mock_request: Mock, mock_sleep: Mock) -> None:
    """Persistent timeouts raise a retryable timeout failure after the last retry."""
    mock_request.side_effect = requests.Timeout("read timed out")

    with pytest.raises(AdaptorError) as exc_info:
        send_request("GET", URL, endpoint="test:inventory", max_retries=2)

    assert exc_info.value.failure_kind == AdaptorError.TIMEOUT
    assert exc_info.value.retryable is True
    assert mock_request.call_count == 3


@pytest.mark.unit
@patch("channel_core.network.client.time.sleep")
@patch("channel_core.network.client.requests.request")
def test_client_errors_are_not_retried(mock_request: Mock, mock_sleep: Mock) -> None:
    """A 400 is a rejection and is raised at once."""
    mock_request.return_value = response(400, b'{"error": "bad date"}')

    with pytest.raises(AdaptorError) as exc_info:
        send_request("POST", URL, endpoint="test:inventory")

    assert exc_info.value.failure_kind == AdaptorError.REJECTED
    assert exc_info.value.retryable is False
    assert "bad date" in exc_info.value.message
    mock_sleep.assert_not_called()


@pytest.mark.unit
@patch("channel_core.network.client.requests.request")
def test_non_json_body_is_a_rejection(mock_request: Mock) -> None:
    """A successful response that is not JSON cannot be used."""
    res = response(200, body=b"<html>")
    res.json.side_effect = ValueError("Expecting value")
    mock_request.return_value = res

    with pytest.raises(AdaptorError) as exc_info:
        send_request("GET", URL, endpoint="test:inventory")

    assert exc_info.value.failure_kind == AdaptorError.REJECTED


@pytest.mark.unit
@pytest.mark.parametrize(
    "status_code, retry",
    [(429, True), (500, True), (502, True), (400, False), (401, False), (404, False)],
)
def test_should_retry_by_status(status_code: int, retry: bool) -> None:
    """Rate limiting and server errors are retried; other errors are not."""
    assert should_retry(response(status_code), None) is retry


@pytest.mark.unit
def test_should_retry_connection_errors() -> None:
    """Transport exceptions are retried."""
    assert should_retry(None, requests.ConnectionError("refused")) is True


@pytest.mark.unit
@pytest.mark.parametrize(
    "status_code, kind, retryable",
    [
        (401, AdaptorError.AUTH, False),
        (403, AdaptorError.AUTH, False),
        (429, AdaptorError.TRANSPORT, True),
        (500, AdaptorError.TRANSPORT, True),
        (422, AdaptorError.REJECTED, False),
    ],
)
def test_classify_failure(status_code: int, kind: str, retryable: bool) -> None:
    """HTTP failures map onto failure kinds the sync engine acts on."""
    failure = classify_failure(response(status_code, b"nope"), None)

    assert (failure.failure_kind, failure.retryable) == (kind, retryable)
