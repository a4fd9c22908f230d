"""
HTTP transport shared by the channel adaptors, with bounded retries on
rate limiting, timeouts and server errors, and per-endpoint API metrics.

Failures are raised as ``AdaptorError`` with a failure kind the sync engine
uses to decide between retry and dead letter.
"""

import time
from typing import Any, Dict, Optional, cast

import requests
import structlog

from channel_core.config import ADAPTOR_TIMEOUT_SECONDS
from channel_core.errors import AdaptorError
from channel_core.metrics import api_latency, api_requests

logger = structlog.get_logger(__name__)

MAX_RETRIES = 2
RETRY_DELAY = 1.0


def should_retry(res: Optional[requests.Response], err: Optional[Exception]) -> bool:
    """
    Determine whether the request should be retried based on response or error.

    Args:
        res (Optional[requests.Response]): Response object if available.
        err (Optional[Exception]): Exception raised by the request, if any.

    Returns:
        bool: True if the request should be retried, False otherwise.
    """
    if res is not None and res.status_code == 429:
        return True
    if isinstance(err, (requests.Timeout, requests.ConnectionError)):
        return True
    if res is not None and 500 <= res.status_code < 600:
        return True
    return False


def classify_failure(res: Optional[requests.Response], err: Optional[Exception]) -> AdaptorError:
    """Map a failed exchange onto an ``AdaptorError`` with its failure kind."""
    if isinstance(err, requests.Timeout):
        return AdaptorError(f"Request timed out: {err}", AdaptorError.TIMEOUT, retryable=True)
    if res is not None:
        body = res.text[:500] if res.text else ""
        if res.status_code in (401, 403):
            return AdaptorError(
                f"Channel refused credentials ({res.status_code})", AdaptorError.AUTH, retryable=False
            )
        if res.status_code == 429 or res.status_code >= 500:
            return AdaptorError(
                f"Channel unavailable ({res.status_code}): {body}", AdaptorError.TRANSPORT, retryable=True
            )
        return AdaptorError(
            f"Channel rejected request ({res.status_code}): {body}", AdaptorError.REJECTED, retryable=False
        )
    return AdaptorError(f"Transport failure: {err}", AdaptorError.TRANSPORT, retryable=True)


def send_request(
    method: str,
    url: str,
    endpoint: str,
    json: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    auth: Optional[tuple[str, str]] = None,
    timeout: float = ADAPTOR_TIMEOUT_SECONDS,
    max_retries: int = MAX_RETRIES,
) -> Dict[str, Any]:
    """
    Send one request to a channel API and return its JSON body.

    Args:
        method (str): HTTP method
        url (str): Absolute URL
        endpoint (str): Metric label for the call (e.g. 'booking.com:inventory')
        json (Optional[dict]): JSON body
        params (Optional[dict]): Query parameters
        headers (Optional[dict]): Extra headers
        auth (Optional[tuple]): HTTP Basic credentials
        timeout (float): Per-attempt deadline in seconds
        max_retries (int): Retries after the first attempt for retryable failures

    Returns:
        Dict[str, Any]: Decoded JSON body ({} for an empty body)

    Raises:
        AdaptorError: If the request fails after all retries or is not retryable
    """
    retries = 0

    while True:
        res: Optional[requests.Response] = None
        err: Optional[Exception] = None
        try:
            start_time = time.time()
            res = requests.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                auth=auth,
                timeout=timeout,
            )
            latency = time.time() - start_time

            api_requests.labels(endpoint=endpoint, status_code=str(res.status_code)).inc()
            api_latency.labels(endpoint=endpoint).observe(latency)

            if res.ok:
                if not res.content:
                    return {}
                return cast(Dict[str, Any], res.json())
        except requests.RequestException as e:
            err = e
            api_requests.labels(endpoint=endpoint, status_code="error").inc()
        except ValueError as e:
            raise AdaptorError(
                f"Channel returned a non-JSON body: {e}", AdaptorError.REJECTED, retryable=False
            ) from e

        failure = classify_failure(res, err)
        logger.warning(
            "channel_request_failed",
            endpoint=endpoint,
            status_code=res.status_code if res is not None else None,
            failure_kind=failure.failure_kind,
            attempt=retries + 1,
        )
        retries += 1
        if retries > max_retries or not should_retry(res, err):
            raise failure
        time.sleep(RETRY_DELAY * retries)
