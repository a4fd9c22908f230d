"""
Internal helpers for route handlers: authentication and error translation.
"""

from __future__ import annotations

import base64
import binascii
from typing import NoReturn

import structlog
from fastapi import HTTPException, status

from channel_core import config
from channel_core.errors import (
    ChannelCoreError,
    ConflictError,
    InvalidTransition,
    NotFound,
    OversoldError,
)

logger = structlog.get_logger(__name__)


def validate_basic_auth(auth_header: str | None) -> bool:
    """
    Validate HTTP Basic Auth credentials against the webhook credentials.

    Args:
        auth_header: Authorization header value (e.g., "Basic dXNlcjpwYXNz")

    Returns:
        bool: True if credentials match, False otherwise (always False when
            no webhook credentials are configured)
    """
    if not config.WEBHOOK_USERNAME or not config.WEBHOOK_PASSWORD:
        return False
    if not auth_header or not auth_header.startswith("Basic "):
        return False

    try:
        decoded = base64.b64decode(auth_header[len("Basic "):]).decode("utf-8")
        username, password = decoded.split(":", 1)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        logger.warning("webhook_auth_header_malformed")
        return False

    return username == config.WEBHOOK_USERNAME and password == config.WEBHOOK_PASSWORD


def status_for(error: ChannelCoreError) -> int:
    """HTTP status code for a core error."""
    if isinstance(error, NotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (InvalidTransition, OversoldError, ConflictError)):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


def raise_http_error(error: ChannelCoreError) -> NoReturn:
    """
    Re-raise a core error as an HTTPException carrying its serialized form.

    Raises:
        HTTPException: Always
    """
    raise HTTPException(status_code=status_for(error), detail=error.to_dict())
