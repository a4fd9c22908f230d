"""Channel webhook receiver route."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from channel_core.dependencies import get_runtime
from channel_core.errors import ChannelCoreError
from channel_core.routes._helpers import raise_http_error, validate_basic_auth
from channel_core.runtime import CoreRuntime

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.post("/hotels/{hotel_id}/channels/{channel_id}/webhooks")
async def receive_channel_webhook(
    hotel_id: str,
    channel_id: str,
    request: Request,
    runtime: CoreRuntime = Depends(get_runtime),
) -> JSONResponse:
    """
    Accept reservation notifications pushed by a channel.

    The adaptor registered for the channel's category parses the payload into
    normalized reservations, which are applied one by one. The response lists
    an ACK or NACK per reservation; a NACK tells the channel the reservation
    was not taken (e.g. no inventory or unmapped room type).

    Authentication: HTTP Basic Auth with WEBHOOK_USERNAME/WEBHOOK_PASSWORD

    Returns:
        JSONResponse: ``{"results": [{"channel_reservation_id", "ack", "status",
            "booking_id", "reason"}]}``
    """
    if not validate_basic_auth(request.headers.get("Authorization")):
        logger.warning("webhook_auth_failed", hotel_id=hotel_id, channel_id=channel_id)
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": "Unauthorized"},
        )

    try:
        payload: dict[str, Any] = await request.json()
        if not isinstance(payload, dict):
            raise ValueError("payload must be a JSON object")
    except ValueError:
        logger.warning("webhook_invalid_json", hotel_id=hotel_id, channel_id=channel_id)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid JSON"},
        )

    try:
        channel = runtime.channels.get(hotel_id, channel_id)
        adaptor = runtime.channels.adaptors.get(channel.category)
        reservations = adaptor.parse_webhook(channel, payload)
    except ChannelCoreError as e:
        logger.warning(
            "webhook_rejected",
            hotel_id=hotel_id,
            channel_id=channel_id,
            kind=e.kind,
            error=e.message,
        )
        raise_http_error(e)

    logger.info(
        "webhook_received",
        hotel_id=hotel_id,
        channel_id=channel_id,
        category=channel.category,
        reservations=len(reservations),
    )

    try:
        outcomes = runtime.inbound.handle_batch(channel, reservations)
    except Exception as e:
        logger.exception(
            "webhook_processing_failed",
            hotel_id=hotel_id,
            channel_id=channel_id,
            error=str(e),
        )
        raise HTTPException(status_code=500, detail="Internal server error")

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"results": [o.model_dump(mode="json") for o in outcomes]},
    )
