"""Explicit outbound sync trigger."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from channel_core.dependencies import get_runtime
from channel_core.runtime import CoreRuntime

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.post("/hotels/{hotel_id}/sync", status_code=status.HTTP_202_ACCEPTED)
def trigger_hotel_sync(hotel_id: str, runtime: CoreRuntime = Depends(get_runtime)) -> dict[str, object]:
    """
    Queue every room type of a hotel for a high-priority push and wake the
    sync coordinator.

    Returns:
        dict: hotel_id and the number of room types queued
    """
    queued = runtime.request_hotel_sync(hotel_id)
    if queued == 0:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Hotel {hotel_id} has no active room types",
        )

    logger.info("sync_requested", hotel_id=hotel_id, room_types=queued)
    return {"hotel_id": hotel_id, "room_types_queued": queued}
