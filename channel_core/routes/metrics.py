"""
Prometheus metrics endpoint.

Example:
    GET /metrics

    Response:
        # HELP channel_core_sync_pushes_total Availability/rate pushes sent to channels
        # TYPE channel_core_sync_pushes_total counter
        channel_core_sync_pushes_total{channel="booking.com",status="success"} 42.0
        ...
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/metrics", response_class=Response)
async def metrics() -> Any:
    """
    Return every registered metric in Prometheus text exposition format.
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
