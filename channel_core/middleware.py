"""
FastAPI middleware for request tracing and correlation.

Every request gets an id, reused from an incoming ``X-Request-ID`` header when
the caller sent one. The id is bound into the structlog context so log lines
and audit entries written while serving the request carry it.
"""

from __future__ import annotations

import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from channel_core.logging_config import bind_correlation_id, clear_correlation_id

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Stamp each request with an id.

    The id is:
    1. Stored in request.state.request_id for route handlers
    2. Bound as the log correlation id for the lifetime of the request
    3. Returned to the client in the X-Request-ID response header

    Example:
        >>> from channel_core.middleware import RequestIDMiddleware
        >>> app.add_middleware(RequestIDMiddleware)
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """
        Process each request by adding a request ID.

        Args:
            request: Incoming FastAPI request
            call_next: Next middleware or route handler in chain

        Returns:
            Response with X-Request-ID header added
        """
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        bind_correlation_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
