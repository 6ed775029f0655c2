"""Request context middleware for logging correlation."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from chatrelay.logging import reset_request_id, set_request_id

logger = logging.getLogger("chatrelay.http")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to each inbound request and log its duration."""

    async def dispatch(  # type: ignore[override]
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = set_request_id(request_id)
        request.state.request_id = request_id
        start = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start) * 1000
            logger.info(
                "Request handled",
                extra={
                    "event": "request_done",
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 1),
                },
            )
        finally:
            reset_request_id(token)
        response.headers.setdefault("x-request-id", request_id)
        return response
