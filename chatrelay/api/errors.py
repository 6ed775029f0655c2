"""Mapping from dispatch error kinds to HTTP responses."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from fastapi.responses import JSONResponse

from chatrelay.core.exceptions import DispatchError, RateLimitedError
from chatrelay.storage.models import SessionStatus

STATUS_BY_KIND: dict[str, int] = {
    "rate_limited": HTTPStatus.TOO_MANY_REQUESTS,
    "no_available_key": HTTPStatus.SERVICE_UNAVAILABLE,
    "service_unavailable": HTTPStatus.SERVICE_UNAVAILABLE,
    "provider_auth_invalid": HTTPStatus.BAD_GATEWAY,
    "provider_error": HTTPStatus.BAD_GATEWAY,
    "malformed_response": HTTPStatus.BAD_GATEWAY,
    "session_not_found": HTTPStatus.NOT_FOUND,
}


def dispatch_error_response(exc: DispatchError) -> JSONResponse:
    error: dict[str, Any] = {
        "message": exc.message,
        "type": exc.kind,
        "code": exc.kind,
    }
    if exc.provider_id:
        error["provider"] = exc.provider_id
    content: dict[str, Any] = {"error": error}
    if isinstance(exc, RateLimitedError):
        content["chat_status"] = SessionStatus.PENDING_RATE_LIMIT
        content["rate_limit_reset_at"] = exc.reset_at.isoformat()

    return JSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, HTTPStatus.INTERNAL_SERVER_ERROR),
        content=content,
    )
