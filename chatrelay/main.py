"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chatrelay.api import admin, chats
from chatrelay.api.errors import dispatch_error_response
from chatrelay.core.config import load_config
from chatrelay.core.exceptions import DispatchError
from chatrelay.dispatch.sweeper import RecoverySweeper
from chatrelay.logging import configure_logging, get_request_id
from chatrelay.middleware.request_context import RequestContextMiddleware
from chatrelay.providers.registry import registry
from chatrelay.storage.catalog import list_providers, sync_providers
from chatrelay.storage.database import init_db

logger = logging.getLogger("chatrelay.app")


def prepare_storage() -> None:
    """Create tables, seed the provider catalogue and validate every adapter code."""
    config = load_config()
    init_db()
    sync_providers(config.providers)
    registry.validate(list_providers())


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    prepare_storage()

    settings = load_config().dispatch
    sweeper = RecoverySweeper(settings.sweep_interval_seconds)
    if settings.sweep_enabled:
        sweeper.start()
    app.state.sweeper = sweeper
    try:
        yield
    finally:
        await sweeper.stop()


app = FastAPI(
    title="chatrelay",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(chats.router)
app.include_router(admin.router)
app.add_middleware(RequestContextMiddleware)


@app.exception_handler(DispatchError)
async def dispatch_exception_handler(request: Request, exc: DispatchError) -> JSONResponse:
    return dispatch_error_response(exc)


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error",
        extra={
            "event": "request_error",
            "path": request.url.path,
            "request_id": get_request_id(),
        },
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "Internal server error",
                "type": "internal_server_error",
                "code": "internal_error",
            }
        },
    )
