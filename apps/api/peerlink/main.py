"""FastAPI application exposing login and the signaling relay."""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .core.config import settings
from .core.errors import InvalidRequest
from .routers import auth as auth_router
from .routers import signaling as signaling_router
from .services.signaling import SignalingRelay

logging.getLogger("peerlink").setLevel(settings.log_level.upper())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own the relay for the lifetime of the process."""

    relay = SignalingRelay(
        queue_size=settings.outbound_queue_size,
        notify_on_leave=settings.signaling_notify_on_leave,
    )
    app.state.relay = relay
    logger.info("Signaling relay started (env=%s)", settings.app_env)
    try:
        yield
    finally:
        await relay.close()
        logger.info("Signaling relay stopped")


app = FastAPI(title="Peerlink Signaling API", version="0.1.0", lifespan=lifespan)

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(InvalidRequest)
async def invalid_request_handler(_request: Request, exc: InvalidRequest) -> JSONResponse:
    return JSONResponse(status_code=400, content={"message": exc.message})


app.include_router(auth_router.router, tags=["auth"])
app.include_router(signaling_router.router, tags=["signaling"])


@app.get("/api/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Simple liveness probe."""

    return {"status": "ok"}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD for uptime monitors that only need the status code."""

    return Response(status_code=200)
