"""
SkyLink — FastAPI application entry point.

Serves the upload/download control plane and runs the offer sweeper.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from skylink.api.routes import init_routes, router
from skylink.config import (
    API_HOST,
    API_PORT,
    CONTROL_WORKERS,
    CORS_ORIGINS,
    LOG_LEVEL,
    OFFER_TTL,
    SWEEP_INTERVAL,
    UPLOAD_DIR,
)
from skylink.security.ratelimit import RateLimiter
from skylink.transfer.errors import TransferError
from skylink.transfer.gate import UploadGate
from skylink.transfer.registry import OfferRegistry
from skylink.transfer.relay import DownloadRelay

# --- Logging ---
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
registry = OfferRegistry()
upload_gate = UploadGate(registry, RateLimiter())
download_relay = DownloadRelay(registry)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting SkyLink services...")
    app.state.control_slots = asyncio.Semaphore(CONTROL_WORKERS)
    sweeper = asyncio.create_task(registry.run_sweeper(OFFER_TTL, SWEEP_INTERVAL))
    logger.info(f"SkyLink ready — API: {API_HOST}:{API_PORT}, uploads staged in {UPLOAD_DIR}")

    try:
        yield
    finally:
        logger.info("Shutting down SkyLink services...")
        sweeper.cancel()
        await upload_gate.stop()


# --- FastAPI app ---
app = FastAPI(
    title="SkyLink",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["Content-Disposition"],
)


@app.middleware("http")
async def limit_control_plane(request: Request, call_next):
    """At most CONTROL_WORKERS requests are handled at once; the rest queue."""
    slots = getattr(request.app.state, "control_slots", None)
    if slots is None:
        return await call_next(request)
    async with slots:
        return await call_next(request)


@app.exception_handler(TransferError)
async def transfer_error_handler(request: Request, exc: TransferError):
    return PlainTextResponse(exc.message, status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=exc.headers)


# Inject services into routes
init_routes(registry, upload_gate, download_relay)
app.include_router(router)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
