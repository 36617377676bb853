"""REST API routes for SkyLink."""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from skylink.transfer.gate import UploadGate
from skylink.transfer.registry import OfferRegistry
from skylink.transfer.relay import DownloadRelay, content_disposition

logger = logging.getLogger(__name__)

router = APIRouter()

# These will be injected by main.py at startup
_registry: OfferRegistry | None = None
_upload_gate: UploadGate | None = None
_download_relay: DownloadRelay | None = None


def init_routes(registry: OfferRegistry, upload_gate: UploadGate, download_relay: DownloadRelay) -> None:
    """Inject service dependencies into the routes module."""
    global _registry, _upload_gate, _download_relay
    _registry = registry
    _upload_gate = upload_gate
    _download_relay = download_relay


@router.get("/health")
async def health():
    return {"status": "ok", "offers": len(_registry)}


@router.post("/upload")
async def upload(request: Request):
    """Accept one multipart file and offer it for a single download.

    The body is read as a raw stream so size limits apply before it is
    buffered.
    """
    client_host = request.client.host if request.client else "unknown"
    ticket = await _upload_gate.admit(
        client_host=client_host,
        content_type=request.headers.get("content-type"),
        content_length=request.headers.get("content-length"),
        body=request.stream(),
    )
    return ticket.model_dump()


@router.get("/download")
async def download(token: str | None = None):
    """Fetch the file offered under ``token`` from its transfer listener."""
    relayed = await _download_relay.fetch(token)
    return StreamingResponse(
        _download_relay.stream(relayed),
        media_type=relayed.content_type,
        headers={
            "Content-Disposition": content_disposition(relayed.file_name),
            "Content-Length": str(relayed.size),
        },
    )
