"""
Upload Gate — admits one upload and turns it into a live offer.

Validates the request (rate limit, Content-Type, three size checkpoints,
extension and MIME allowlists), stages the file on disk, registers it and
starts the one-shot Transfer Listener that will serve it.
"""

import asyncio
import logging
import os
import uuid
from collections.abc import AsyncIterator

from skylink.config import (
    ALLOWED_EXTENSIONS,
    ALLOWED_MIME_TYPES,
    DEFAULT_FILE_NAME,
    MAX_BIND_ATTEMPTS,
    MAX_FILE_SIZE,
    UPLOAD_DIR,
)
from skylink.security.ratelimit import RateLimiter
from skylink.transfer.errors import (
    BadUpload,
    PayloadTooLarge,
    RateLimited,
    TransferIOError,
    UnsupportedMediaType,
)
from skylink.transfer.listener import TransferListener
from skylink.transfer.models import OfferTicket
from skylink.transfer.multipart import extract_file, parse_boundary, sanitize_filename
from skylink.transfer.registry import OfferRegistry

logger = logging.getLogger(__name__)


def is_allowed_extension(filename: str) -> bool:
    return filename.lower().endswith(ALLOWED_EXTENSIONS)


def is_allowed_mime_type(mime_type: str | None) -> bool:
    if not mime_type:
        return False
    return mime_type.lower().startswith(ALLOWED_MIME_TYPES)


def _too_large(limit: int) -> PayloadTooLarge:
    return PayloadTooLarge(f"File too large: Maximum file size is {limit // (1024 * 1024)}MB")


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


class UploadGate:
    """Validates uploads and starts a listener per admitted file."""

    def __init__(
        self,
        registry: OfferRegistry,
        rate_limiter: RateLimiter | None = None,
        upload_dir: str = UPLOAD_DIR,
        max_file_size: int = MAX_FILE_SIZE,
        listener_factory=TransferListener,
    ) -> None:
        self._registry = registry
        self._rate_limiter = rate_limiter or RateLimiter()
        self._upload_dir = upload_dir
        self._max_file_size = max_file_size
        self._listener_factory = listener_factory
        self._listeners: set[asyncio.Task] = set()
        os.makedirs(upload_dir, exist_ok=True)

    async def stop(self) -> None:
        """Cancel listeners still waiting for a peer."""
        for task in list(self._listeners):
            task.cancel()
        if self._listeners:
            await asyncio.gather(*self._listeners, return_exceptions=True)
        self._listeners.clear()

    async def admit(
        self,
        client_host: str,
        content_type: str | None,
        content_length: str | None,
        body: AsyncIterator[bytes],
    ) -> OfferTicket:
        """Run every check, stage the file and open its offer."""
        if not self._rate_limiter.hit(client_host):
            raise RateLimited(
                f"Rate limit exceeded: Max {self._rate_limiter.limit} uploads per minute"
            )

        if not content_type or not content_type.lower().startswith("multipart/form-data"):
            raise BadUpload("Bad Request: Content-Type must be multipart/form-data")

        if content_length is not None:
            try:
                declared = int(content_length)
            except ValueError:
                raise BadUpload("Bad Request: invalid Content-Length")
            if declared > self._max_file_size:
                logger.warning(f"Rejected upload from {client_host}: declared {declared} bytes")
                raise _too_large(self._max_file_size)

        boundary = parse_boundary(content_type)
        if boundary is None:
            raise BadUpload("Bad Request: boundary missing in Content-Type")

        data = await self._read_body(body)

        uploaded = extract_file(data, boundary)
        if uploaded is None:
            raise BadUpload("Bad Request: Could not parse file content")
        if len(uploaded.payload) > self._max_file_size:
            raise _too_large(self._max_file_size)

        filename = sanitize_filename(uploaded.filename, DEFAULT_FILE_NAME)
        if not is_allowed_extension(filename):
            logger.warning(f"Rejected upload from {client_host}: extension of {filename!r}")
            raise UnsupportedMediaType(
                f"File type not allowed. Allowed extensions: {', '.join(ALLOWED_EXTENSIONS)}"
            )
        if not is_allowed_mime_type(uploaded.content_type):
            logger.warning(f"Rejected upload from {client_host}: MIME type {uploaded.content_type!r}")
            raise UnsupportedMediaType(
                f"MIME type not allowed. Allowed types: {', '.join(ALLOWED_MIME_TYPES)}"
            )

        file_path = os.path.join(self._upload_dir, f"{uuid.uuid4().hex}_{filename}")
        try:
            await asyncio.to_thread(self._write_file, file_path, uploaded.payload)
        except OSError as e:
            logger.error(f"Error processing file upload: {e}")
            _discard(file_path)
            raise TransferIOError(f"Server error: {e}")

        port = await self._open_offer(file_path, client_host, filename)
        token = self._registry.token_of(port)
        logger.info(f"Upload of {filename} ({len(uploaded.payload)} bytes) from {client_host} offered on port {port}")
        return OfferTicket(port=port, token=token)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listeners.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"{task.get_name()} failed: {task.exception()}")

    async def _read_body(self, body: AsyncIterator[bytes]) -> bytes:
        buffer = bytearray()
        async for chunk in body:
            buffer.extend(chunk)
            if len(buffer) > self._max_file_size:
                raise _too_large(self._max_file_size)
        return bytes(buffer)

    @staticmethod
    def _write_file(path: str, payload: bytes) -> None:
        with open(path, "wb") as f:
            f.write(payload)

    async def _open_offer(self, file_path: str, client_host: str, filename: str) -> int:
        """Allocate a port, bind its listener and start serving in the background."""
        last_error: OSError | None = None
        for _ in range(MAX_BIND_ATTEMPTS):
            port = self._registry.allocate(file_path, client_host, filename)
            listener = self._listener_factory(self._registry, port)
            try:
                await listener.open()
            except OSError as e:
                last_error = e
                logger.warning(f"Could not bind transfer port {port}: {e}")
                self._registry.release(port)
                continue

            task = asyncio.create_task(listener.serve_once(), name=f"transfer-listener-{port}")
            self._listeners.add(task)
            task.add_done_callback(self._listener_done)
            return port

        _discard(file_path)
        raise TransferIOError(f"Server error: could not bind any transfer port ({last_error})")
