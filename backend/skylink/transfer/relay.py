"""
Download Relay — bridges a GET /download to the offer's transfer listener.

Resolves the token, pulls the file over the one-shot TCP connection into a
local staging file, then streams that file back to the HTTP caller. The
staging file is removed on every exit path; the offer is cleaned up only
after the whole file has been handed to the caller.
"""

import asyncio
import logging
import mimetypes
import os
import tempfile
from collections.abc import AsyncIterator
from urllib.parse import quote

from skylink.config import (
    CHUNK_SIZE,
    DEFAULT_DOWNLOAD_NAME,
    RELAY_READ_TIMEOUT,
    TRANSFER_DIAL_HOST,
)
from skylink.transfer.errors import AccessDenied, TransferIOError
from skylink.transfer.listener import parse_header
from skylink.transfer.models import RelayedFile
from skylink.transfer.multipart import sanitize_filename
from skylink.transfer.registry import OfferRegistry

logger = logging.getLogger(__name__)


def guess_content_type(file_name: str) -> str:
    content_type, _ = mimetypes.guess_type(file_name)
    return content_type or "application/octet-stream"


def content_disposition(file_name: str) -> str:
    """Attachment disposition, with an RFC 5987 name for non-ASCII files."""
    try:
        file_name.encode("ascii")
    except UnicodeEncodeError:
        fallback = file_name.encode("ascii", "replace").decode("ascii").replace("?", "_")
        return f"attachment; filename=\"{fallback}\"; filename*=utf-8''{quote(file_name)}"
    return f'attachment; filename="{file_name}"'


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error(f"Failed to remove staging file {path}: {e}")


class DownloadRelay:
    """Fetches offered files on behalf of downloaders."""

    def __init__(
        self,
        registry: OfferRegistry,
        dial_host: str | None = TRANSFER_DIAL_HOST,
        read_timeout: float = RELAY_READ_TIMEOUT,
        chunk_size: int = CHUNK_SIZE,
        staging_dir: str | None = None,
    ) -> None:
        self._registry = registry
        self._dial_host = dial_host
        self._read_timeout = read_timeout
        self._chunk_size = chunk_size
        self._staging_dir = staging_dir

    async def fetch(self, token: str | None) -> RelayedFile:
        """Pull the file offered under ``token`` into a staging file."""
        port = self._registry.resolve_token(token)
        if port is None or not self._registry.validate_token(port, token):
            raise AccessDenied("Access denied: Invalid or missing token")

        host = self._dial_host or self._registry.host_of(port) or "localhost"

        fd, path = tempfile.mkstemp(prefix="download-", suffix=".tmp", dir=self._staging_dir)
        os.close(fd)
        fetched = False
        try:
            file_name, size = await self._pull(host, port, path)
            fetched = True
        except (OSError, ValueError, asyncio.TimeoutError) as e:
            logger.error(f"Error downloading file from {host}:{port}: {e}")
            raise TransferIOError(f"Error downloading file: {str(e) or type(e).__name__}")
        finally:
            if not fetched:
                _remove(path)

        logger.info(f"Received {file_name} ({size} bytes) from {host}:{port}")
        return RelayedFile(
            port=port,
            file_name=file_name,
            content_type=guess_content_type(file_name),
            path=path,
            size=size,
        )

    async def _pull(self, host: str, port: int, path: str) -> tuple[str, int]:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=self._read_timeout
        )
        try:
            header = await asyncio.wait_for(reader.readline(), timeout=self._read_timeout)
            if not header:
                raise ConnectionError("transfer connection closed before any data")
            file_name = sanitize_filename(parse_header(header), DEFAULT_DOWNLOAD_NAME)

            size = 0
            with open(path, "wb") as f:
                while True:
                    chunk = await asyncio.wait_for(
                        reader.read(self._chunk_size), timeout=self._read_timeout
                    )
                    if not chunk:
                        break
                    await asyncio.to_thread(self._write_chunk, f, chunk)
                    size += len(chunk)
            return file_name, size
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    @staticmethod
    def _write_chunk(f, chunk: bytes) -> None:
        f.write(chunk)

    async def stream(self, relayed: RelayedFile) -> AsyncIterator[bytes]:
        """
        Yield the staged file, then consume the offer.

        The staging file is removed whether the caller reads to the end,
        disconnects, or the read fails.
        """
        try:
            with open(relayed.path, "rb") as f:
                while True:
                    chunk = await asyncio.to_thread(f.read, self._chunk_size)
                    if not chunk:
                        break
                    yield chunk
            self._registry.cleanup(relayed.port)
        finally:
            _remove(relayed.path)
