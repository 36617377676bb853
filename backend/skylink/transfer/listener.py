"""
One-shot TCP listener that serves a single offered file.

Wire format, server to client:

    Filename: <name>\\n
    <raw file bytes until the connection closes>

There is no length field, checksum or acknowledgement; an orderly close
marks the end of the file. A transfer that stalls or fails part-way is
dropped with a TCP reset instead, so the reader sees an error rather than
a short file.
"""

import asyncio
import logging
import socket
import struct

from skylink.config import (
    ACCEPT_TIMEOUT,
    CHUNK_SIZE,
    SEND_TIMEOUT,
    TRANSFER_BIND_HOST,
)
from skylink.transfer.registry import OfferRegistry

logger = logging.getLogger(__name__)

HEADER_PREFIX = "Filename: "


def format_header(file_name: str) -> bytes:
    return f"{HEADER_PREFIX}{file_name}\n".encode("utf-8")


def parse_header(line: bytes) -> str | None:
    """Return the file name carried by a header line, or None if malformed."""
    text = line.decode("utf-8", errors="replace").strip()
    if not text.startswith(HEADER_PREFIX):
        return None
    return text[len(HEADER_PREFIX):] or None


class TransferListener:
    """Streams the file offered on ``port`` to exactly one peer, then exits."""

    def __init__(
        self,
        registry: OfferRegistry,
        port: int,
        host: str = TRANSFER_BIND_HOST,
        accept_timeout: float = ACCEPT_TIMEOUT,
        send_timeout: float = SEND_TIMEOUT,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self._registry = registry
        self.port = port
        self._host = host
        self._accept_timeout = accept_timeout
        self._send_timeout = send_timeout
        self._chunk_size = chunk_size
        self._server: asyncio.Server | None = None
        self._accepted: asyncio.Future | None = None
        self._finished = asyncio.Event()

    async def open(self) -> None:
        """Bind the listening socket. Raises OSError if the port is taken."""
        self._accepted = asyncio.get_running_loop().create_future()
        self._server = await asyncio.start_server(
            self._handle_connection, self._host, self.port
        )
        logger.info(f"Transfer listener bound on port {self.port}")

    async def serve_once(self) -> bool:
        """
        Wait for one peer and send it the file.

        Returns False if nobody connected within the accept timeout.
        The offer itself is left in the registry either way.
        """
        if self._server is None:
            await self.open()

        try:
            await asyncio.wait_for(asyncio.shield(self._accepted), timeout=self._accept_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No peer connected to port {self.port} within {self._accept_timeout:.0f}s")
            await self.close()
            return False
        except asyncio.CancelledError:
            await self.close()
            raise

        await self._finished.wait()
        await self.close()
        return True

    async def close(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        if self._accepted.done():
            # Only the first peer is served
            logger.warning(f"Rejecting extra connection on port {self.port} from {peer}")
            writer.close()
            return

        self._accepted.set_result(peer)
        if self._server:
            self._server.close()  # stop accepting; the live connection is unaffected
        logger.info(f"Client connection on port {self.port}: {peer}")

        completed = False
        try:
            await self._send(writer)
            completed = True
        except asyncio.TimeoutError:
            logger.error(f"Peer on port {self.port} stalled for {self._send_timeout:.0f}s, dropping it")
        except OSError as e:
            logger.error(f"Error sending file on port {self.port}: {e}")
        finally:
            if completed:
                writer.close()
            else:
                _reset(writer)
            try:
                await writer.wait_closed()
            except OSError:
                pass
            self._finished.set()

    async def _send(self, writer: asyncio.StreamWriter) -> None:
        offer = self._registry.offer_of(self.port)
        if offer is None:
            logger.warning(f"No file is available on port {self.port}")
            return
        self._registry.mark_serving(self.port)

        with open(offer.file_path, "rb") as f:
            writer.write(format_header(offer.file_name))
            while True:
                chunk = await asyncio.to_thread(f.read, self._chunk_size)
                if not chunk:
                    break
                writer.write(chunk)
                await asyncio.wait_for(writer.drain(), timeout=self._send_timeout)
            await asyncio.wait_for(writer.drain(), timeout=self._send_timeout)

        logger.info(f"File {offer.file_name} sent to {writer.get_extra_info('peername')}")


def _reset(writer: asyncio.StreamWriter) -> None:
    """Drop the connection with a TCP reset rather than an orderly close."""
    sock = writer.get_extra_info("socket")
    if sock is not None:
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        except OSError:
            pass
    writer.transport.abort()
