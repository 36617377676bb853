"""
Offer Registry — the table of files waiting for their single download.

Maps each allocated transfer port to its Offer (staged file, uploader host,
access token). Ports and tokens are allocated here and released by cleanup.
All methods are safe to call concurrently from the event loop and from
worker threads.
"""

import asyncio
import logging
import os
import random
import secrets
import threading
import time

from skylink.config import TRANSFER_PORT_MAX, TRANSFER_PORT_MIN
from skylink.transfer.models import Offer, OfferState

logger = logging.getLogger(__name__)

TOKEN_DIGITS = 6


def generate_port() -> int:
    return random.randint(TRANSFER_PORT_MIN, TRANSFER_PORT_MAX)


def generate_token() -> str:
    """A 6-digit numeric PIN, e.g. "834192"."""
    low = 10 ** (TOKEN_DIGITS - 1)
    return str(low + secrets.randbelow(9 * low))


class OfferRegistry:
    """Thread-safe port -> Offer table."""

    def __init__(self, port_factory=generate_port, token_factory=generate_token) -> None:
        self._offers: dict[int, Offer] = {}
        self._lock = threading.Lock()
        self._port_factory = port_factory
        self._token_factory = token_factory

    def __len__(self) -> int:
        with self._lock:
            return len(self._offers)

    def allocate(self, file_path: str, uploader_host: str, file_name: str | None = None) -> int:
        """Register a staged file under a fresh port and token. Returns the port."""
        if file_name is None:
            file_name = os.path.basename(file_path)

        with self._lock:
            live_tokens = {o.access_token for o in self._offers.values()}
            token = self._token_factory()
            while token in live_tokens:
                token = self._token_factory()

            while True:
                port = self._port_factory()
                # insert-if-absent: draw again on collision
                if port in self._offers:
                    continue
                self._offers[port] = Offer(
                    port=port,
                    file_path=file_path,
                    file_name=file_name,
                    uploader_host=uploader_host,
                    access_token=token,
                    created_at=time.time(),
                )
                break

        logger.info(f"Registered offer for {file_name} on port {port}")
        return port

    def is_occupied(self, port: int) -> bool:
        with self._lock:
            return port in self._offers

    def validate_token(self, port: int, token: str | None) -> bool:
        if token is None:
            return False
        with self._lock:
            offer = self._offers.get(port)
        if offer is None:
            return False
        return secrets.compare_digest(offer.access_token, token)

    def token_of(self, port: int) -> str | None:
        with self._lock:
            offer = self._offers.get(port)
        return offer.access_token if offer else None

    def resolve_token(self, token: str | None) -> int | None:
        """Reverse lookup: the port whose offer holds this token."""
        if not token:
            return None
        with self._lock:
            for port, offer in self._offers.items():
                if offer.access_token == token:
                    return port
        return None

    def host_of(self, port: int) -> str | None:
        with self._lock:
            offer = self._offers.get(port)
        return offer.uploader_host if offer else None

    def path_of(self, port: int) -> str | None:
        with self._lock:
            offer = self._offers.get(port)
        return offer.file_path if offer else None

    def offer_of(self, port: int) -> Offer | None:
        """Snapshot of the offer registered on a port."""
        with self._lock:
            offer = self._offers.get(port)
            return offer.model_copy() if offer else None

    def mark_serving(self, port: int) -> bool:
        with self._lock:
            offer = self._offers.get(port)
            if offer is None:
                return False
            offer.state = OfferState.SERVING
            return True

    def release(self, port: int) -> Offer | None:
        """Forget an offer without touching its staged file."""
        with self._lock:
            return self._offers.pop(port, None)

    def cleanup(self, port: int) -> Offer | None:
        """
        Delete the staged file and drop the offer.

        Idempotent: returns the consumed offer the first time and None on
        any later call for the same port.
        """
        with self._lock:
            offer = self._offers.pop(port, None)
        if offer is None:
            return None

        try:
            os.remove(offer.file_path)
            logger.info(f"File deleted after download: {offer.file_name}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to delete {offer.file_path}: {e}")

        offer.state = OfferState.CONSUMED
        logger.info(f"Cleaned up port {port} and its access token")
        return offer

    def sweep(self, ttl: float, now: float | None = None) -> list[int]:
        """Clean up every offer older than ``ttl`` seconds."""
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                port for port, offer in self._offers.items()
                if now - offer.created_at > ttl
            ]
        for port in expired:
            if self.cleanup(port):
                logger.info(f"Offer on port {port} expired")
        return expired

    async def run_sweeper(self, ttl: float, interval: float) -> None:
        """Periodically remove offers nobody downloaded."""
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep(ttl)
            except Exception as e:
                logger.error(f"Offer sweep failed: {e}")
