"""Per-address fixed-window rate limiting for uploads."""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass

from skylink.config import MAX_UPLOADS_PER_WINDOW, RATE_LIMIT_MAX_KEYS, RATE_LIMIT_WINDOW

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    started_at: float
    count: int = 1


class RateLimiter:
    """
    Fixed windows per key: the first request opens a window, each further
    request inside it bumps the count, and requests past ``limit`` are
    refused until the window expires.

    At most ``max_keys`` windows are tracked. When the table is full,
    expired windows are evicted first, then the least recently seen key.
    """

    def __init__(
        self,
        limit: int = MAX_UPLOADS_PER_WINDOW,
        window: float = RATE_LIMIT_WINDOW,
        max_keys: int = RATE_LIMIT_MAX_KEYS,
        clock=time.monotonic,
    ) -> None:
        self.limit = limit
        self.window = window
        self._max_keys = max_keys
        self._clock = clock
        self._windows: OrderedDict[str, _Window] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def hit(self, key: str, now: float | None = None) -> bool:
        """Record a request from ``key``. Returns False if it is over the limit."""
        now = self._clock() if now is None else now
        with self._lock:
            entry = self._windows.get(key)
            if entry is None:
                self._make_room(now)
                self._windows[key] = _Window(started_at=now)
                return True

            self._windows.move_to_end(key)
            if now - entry.started_at > self.window:
                entry.started_at = now
                entry.count = 1
                return True

            entry.count += 1
            if entry.count > self.limit:
                logger.warning(f"Rate limit exceeded for {key}: {entry.count} requests in window")
                return False
            return True

    def _make_room(self, now: float) -> None:
        if len(self._windows) < self._max_keys:
            return
        expired = [k for k, w in self._windows.items() if now - w.started_at > self.window]
        for k in expired:
            del self._windows[k]
        while len(self._windows) >= self._max_keys:
            self._windows.popitem(last=False)
