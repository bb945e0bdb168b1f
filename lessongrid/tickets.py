from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict

from .errors import GridSuperseded


# Stale channels are dropped once every this many requests.
PURGE_EVERY = 256


@dataclass
class GridTicket:
    """Handle of one grid computation for a client channel."""

    channel: str
    sequence: int
    registry: "GridRequestRegistry" = field(repr=False)

    def is_current(self) -> bool:
        return self.registry.latest(self.channel) == self.sequence

    def ensure_current(self) -> None:
        if not self.is_current():
            raise GridSuperseded(self.channel)


class GridRequestRegistry:
    """Last-request-wins bookkeeping for grid builds.

    Each new request on a channel supersedes the previous ones; a build that
    notices its ticket is stale stops and its partial result is discarded.
    """

    def __init__(self, ttl_seconds: float = 3600.0) -> None:
        self._lock = threading.Lock()
        self._latest: Dict[str, int] = {}
        self._touched: Dict[str, float] = {}
        self._counter = 0
        self._ttl = ttl_seconds

    def begin(self, channel: str) -> GridTicket:
        if self._counter % PURGE_EVERY == PURGE_EVERY - 1:
            self.purge()
        with self._lock:
            self._counter += 1
            self._latest[channel] = self._counter
            self._touched[channel] = time.monotonic()
            return GridTicket(channel=channel, sequence=self._counter, registry=self)

    def latest(self, channel: str) -> int | None:
        with self._lock:
            return self._latest.get(channel)

    def purge(self) -> None:
        threshold = time.monotonic() - self._ttl
        with self._lock:
            stale = [key for key, touched in self._touched.items() if touched < threshold]
            for key in stale:
                self._latest.pop(key, None)
                self._touched.pop(key, None)


grid_requests = GridRequestRegistry()
