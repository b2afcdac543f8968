"""In-memory guard against concurrent redelivery of the same event.

Address derivation already routes a redelivered event to the same unit.
This guard additionally refuses to open a second dispatch for an address
whose first dispatch has not finished. Markers are released when the
dispatch ends and expire after a TTL in case a release is never reached.
"""

from __future__ import annotations

import time
from collections.abc import Callable


class InFlightGuard:
    """Tracks dispatch addresses that currently have a call outstanding."""

    def __init__(
        self,
        ttl_seconds: float = 900,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._markers: dict[str, float] = {}

    def acquire(self, address: str) -> bool:
        """Return True if the caller now owns ``address``; False if already in flight."""
        now = self._clock()
        self._prune(now)
        if address in self._markers:
            return False
        self._markers[address] = now + self._ttl_seconds
        return True

    def release(self, address: str) -> None:
        self._markers.pop(address, None)

    def _prune(self, now: float) -> None:
        expired = [address for address, expires in self._markers.items() if expires <= now]
        for address in expired:
            del self._markers[address]

    def __len__(self) -> int:
        return len(self._markers)
