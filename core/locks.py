"""Keyed advisory locks for per-address check-then-mutate sections.

One outstanding holder per key. Leases expire after ``ttl_seconds`` so a
holder that never releases (crashed request) cannot wedge an address forever.
Waiters park on an ``asyncio.Event`` instead of polling.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class LockTimeout(Exception):
    """Raised when a key could not be acquired within the allowed wait."""

    def __init__(self, key: str, waited: float):
        super().__init__(f"Lock for {key} is busy (waited {waited:.1f}s)")
        self.key = key
        self.waited = waited


@dataclass
class _Lease:
    token: str
    acquired_at: float
    released: asyncio.Event = field(default_factory=asyncio.Event)


class KeyedLock:
    def __init__(self, *, name: str, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._leases: Dict[str, _Lease] = {}

    def _live_lease(self, key: str) -> Optional[_Lease]:
        lease = self._leases.get(key)
        if lease is None:
            return None
        if self._clock() - lease.acquired_at >= self._ttl:
            logger.warning("[%s] lease for %s expired after %.0fs, releasing", self.name, key, self._ttl)
            self._leases.pop(key, None)
            lease.released.set()
            return None
        return lease

    def _grant(self, key: str) -> str:
        token = uuid.uuid4().hex
        self._leases[key] = _Lease(token=token, acquired_at=self._clock())
        return token

    def is_locked(self, key: str) -> bool:
        return self._live_lease(key) is not None

    def try_acquire(self, key: str) -> Optional[str]:
        """Non-blocking acquire. Returns a release token, or None if held."""
        if self._live_lease(key) is not None:
            return None
        return self._grant(key)

    async def acquire(self, key: str, *, timeout: float) -> str:
        """Wait up to ``timeout`` seconds for the key; raise LockTimeout otherwise."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + max(0.0, timeout)
        while True:
            lease = self._live_lease(key)
            if lease is None:
                return self._grant(key)
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise LockTimeout(key, loop.time() - started)
            until_expiry = max(0.0, lease.acquired_at + self._ttl - self._clock())
            try:
                await asyncio.wait_for(lease.released.wait(), timeout=min(remaining, until_expiry))
            except asyncio.TimeoutError:
                pass

    def release(self, key: str, token: str) -> bool:
        lease = self._leases.get(key)
        if lease is None or lease.token != token:
            # Expired and taken over by someone else; not ours to release.
            return False
        del self._leases[key]
        lease.released.set()
        return True

    @asynccontextmanager
    async def hold(self, key: str, *, timeout: float) -> AsyncIterator[str]:
        token = await self.acquire(key, timeout=timeout)
        try:
            yield token
        finally:
            self.release(key, token)
