from __future__ import annotations

import copy
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol, Tuple

from tollgate.clock import Clock, SystemClock
from tollgate.logging import get_logger

logger = get_logger(__name__)


class ExpiringStore(Protocol):
    """Key/value store with a per-key TTL.

    Values must be JSON-serializable. A key's value is always replaced
    wholesale. ``pop`` reads and deletes in one atomic step so single-use
    artifacts cannot be redeemed twice; ``add`` only writes when the key is
    absent (or expired) and reports whether it did.
    """

    async def set(self, key: str, value: Any, ttl_ms: int) -> None: ...

    async def add(self, key: str, value: Any, ttl_ms: int) -> bool: ...

    async def get(self, key: str) -> Optional[Any]: ...

    async def delete(self, key: str) -> None: ...

    async def pop(self, key: str) -> Optional[Any]: ...

    async def close(self) -> None: ...


class MemoryExpiringStore:
    """Process-local ExpiringStore for single-node deployments and tests.

    Expiry is checked against the injected clock on every read, and expired
    entries are swept opportunistically on writes.
    """

    def __init__(self, clock: Optional[Clock] = None, *, sweep_every: int = 256) -> None:
        self.clock: Clock = clock or SystemClock()
        self._entries: Dict[str, Tuple[Any, datetime]] = {}
        self._lock = threading.Lock()
        self._sweep_every = max(1, sweep_every)
        self._writes = 0

    def _expired(self, expires_at: datetime, now: datetime) -> bool:
        return expires_at <= now

    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        expires_at = self.clock.now() + timedelta(milliseconds=ttl_ms)
        with self._lock:
            self._entries[key] = (copy.deepcopy(value), expires_at)
            self._writes += 1
            if self._writes % self._sweep_every == 0:
                self._sweep_locked()

    async def add(self, key: str, value: Any, ttl_ms: int) -> bool:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        now = self.clock.now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not self._expired(entry[1], now):
                return False
            self._entries[key] = (
                copy.deepcopy(value),
                now + timedelta(milliseconds=ttl_ms),
            )
            self._writes += 1
            return True

    async def get(self, key: str) -> Optional[Any]:
        now = self.clock.now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at, now):
                self._entries.pop(key, None)
                return None
            return copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def pop(self, key: str) -> Optional[Any]:
        now = self.clock.now()
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at, now):
            return None
        return value

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def _sweep_locked(self) -> int:
        now = self.clock.now()
        stale = [
            key
            for key, (_, expires_at) in self._entries.items()
            if self._expired(expires_at, now)
        ]
        for key in stale:
            self._entries.pop(key, None)
        if stale:
            logger.debug("expiring_store_sweep", cleaned=len(stale))
        return len(stale)

    def sweep(self) -> int:
        """Drop every expired entry; returns the number removed."""
        with self._lock:
            return self._sweep_locked()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
