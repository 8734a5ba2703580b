from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from common.logger import get_logger

log = get_logger(__name__)

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: Optional[float]


class TTLCache(Generic[V]):
    """
    Per-key last-write-wins cache with a fixed TTL.

    The clock is injectable so expiry can be tested without sleeping. Expired
    entries are dropped lazily on read and swept once the store grows past
    `cleanup_threshold`.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        cleanup_threshold: int = 1000,
        prefix: str = "",
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.cleanup_threshold = cleanup_threshold
        self.prefix = prefix
        self._store: Dict[str, _Entry[V]] = {}
        self.hits = 0
        self.misses = 0

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[V]:
        entry = self._store.get(self._key(key))
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at is not None and entry.expires_at <= self.clock():
            del self._store[self._key(key)]
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def set(self, key: str, value: V, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        expires_at = None if ttl is None else self.clock() + ttl
        self._store[self._key(key)] = _Entry(value=value, expires_at=expires_at)
        if len(self._store) > self.cleanup_threshold:
            self.cleanup()

    def delete(self, key: str) -> bool:
        return self._store.pop(self._key(key), None) is not None

    def clear(self) -> None:
        self._store.clear()
        self.hits = 0
        self.misses = 0

    def cleanup(self) -> int:
        now = self.clock()
        expired = [
            k
            for k, e in self._store.items()
            if e.expires_at is not None and e.expires_at <= now
        ]
        for k in expired:
            del self._store[k]
        if expired:
            log.debug("Evicted %d expired cache entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> Dict[str, Any]:
        return {"size": len(self._store), "hits": self.hits, "misses": self.misses}
