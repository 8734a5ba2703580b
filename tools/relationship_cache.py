from __future__ import annotations

import time
from typing import Callable, List, Optional, Protocol

from common.cache import TTLCache
from common.config import CacheConfig, yaml_config
from common.logger import get_logger

log = get_logger(__name__)


class RelationshipProvider(Protocol):
    async def get_student_ids(self, district_id: str, user_id: str) -> List[str]: ...


class RelationshipCache:
    """Parent -> student links, cached per (district, user)."""

    def __init__(
        self,
        provider: RelationshipProvider,
        config: Optional[CacheConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        cfg = config or yaml_config.cache
        self.provider = provider
        self._cache: TTLCache[List[str]] = TTLCache(
            cfg.relationship_ttl_seconds,
            clock=clock,
            cleanup_threshold=cfg.cleanup_threshold,
            prefix="relationships:",
        )

    @staticmethod
    def _key(district_id: str, user_id: str) -> str:
        return f"{district_id}:{user_id}"

    async def get_student_ids(self, district_id: str, user_id: str) -> List[str]:
        key = self._key(district_id, user_id)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)
        ids = list(await self.provider.get_student_ids(district_id, user_id))
        self._cache.set(key, ids)
        log.debug("Cached %d student links for %s", len(ids), key)
        return list(ids)

    def invalidate(self, district_id: str, user_id: str) -> None:
        self._cache.delete(self._key(district_id, user_id))

    async def has_access(self, district_id: str, user_id: str, student_id: str) -> bool:
        return student_id in await self.get_student_ids(district_id, user_id)
