"""In-memory per-team secret cache with sliding TTL."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)


class SecretCache:
    """Maps team id → that team's full secret map.

    Reads re-arm the entry's TTL (sliding expiration); writers call
    :meth:`invalidate` before acknowledging a mutation so a read on the
    same process afterwards always goes to the backend.
    """

    def __init__(
        self,
        ttl: int = 3600,
        maxsize: int = 1024,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)

    def get(self, team_id: str) -> Optional[Dict[str, Any]]:
        secrets = self._cache.get(team_id)
        if secrets is None:
            return None
        # re-inserting restarts the TTL clock
        self._cache[team_id] = secrets
        return secrets

    def set(self, team_id: str, secrets: Dict[str, Any]) -> None:
        self._cache[team_id] = secrets

    def invalidate(self, team_id: str) -> None:
        if self._cache.pop(team_id, None) is not None:
            logger.debug("Secret cache invalidated for team %s", team_id)
