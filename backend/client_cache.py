"""
Client-side cache and request deduplication.

Both are plain objects built once when the client starts and handed to
whatever needs them. Nothing here is a module-level singleton.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, MutableMapping, Optional, Tuple

logger = logging.getLogger(__name__)

# Hard cap so a misconfigured TTL cannot keep stale data forever
MAX_TTL_SECONDS = 24 * 60 * 60


class CacheService:
    """
    TTL cache over an injected key/value storage.

    storage can be a dict, a shelve, or anything else mapping str -> value.
    Entries are stored as (expires_at, value).
    """

    def __init__(
        self,
        storage: Optional[MutableMapping[str, Tuple[float, Any]]] = None,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.storage = storage if storage is not None else {}
        self.ttl_seconds = min(ttl_seconds, MAX_TTL_SECONDS)
        self.clock = clock

    def get(self, key: str) -> Optional[Any]:
        entry = self.storage.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            self.storage.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None):
        if ttl_seconds is None:
            ttl_seconds = self.ttl_seconds
        elif ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        ttl = min(ttl_seconds, MAX_TTL_SECONDS)
        self.storage[key] = (self.clock() + ttl, value)

    def invalidate(self, key: str):
        self.storage.pop(key, None)

    def invalidate_prefix(self, prefix: str):
        for key in [k for k in self.storage if k.startswith(prefix)]:
            self.storage.pop(key, None)

    def clear(self):
        self.storage.clear()


class RequestDeduplicator:
    """
    Collapses concurrent calls for the same key into one in-flight task.

    Best effort and local to one client instance; it is not a lock. Once the
    task finishes the key is released, so the next call runs again.
    """

    def __init__(self):
        self._pending: Dict[str, asyncio.Task] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._pending[key] = task
            task.add_done_callback(lambda _: self._pending.pop(key, None))
        else:
            logger.debug(f"Joining in-flight request for {key}")
        # shield: one caller being cancelled must not cancel the others
        return await asyncio.shield(task)
