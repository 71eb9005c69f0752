"""In-memory artifact cache with strict FIFO eviction.

Eviction follows insertion order only: a ``get`` never refreshes an entry,
so a frequently hit artifact can still be evicted before a newer, untouched
one. Nothing here is persisted.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections import OrderedDict

from scenescore.config import CACHE_MAX_SIZE

logger = logging.getLogger(__name__)


def cache_key(prompt: str, context: str = "") -> str:
    """Deterministic key for (context label, prompt text).

    The same prompt under the same context always maps to the same key,
    across processes.
    """
    digest = hashlib.sha1(prompt.encode("utf-8")).hexdigest()[:16]
    return f"{context}_{digest}"


class ArtifactCache:
    """Bounded key -> artifact store."""

    def __init__(self, capacity: int = CACHE_MAX_SIZE):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._entries: OrderedDict[str, bytes] = OrderedDict()
        self._lock = threading.Lock()

    def put(self, key: str, artifact: bytes) -> None:
        with self._lock:
            if key in self._entries:
                # Replacing keeps the original insertion slot.
                self._entries[key] = artifact
                return
            if len(self._entries) >= self.capacity:
                oldest_key, _ = self._entries.popitem(last=False)
                logger.info("[CACHE] Evicted %s", oldest_key)
            self._entries[key] = artifact
            logger.debug("[CACHE] Cached %s (%s)", key, self.info())

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._entries.get(key)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("[CACHE] Cleared")

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def info(self) -> str:
        return f"{len(self._entries)}/{self.capacity}"

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
