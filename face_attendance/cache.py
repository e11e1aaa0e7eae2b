"""
TTL cache for reference embeddings.

Constructed once at startup and shared by every verification attempt.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import numpy as np

from face_attendance.config import EMBEDDING_CACHE_TTL_SECONDS, EMBEDDING_CACHE_PURGE_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


@dataclass(frozen=True)
class CacheEntry:
    identity_id: str
    embedding: np.ndarray
    inserted_at: float


class EmbeddingCache:
    """
    Maps identity id to reference embedding.

    Reads take no lock. Writes take one of a fixed pool of striped locks,
    so writes to one id are serialized (last write wins) and the lock table
    never grows with the number of identities.

    Every invalidation bumps the identity's generation. A reader that missed
    the cache captures the generation before loading from the store and
    passes it to put(); the put is dropped if an invalidation happened
    in between.
    """

    def __init__(
        self,
        ttl_seconds: float = EMBEDDING_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        lock_stripes: int = LOCK_STRIPES
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._generations: Dict[str, int] = {}
        self._locks = tuple(threading.Lock() for _ in range(max(1, lock_stripes)))

    def _lock_for(self, identity_id: str) -> threading.Lock:
        return self._locks[hash(identity_id) % len(self._locks)]

    def _expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.inserted_at > self.ttl_seconds

    def _evict(self, key: str, entry: CacheEntry) -> bool:
        with self._lock_for(key):
            if self._entries.get(key) is entry:
                del self._entries[key]
                return True
        return False

    def get(self, identity_id: str) -> Optional[np.ndarray]:
        """Cached embedding, or None if absent or older than the TTL."""
        key = str(identity_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry):
            self._evict(key, entry)
            return None
        return entry.embedding

    def generation(self, identity_id: str) -> int:
        """Invalidation count for an identity, captured before a store read."""
        return self._generations.get(str(identity_id), 0)

    def put(self, identity_id: str, embedding, generation: Optional[int] = None) -> bool:
        """
        Store an embedding.

        Returns False without storing when generation is given and the
        identity was invalidated since it was captured.
        """
        key = str(identity_id)
        entry = CacheEntry(
            identity_id=key,
            embedding=np.asarray(embedding, dtype=np.float32),
            inserted_at=self._clock()
        )
        with self._lock_for(key):
            if generation is not None and self._generations.get(key, 0) != generation:
                logger.debug(f"Skipped stale cache fill for {key}")
                return False
            self._entries[key] = entry
        return True

    def invalidate(self, identity_id: str) -> bool:
        """Drop the entry for an identity whose reference embedding changed."""
        key = str(identity_id)
        with self._lock_for(key):
            self._generations[key] = self._generations.get(key, 0) + 1
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug(f"Invalidated cached embedding for {key}")
        return removed

    def purge_expired(self) -> int:
        """Remove expired entries. Returns the number removed."""
        removed = 0
        for key, entry in list(self._entries.items()):
            if self._expired(entry) and self._evict(key, entry):
                removed += 1
        return removed

    def __len__(self) -> int:
        return sum(1 for entry in list(self._entries.values()) if not self._expired(entry))


async def purge_periodically(
    cache: EmbeddingCache,
    interval_seconds: float = EMBEDDING_CACHE_PURGE_INTERVAL_SECONDS
):
    """Evict expired entries every interval until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        removed = cache.purge_expired()
        if removed:
            logger.info(f"Purged {removed} expired embedding(s) from cache")
