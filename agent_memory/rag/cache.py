"""
Retrieval result cache.

Bounded LRU with per-entry TTL, keyed by the query embedding (rounded so
that near-identical vectors share an entry) and a fingerprint of the
retrieval configuration. Entries remember which conversations they were
built from so the embedding worker can invalidate them on write.

Every clear or invalidation bumps a generation counter. A retrieval reads
the generation before it searches and hands it back to put(); if the
store changed in between, the result is not cached.
"""

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence

import numpy as np

from ..errors import CacheError

logger = logging.getLogger("agent_memory.rag.cache")

KEY_PRECISION = 3


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    conversation_ids: frozenset[int]


class RagCache:
    """
    Thread-safe LRU + TTL cache for retrieval results.

    All operations take a single lock and do no I/O while holding it.
    """

    def __init__(
        self,
        capacity: int = 100,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._generation = 0
        self.hits = 0
        self.misses = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def configure(self, capacity: Optional[int] = None, ttl_seconds: Optional[float] = None) -> None:
        """Change capacity and default TTL in place, evicting LRU entries over the new capacity."""
        if capacity is not None and capacity < 1:
            raise ValueError("capacity must be at least 1")
        with self._lock:
            if ttl_seconds is not None:
                self.ttl_seconds = ttl_seconds
            if capacity is not None:
                self.capacity = capacity
                while len(self._entries) > self.capacity:
                    self._entries.popitem(last=False)

    @staticmethod
    def make_key(query_embedding: Sequence[float], fingerprint: str) -> str:
        """
        Derive a cache key.

        Raises:
            CacheError: the embedding is empty or has non-finite values
        """
        try:
            vector = np.asarray(query_embedding, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise CacheError(f"Unusable query embedding: {e}") from e
        if vector.ndim != 1 or vector.size == 0:
            raise CacheError("Cannot key an empty query embedding")
        if not np.all(np.isfinite(vector)):
            raise CacheError("Cannot key a query embedding with NaN or infinite values")

        # + 0.0 folds -0.0 into 0.0 so both round to the same bytes
        rounded = np.round(vector, KEY_PRECISION) + 0.0
        vector_hash = hashlib.sha256(rounded.tobytes()).hexdigest()
        config_hash = hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()
        return f"{vector_hash}:{config_hash}"

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss or expiry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self.clock() >= entry.expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.value

    def put(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        conversation_ids: Iterable[int] = (),
        generation: Optional[int] = None,
    ) -> bool:
        """
        Store *value* under *key*. Returns False when nothing was stored.

        With *generation*, the entry is dropped if the cache was cleared or
        invalidated since that generation was read.
        """
        ttl = self.ttl_seconds if ttl is None else ttl
        if ttl <= 0:
            return False
        entry = CacheEntry(
            value=value,
            expires_at=self.clock() + ttl,
            conversation_ids=frozenset(conversation_ids),
        )
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug("Dropping retrieval computed before the last invalidation")
                return False
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
        return True

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_conversation(self, conversation_id: int) -> int:
        """Drop every entry built from *conversation_id*. Returns the number dropped."""
        with self._lock:
            self._generation += 1
            stale = [
                key for key, entry in self._entries.items()
                if conversation_id in entry.conversation_ids
            ]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug(f"Invalidated {len(stale)} cached retrievals for conversation {conversation_id}")
        return len(stale)

    def clear(self) -> int:
        with self._lock:
            self._generation += 1
            removed = len(self._entries)
            self._entries.clear()
        return removed

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self.capacity,
                "hits": self.hits,
                "misses": self.misses,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and self.clock() < entry.expires_at
