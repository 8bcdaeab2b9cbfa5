"""
Read-through cache for vector collection searches.

Entries are keyed by (org_id, memory_type, query_hash) and dropped wholesale for a
collection whenever that collection is written to. Each invalidation bumps the
collection's generation; results computed under an older generation are not stored.
"""

import hashlib
import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..models.core import CollectionKey, MemoryRecord, SearchFilter

CachedResults = List[Tuple[MemoryRecord, float]]


def query_hash(query_embedding: Sequence[float], search_filter: Optional[SearchFilter], top_k: int) -> str:
    """Stable digest of everything that determines a search's result."""
    digest = hashlib.sha256(np.asarray(query_embedding, dtype=np.float32).tobytes())
    digest.update((search_filter.cache_token() if search_filter else '*').encode('utf-8'))
    digest.update(str(top_k).encode('utf-8'))
    return digest.hexdigest()


class SearchCache:
    """TTL cache of search results grouped by collection."""

    def __init__(self, ttl_seconds: float = 60.0):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[CollectionKey, Dict[str, Tuple[float, CachedResults]]] = {}
        self._generations: Dict[CollectionKey, int] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: CollectionKey, digest: str) -> Optional[CachedResults]:
        with self._lock:
            entry = self._entries.get(key, {}).get(digest)
            if entry is None or entry[0] < time.monotonic():
                self.misses += 1
                return None
            self.hits += 1
            return list(entry[1])

    def generation(self, key: CollectionKey) -> int:
        """Read before running a search and pass to `put`."""
        with self._lock:
            return self._generations.get(key, 0)

    def put(self, key: CollectionKey, digest: str, results: CachedResults, generation: Optional[int] = None) -> bool:
        """Store results unless the collection was invalidated since `generation` was read."""
        with self._lock:
            if generation is not None and generation != self._generations.get(key, 0):
                return False
            self._entries.setdefault(key, {})[digest] = (time.monotonic() + self.ttl_seconds, list(results))
            return True

    def invalidate(self, key: CollectionKey) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._generations[key] = self._generations.get(key, 0) + 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
