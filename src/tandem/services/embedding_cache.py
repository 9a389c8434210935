"""Bounded LRU cache of embedding vectors keyed by content hash."""

import asyncio
import hashlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from ..lib.metrics import get_metrics


logger = logging.getLogger(__name__)

# float64 components
BYTES_PER_COMPONENT = 8


@dataclass
class EmbeddingCacheEntry:
    """A cached vector and its bookkeeping."""
    content_hash: str
    vector: List[float]
    size_bytes: int
    last_access: float = field(default_factory=time.monotonic)


@dataclass
class CacheStats:
    """Counters exposed for monitoring and tests."""
    hits: int = 0
    misses: int = 0
    computes: int = 0
    evictions: int = 0
    failures: int = 0


class EmbeddingCache:
    """
    LRU cache with at most one in-flight computation per content hash.

    Concurrent callers asking for the same missing hash share the first
    caller's computation. A failed computation is not cached; every waiter
    sees the error and the next call computes again. A waiter that is
    cancelled does not cancel the shared computation.
    """

    def __init__(self, max_entries: int = 4096, max_bytes: Optional[int] = None):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.stats = CacheStats()
        self._entries: "OrderedDict[str, EmbeddingCacheEntry]" = OrderedDict()
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._total_bytes = 0
        self.metrics = get_metrics()

    @staticmethod
    def content_hash(text: str, model_id: str = "default") -> str:
        """SHA-256 over the model id and the text."""
        digest = hashlib.sha256()
        digest.update(model_id.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(text.encode("utf-8"))
        return digest.hexdigest()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, content_hash: str) -> bool:
        return content_hash in self._entries

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def peek(self, content_hash: str) -> Optional[List[float]]:
        """Look up without touching recency or counters."""
        entry = self._entries.get(content_hash)
        return list(entry.vector) if entry else None

    async def get_or_compute(
        self,
        content_hash: str,
        compute_fn: Callable[[], Awaitable[List[float]]]
    ) -> List[float]:
        """
        Return the cached vector for ``content_hash``, computing it on a miss.

        Args:
            content_hash: Key produced by ``content_hash``
            compute_fn: Zero-argument coroutine function producing the vector

        Returns:
            A copy of the embedding vector
        """
        entry = self._entries.get(content_hash)
        if entry is not None:
            self._entries.move_to_end(content_hash)
            entry.last_access = time.monotonic()
            self.stats.hits += 1
            self.metrics.record_cache_lookup(hit=True)
            return list(entry.vector)

        self.stats.misses += 1
        self.metrics.record_cache_lookup(hit=False)

        future = self._in_flight.get(content_hash)
        if future is None:
            future = asyncio.ensure_future(self._compute(content_hash, compute_fn))
            self._in_flight[content_hash] = future
        else:
            logger.debug(f"Joining in-flight embedding computation for {content_hash[:12]}")

        vector = await asyncio.shield(future)
        return list(vector)

    async def _compute(
        self,
        content_hash: str,
        compute_fn: Callable[[], Awaitable[List[float]]]
    ) -> List[float]:
        self.stats.computes += 1
        try:
            vector = list(await compute_fn())
        except BaseException:
            self.stats.failures += 1
            raise
        else:
            self._store(content_hash, vector)
            return vector
        finally:
            self._in_flight.pop(content_hash, None)

    def _store(self, content_hash: str, vector: List[float]) -> None:
        size = len(vector) * BYTES_PER_COMPONENT
        previous = self._entries.pop(content_hash, None)
        if previous is not None:
            self._total_bytes -= previous.size_bytes

        self._entries[content_hash] = EmbeddingCacheEntry(content_hash, vector, size)
        self._total_bytes += size
        self._evict()

    def _evict(self) -> None:
        evicted = 0
        while len(self._entries) > self.max_entries or (
            self.max_bytes is not None and self._total_bytes > self.max_bytes and len(self._entries) > 1
        ):
            _, entry = self._entries.popitem(last=False)
            self._total_bytes -= entry.size_bytes
            evicted += 1

        if evicted:
            self.stats.evictions += evicted
            self.metrics.record_cache_eviction(evicted)
            logger.debug(f"Evicted {evicted} embedding(s); {len(self._entries)} remain")

    def clear(self) -> None:
        self._entries.clear()
        self._total_bytes = 0
