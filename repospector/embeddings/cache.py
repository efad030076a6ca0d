"""Bounded, time-expiring memoization of single-text embeddings.

Query embeddings repeat a lot (the same question asked twice, retries from
the caller), so the service keeps the most recent ones in memory.

The key is a fast 32-bit string hash.  It is a memoization key, not a
security boundary: the original text is stored next to the vector and a
hash collision with a different text is treated as a miss.

No lock is taken.  All cache access happens on the event loop and a
get/evict/set sequence contains no ``await``, so it cannot interleave with
another task.  Code that calls the cache from OS threads must add one.
"""
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100
DEFAULT_TTL_SECONDS = 300.0


def hash_text(text: str) -> str:
    """Return a 32-bit signed rolling hash (``h * 31 + c``) of *text*."""
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return str(h)


@dataclass
class CacheEntry:
    key: str
    text: str
    vector: list[float]
    inserted_at: float


class EmbeddingCache:
    """Insertion-ordered cache with a TTL; the oldest insertion goes first.

    Args:
        capacity: Maximum number of entries kept at any time.
        ttl:      Lifetime of an entry in seconds.
        clock:    Monotonic time source; tests inject a fake one.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._capacity = capacity
        self._ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def ttl(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, text: str) -> Optional[list[float]]:
        """Return the cached vector for *text*, or ``None`` on a miss.

        Expired entries are removed as they are encountered.
        """
        key = hash_text(text)
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._clock() - entry.inserted_at >= self._ttl:
            del self._entries[key]
            return None

        if entry.text != text:
            logger.debug("[EmbeddingCache] hash collision on key %s, treating as miss", key)
            return None

        return entry.vector

    def set(self, text: str, vector: list[float]) -> None:
        """Store *vector* for *text*, evicting the oldest entries when full."""
        key = hash_text(text)
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(
            key=key,
            text=text,
            vector=vector,
            inserted_at=self._clock(),
        )

        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
