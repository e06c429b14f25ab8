"""Thread-safe in-memory LRU cache for query embeddings, bounded by bytes.

Design decisions
────────────────
• **OrderedDict** for O(1) LRU eviction and promotion.
• **Size tracking** as ``8 bytes × dimensions`` per vector (float64), which
  is what the cached ``list[float]`` costs at minimum.
• **threading.Lock** because FastAPI serves concurrent turns from one
  process and they share the embedder.
• Keys are normalised message text, so "Hi", "hi " and "HI" share an entry.
• Purely ephemeral: a restart only costs a few re-embeddings.

Usage in FastEmbedder
─────────────────────
>>> cache = VectorCache(max_bytes=8 * 1024 * 1024)
>>> cache.put("what are today's offers", [0.12, -0.03, ...])
>>> cache.get("What are today's offers ")
[0.12, -0.03, ...]
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict

logger = logging.getLogger(__name__)

# Default ceiling: 8 MB (~5 000 vectors of 384 dims)
DEFAULT_MAX_BYTES = 8 * 1024 * 1024
BYTES_PER_DIMENSION = 8


def normalise_key(text: str) -> str:
    return " ".join((text or "").lower().split())


class VectorCache:
    """Least-Recently-Used vector cache bounded by total estimated byte size."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self._max_bytes = max_bytes
        self._current_bytes = 0
        # key → (vector, estimated_size_bytes)
        self._store: OrderedDict[str, tuple[list[float], int]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    # ── Core operations ──────────────────────────────────────────────

    def get(self, text: str) -> list[float] | None:
        """Return a copy of the cached vector (promoting it to MRU) or ``None``."""
        key = normalise_key(text)
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self.misses += 1
                return None
            self._store.move_to_end(key)
            self.hits += 1
            return list(entry[0])

    def put(self, text: str, vector: list[float]) -> None:
        """Insert or overwrite the vector for *text*.  Evicts LRU entries if needed."""
        key = normalise_key(text)
        size = len(vector) * BYTES_PER_DIMENSION

        if not vector or size > self._max_bytes:
            logger.debug("Cache: skipping key %r (size %d, max %d)", key, size, self._max_bytes)
            return

        with self._lock:
            if key in self._store:
                _, old_size = self._store.pop(key)
                self._current_bytes -= old_size

            while self._current_bytes + size > self._max_bytes and self._store:
                evicted_key, (_, evicted_size) = self._store.popitem(last=False)
                self._current_bytes -= evicted_size
                logger.debug("Cache: evicted %r (%d bytes)", evicted_key, evicted_size)

            self._store[key] = (list(vector), size)
            self._current_bytes += size

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._current_bytes = 0

    # ── Introspection ────────────────────────────────────────────────

    @property
    def current_bytes(self) -> int:
        return self._current_bytes

    @property
    def entry_count(self) -> int:
        return len(self._store)
