"""
ToolRelay Cache Engine - TTL cache of discovered remote tool catalogs.

One entry per server name. Entries are never mutated: a refresh builds a
new entry and swaps a new mapping in (copy-on-write), so readers always
see a consistent snapshot without holding a lock.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CachedTools(Generic[T]):
    """A snapshot of one server's tool list and when it was captured."""

    tools: Tuple[T, ...]
    timestamp: float

    def is_expired(self, now: float, ttl: float) -> bool:
        return (now - self.timestamp) >= ttl


class ToolCache(Generic[T]):
    """
    In-memory TTL cache keyed by server name.

    ``clock`` returns seconds; it defaults to ``time.monotonic`` and is
    injectable for tests.
    """

    def __init__(self, ttl: float = 600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, CachedTools[T]] = {}
        self._write_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._refreshes = 0

    def get(self, server_name: str) -> Optional[Tuple[T, ...]]:
        """
        Get the cached tools for a server.

        Returns None if not cached or expired.
        """
        entry = self._entries.get(server_name)
        if entry is None or entry.is_expired(self.clock(), self.ttl):
            with self._write_lock:
                self._misses += 1
            return None
        with self._write_lock:
            self._hits += 1
        return entry.tools

    def entry(self, server_name: str) -> Optional[CachedTools[T]]:
        return self._entries.get(server_name)

    def set(self, server_name: str, tools: Sequence[T], timestamp: Optional[float] = None) -> CachedTools[T]:
        """Replace the entry for a server wholesale."""
        entry = CachedTools(tuple(tools), self.clock() if timestamp is None else timestamp)
        with self._write_lock:
            self._entries = {**self._entries, server_name: entry}
            self._refreshes += 1
        return entry

    def invalidate(self, server_name: str) -> bool:
        with self._write_lock:
            if server_name not in self._entries:
                return False
            self._entries = {k: v for k, v in self._entries.items() if k != server_name}
            return True

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared.
        """
        with self._write_lock:
            cleared = len(self._entries)
            self._entries = {}
        return cleared

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        now = self.clock()
        return {
            "entries": len(self._entries),
            "fresh_entries": sum(1 for e in self._entries.values() if not e.is_expired(now, self.ttl)),
            "hits": self._hits,
            "misses": self._misses,
            "refreshes": self._refreshes,
            "ttl_seconds": self.ttl,
        }
