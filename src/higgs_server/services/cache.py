"""Cache facade: bounded local TTL cache."""

import time
from collections import OrderedDict
from typing import Any

from higgs_server.base_service import BaseServiceFacade, facade

DEFAULT_TTL = 300.0
MAX_ENTRIES = 10000


@facade("cache")
class CacheFacade(BaseServiceFacade):
    """Per-worker key/value cache with expiry and LRU eviction."""

    def __init__(self, ctx=None, default_ttl: float = DEFAULT_TTL, max_entries: int = MAX_ENTRIES):
        super().__init__(ctx)
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    async def initialize(self):
        self._entries.clear()
        self.svc_logger.info(
            f"Local cache ready (ttl={self.default_ttl}s, max_entries={self.max_entries})"
        )

    async def close(self):
        size = len(self._entries)
        self._entries.clear()
        self.svc_logger.info(f"Cache cleared ({size} entries dropped)")

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return default
        expires_at, value = entry
        if expires_at <= time.monotonic():
            del self._entries[key]
            self.misses += 1
            return default
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: str, value: Any, ttl: float | None = None):
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = (time.monotonic() + ttl, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Drop expired entries, return how many were removed."""
        now = time.monotonic()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
        }
