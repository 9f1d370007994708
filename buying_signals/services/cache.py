"""In-memory short-TTL cache in front of the signal store."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    """Small namespaced cache with lazy expiry on access."""

    def __init__(self, default_ttl_seconds: float = 1800, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}

    @staticmethod
    def _key(namespace: str, key: str) -> str:
        return f"{namespace}:{key}"

    def get(self, namespace: str, key: str) -> Optional[Any]:
        self._evict_expired()
        entry = self._entries.get(self._key(namespace, key))
        return entry.value if entry else None

    def set(self, namespace: str, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        self._evict_expired()
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        self._entries[self._key(namespace, key)] = _CacheEntry(value=value, expires_at=self._clock() + ttl)

    def invalidate(self, namespace: str, key: str) -> None:
        self._entries.pop(self._key(namespace, key), None)

    def clear(self) -> None:
        self._entries.clear()

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            self._entries.pop(key, None)


signal_cache = TTLCache()
