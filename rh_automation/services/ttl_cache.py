"""Kleiner In-Memory TTL-Cache fuer Registry und Mail-Konfigurationen."""

import time
from collections.abc import Callable, Hashable
from typing import Any


class TTLCache:
    """Key → Wert mit Ablaufzeit.

    ``generation`` steigt bei jeder Invalidierung. Ein Loader, der vor der
    Invalidierung gestartet wurde, darf sein Ergebnis danach nicht mehr
    ablegen (``set(..., generation=alt)`` wird ignoriert).
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self.generation = 0
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is not None:
            expires_at, value = entry
            if expires_at > self._clock():
                self.hits += 1
                return True, value
            del self._entries[key]
        self.misses += 1
        return False, None

    def set(self, key: Hashable, value: Any, generation: int | None = None) -> None:
        if generation is not None and generation != self.generation:
            return
        if self.ttl_seconds <= 0:
            return
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def invalidate(self) -> None:
        self._entries.clear()
        self.generation += 1

    def __len__(self) -> int:
        return len(self._entries)
