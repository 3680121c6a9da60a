"""Short-lived snapshots of amenity configuration.

Read paths (eligibility lookups, listing) may serve a slightly stale amenity.
Admission and promotion read capacity from the locked row instead.
"""
from __future__ import annotations

from typing import Optional

from cachetools import TTLCache

from .schemas import AmenityRead


class AmenityConfigCache:
    def __init__(self, ttl: int, maxsize: int = 512) -> None:
        self._entries: TTLCache[int, AmenityRead] = TTLCache(maxsize=maxsize, ttl=ttl)

    def get(self, amenity_id: int) -> Optional[AmenityRead]:
        return self._entries.get(amenity_id)

    def put(self, snapshot: AmenityRead) -> AmenityRead:
        self._entries[snapshot.id] = snapshot
        return snapshot

    def invalidate(self, amenity_id: int) -> bool:
        """Drop one amenity; returns whether it was cached."""
        return self._entries.pop(amenity_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
