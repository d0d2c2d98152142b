"""In-process read cache for API responses.

Entries expire lazily: nothing sweeps the store, a read past the entry's TTL
removes it and reports a miss. Writes elsewhere in the system keep cached
reads fresh by invalidating exact keys or whole key prefixes.

Keys follow ``<resource>:<scope>[:<subscope>]``; build them with the
``*_key`` helpers below rather than by hand.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 5 * 60 * 1000


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class CacheEntry:
    key: str
    value: Any
    stored_at: float
    ttl_ms: int

    def expired(self, now: float) -> bool:
        if self.ttl_ms <= 0:
            return True
        return now - self.stored_at > self.ttl_ms


class TTLCache:
    """Key/value store with per-entry expiry and prefix invalidation."""

    def __init__(self, clock: Callable[[], float] | None = None, default_ttl_ms: int = DEFAULT_TTL_MS) -> None:
        self._clock = clock or _monotonic_ms
        self.default_ttl_ms = default_ttl_ms
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        ttl = self.default_ttl_ms if ttl_ms is None else int(ttl_ms)
        entry = CacheEntry(key=key, value=value, stored_at=self._clock(), ttl_ms=ttl)
        with self._lock:
            self._entries[key] = entry

    def get(self, key: str, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if entry.expired(now):
                del self._entries[key]
                return default
            return entry.value

    def __contains__(self, key: str) -> bool:
        missing = object()
        return self.get(key, missing) is not missing

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_pattern(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``; returns the count removed."""

        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Invalidated %d cache entries with prefix %r", len(doomed), prefix)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
        expired = sum(1 for entry in entries if entry.expired(now))
        return {
            "totalEntries": len(entries),
            "validEntries": len(entries) - expired,
            "expiredEntries": expired,
        }


def points_round_key(round_id: str) -> str:
    return f"points:round:{round_id}"


def points_season_key(season_id: str) -> str:
    return f"points:season:{season_id}"


def points_driver_key(driver_id: str, season_id: Optional[str] = None) -> str:
    base = f"points:driver:{driver_id}"
    return f"{base}:{season_id}" if season_id else base


def division_changes_round_key(round_id: str) -> str:
    return f"division-changes:round:{round_id}"


def division_changes_season_key(season_id: str) -> str:
    return f"division-changes:season:{season_id}"


def drivers_season_key(season_id: str) -> str:
    return f"drivers:season:{season_id}"


def rounds_season_key(season_id: str) -> str:
    return f"rounds:season:{season_id}"


def standings_season_key(season_id: str, division: Optional[str] = None, round_id: Optional[str] = None) -> str:
    key = f"standings:season:{season_id}"
    if division:
        key = f"{key}:{division}"
        if round_id:
            key = f"{key}:{round_id}"
    return key


def _invalidate_scope(cache: TTLCache, key: str) -> List[str]:
    # Exact key plus its ``key:`` children, so "d1" never reaches "d10".
    cache.invalidate(key)
    cache.invalidate_pattern(f"{key}:")
    return [key, f"{key}:*"]


def invalidate_season_standings(cache: TTLCache, season_id: str) -> List[str]:
    return _invalidate_scope(cache, standings_season_key(season_id))


def invalidate_points_write(cache: TTLCache, season_id: str, round_id: str, driver_id: str) -> List[str]:
    """Invalidate every read derived from a single points record."""

    touched = [points_round_key(round_id), points_season_key(season_id)]
    for key in touched:
        cache.invalidate(key)
    touched.extend(_invalidate_scope(cache, points_driver_key(driver_id)))
    touched.extend(invalidate_season_standings(cache, season_id))
    return touched


def invalidate_division_change(
    cache: TTLCache,
    season_id: str,
    round_id: str,
    driver_id: str,
    corrected_round_ids: Iterable[str] = (),
) -> List[str]:
    """Invalidate reads affected by a driver's division change in a round.

    Corrections may touch points earned in other rounds; their round keys
    are dropped too.
    """

    touched = invalidate_points_write(cache, season_id, round_id, driver_id)
    for other_round_id in sorted(set(corrected_round_ids) - {round_id}):
        key = points_round_key(other_round_id)
        cache.invalidate(key)
        touched.append(key)
    for key in (
        division_changes_round_key(round_id),
        division_changes_season_key(season_id),
        drivers_season_key(season_id),
    ):
        cache.invalidate(key)
        touched.append(key)
    return touched
