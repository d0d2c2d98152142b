from __future__ import annotations

import pytest

from kart_core import TTLCache
from kart_core import cache as cache_module


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def cache(clock: _Clock) -> TTLCache:
    return TTLCache(clock=clock, default_ttl_ms=1000)


def test_entry_readable_until_ttl_elapses(cache: TTLCache, clock: _Clock) -> None:
    cache.set("drivers:season:s1", ["a"])
    clock.now = 1000
    assert cache.get("drivers:season:s1") == ["a"]
    clock.now = 1001
    assert cache.get("drivers:season:s1") is None
    assert cache.stats()["totalEntries"] == 0


def test_zero_ttl_is_never_readable(cache: TTLCache) -> None:
    cache.set("points:round:r1", [1], ttl_ms=0)
    assert cache.get("points:round:r1") is None
    assert "points:round:r1" not in cache


def test_falsy_values_are_cache_hits(cache: TTLCache) -> None:
    cache.set("points:round:r1", [])
    assert "points:round:r1" in cache
    assert cache.get("points:round:r1", "missing") == []


def test_invalidate_pattern_removes_prefix_only(cache: TTLCache) -> None:
    cache.set("points:driver:d1", 1)
    cache.set("points:driver:d1:s1", 2)
    cache.set("points:round:r1", 3)

    removed = cache.invalidate_pattern("points:driver:")

    assert removed == 2
    assert cache.get("points:round:r1") == 3
    assert cache.get("points:driver:d1") is None


def test_stats_counts_expired_entries(cache: TTLCache, clock: _Clock) -> None:
    cache.set("a", 1, ttl_ms=10)
    cache.set("b", 2, ttl_ms=5000)
    clock.now = 100

    assert cache.stats() == {"totalEntries": 2, "validEntries": 1, "expiredEntries": 1}

    cache.clear()
    assert cache.stats()["totalEntries"] == 0


def test_key_builders() -> None:
    assert cache_module.points_round_key("r1") == "points:round:r1"
    assert cache_module.points_season_key("s1") == "points:season:s1"
    assert cache_module.points_driver_key("d1") == "points:driver:d1"
    assert cache_module.points_driver_key("d1", "s1") == "points:driver:d1:s1"
    assert cache_module.division_changes_round_key("r1") == "division-changes:round:r1"
    assert cache_module.division_changes_season_key("s1") == "division-changes:season:s1"
    assert cache_module.drivers_season_key("s1") == "drivers:season:s1"
    assert cache_module.standings_season_key("s1", "Division 1", "r1") == "standings:season:s1:Division 1:r1"


def test_points_write_leaves_other_drivers_cached(cache: TTLCache) -> None:
    cache.set(cache_module.points_driver_key("d1"), "mine")
    cache.set(cache_module.points_driver_key("d1", "s1"), "mine-season")
    cache.set(cache_module.points_driver_key("d10"), "other")
    cache.set(cache_module.points_driver_key("d10", "s1"), "other-season")
    cache.set(cache_module.standings_season_key("s1", "Division 1"), "table")
    cache.set(cache_module.standings_season_key("s2", "Division 1"), "other-table")

    cache_module.invalidate_points_write(cache, "s1", "r1", "d1")

    assert cache.get(cache_module.points_driver_key("d1")) is None
    assert cache.get(cache_module.points_driver_key("d1", "s1")) is None
    assert cache.get(cache_module.points_driver_key("d10")) == "other"
    assert cache.get(cache_module.points_driver_key("d10", "s1")) == "other-season"
    assert cache.get(cache_module.standings_season_key("s1", "Division 1")) is None
    assert cache.get(cache_module.standings_season_key("s2", "Division 1")) == "other-table"


def test_division_change_invalidates_log_and_drivers(cache: TTLCache) -> None:
    for key in (
        cache_module.points_round_key("r1"),
        cache_module.points_season_key("s1"),
        cache_module.division_changes_round_key("r1"),
        cache_module.division_changes_season_key("s1"),
        cache_module.drivers_season_key("s1"),
        cache_module.rounds_season_key("s1"),
    ):
        cache.set(key, "x")

    cache_module.invalidate_division_change(cache, "s1", "r1", "d1")

    assert cache.stats()["totalEntries"] == 1
    assert cache.get(cache_module.rounds_season_key("s1")) == "x"


def test_standings_scope_is_per_season(cache: TTLCache) -> None:
    cache.set(cache_module.standings_season_key("s1", "New"), "s1")
    cache.set(cache_module.standings_season_key("s10", "New"), "s10")

    cache_module.invalidate_season_standings(cache, "s1")

    assert cache.get(cache_module.standings_season_key("s1", "New")) is None
    assert cache.get(cache_module.standings_season_key("s10", "New")) == "s10"
