from __future__ import annotations

from typing import Tuple

# Strongest first; "New" is the lowest tier.
DIVISIONS: Tuple[str, ...] = ("Division 1", "Division 2", "Division 3", "Division 4", "New")


def division_rank(division: str) -> int:
    """Return the tier index (0 is the top division)."""

    try:
        return DIVISIONS.index(division)
    except ValueError as exc:
        raise ValueError(f"Unknown division '{division}'") from exc


def classify_change(from_division: str, to_division: str) -> str:
    """Promotion when the target tier ranks above the current one, demotion otherwise."""

    if division_rank(to_division) < division_rank(from_division):
        return "promotion"
    return "demotion"
