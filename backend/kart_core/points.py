from __future__ import annotations

import math
from typing import Dict, Optional, Tuple

RACE_TYPES = ("qualification", "heat", "final")

# Position -> (standard, major, minor)
_POINTS_TABLE: Dict[int, Tuple[int, int, int]] = {
    1: (75, 60, 15),
    2: (70, 58, 12),
    3: (65, 56, 10),
    4: (62, 54, 9),
    5: (60, 52, 8),
    6: (58, 50, 7),
    7: (56, 48, 6),
    8: (54, 46, 5),
    9: (52, 44, 4),
    10: (50, 42, 3),
    11: (48, 40, 2),
    12: (46, 38, 1),
    13: (44, 36, 1),
    14: (42, 34, 1),
    15: (40, 32, 1),
    16: (38, 30, 1),
    17: (36, 28, 1),
    18: (34, 26, 1),
    19: (32, 24, 1),
    20: (30, 22, 1),
    21: (28, 20, 1),
    22: (26, 18, 1),
    23: (24, 16, 1),
    24: (22, 15, 1),
    25: (20, 14, 1),
    26: (19, 13, 1),
    27: (18, 12, 1),
    28: (17, 11, 1),
    29: (16, 10, 1),
    30: (15, 9, 1),
    31: (14, 8, 1),
    32: (13, 7, 1),
    33: (12, 6, 1),
    34: (11, 5, 1),
    35: (10, 4, 1),
    36: (9, 3, 1),
    37: (8, 2, 1),
    38: (7, 1, 1),
    39: (6, 1, 1),
    40: (5, 1, 1),
    41: (4, 1, 1),
    42: (3, 1, 1),
    43: (2, 1, 1),
    44: (2, 1, 1),
    45: (2, 1, 1),
    46: (2, 1, 1),
    47: (2, 1, 1),
    48: (2, 1, 1),
    49: (2, 1, 1),
    50: (2, 1, 1),
}

MAX_POSITION = max(_POINTS_TABLE)


def points_row(position: int) -> Optional[Dict[str, int]]:
    """Return all three scales for a position, or ``None`` outside the table."""

    row = _POINTS_TABLE.get(position) if isinstance(position, int) else None
    if row is None:
        return None
    standard, major, minor = row
    return {"standard": standard, "major": major, "minor": minor}


def scale(name: str) -> Dict[int, int]:
    """Return ``{position: points}`` for one of ``standard``, ``major`` or ``minor``."""

    try:
        index = ("standard", "major", "minor").index(name)
    except ValueError as exc:
        raise ValueError(f"unknown points scale '{name}'") from exc
    return {position: row[index] for position, row in _POINTS_TABLE.items()}


def max_points() -> int:
    return _POINTS_TABLE[1][0]


def points_for(position: int, race_type: str, has_heat_race: bool = False) -> int:
    """Points awarded for a finishing position in the given race context.

    Finals always award the standard scale and heats the minor scale.
    Qualification awards the minor scale when the round also runs a heat,
    otherwise it is the deciding result and awards the standard scale.
    Positions outside the table score zero rather than raising.
    """

    race_type = (race_type or "").strip().lower()
    if race_type not in RACE_TYPES:
        raise ValueError(f"Unknown race type '{race_type}'")

    row = points_row(position)
    if row is None:
        return 0

    if race_type == "final":
        return row["standard"]
    if race_type == "heat":
        return row["minor"]
    if has_heat_race:
        return row["minor"]
    return row["standard"]


def round_points(value: float) -> int:
    """Round a manually entered value to the nearest whole point (halves go up)."""

    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid points value '{value}'") from exc
    if not math.isfinite(number):
        raise ValueError(f"invalid points value '{value}'")
    return math.floor(number + 0.5)
