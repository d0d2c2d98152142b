from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .points import round_points

CHANGE_TYPES = ("promotion", "demotion", "division_start", "mid_season_join")


def _text(value: Any) -> str:
    return str(value or "").strip()


def _int(value: Any, default: int = 0) -> int:
    try:
        return round_points(value)
    except ValueError:
        return default


@dataclass
class Driver:
    """A driver registered for a season, with their current division."""

    id: str
    name: str
    division: str
    status: str = "ACTIVE"
    season_id: str = ""
    last_updated: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)  # fields the core does not interpret

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Driver":
        known = {"id", "name", "division", "status", "seasonId", "lastUpdated"}
        return cls(
            id=_text(payload.get("id")),
            name=_text(payload.get("name")),
            division=_text(payload.get("division")),
            status=_text(payload.get("status")) or "ACTIVE",
            season_id=_text(payload.get("seasonId")),
            last_updated=_text(payload.get("lastUpdated")),
            extra={key: value for key, value in payload.items() if key not in known},
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            **self.extra,
            "id": self.id,
            "name": self.name,
            "division": self.division,
            "status": self.status,
            "seasonId": self.season_id,
            "lastUpdated": self.last_updated,
        }


@dataclass
class Round:
    id: str
    season_id: str
    round_number: int = 0
    name: str = ""
    date: str = ""
    location: str = ""
    status: str = "upcoming"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Round":
        return cls(
            id=_text(payload.get("id")),
            season_id=_text(payload.get("seasonId")),
            round_number=_int(payload.get("roundNumber")),
            name=_text(payload.get("name")),
            date=_text(payload.get("date")),
            location=_text(payload.get("location")),
            status=_text(payload.get("status")) or "upcoming",
        )

    @property
    def label(self) -> str:
        return self.location or self.name or f"Round {self.round_number}"


@dataclass
class PointsRecord:
    """Points a driver earned in one round, tagged with the division they raced in."""

    id: str
    season_id: str
    round_id: str
    driver_id: str
    division: str
    points: int
    race_type: str = "qualification"
    final_type: Optional[str] = None
    overall_position: Optional[int] = None
    note: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PointsRecord":
        overall = payload.get("overallPosition")
        return cls(
            id=_text(payload.get("id")),
            season_id=_text(payload.get("seasonId")),
            round_id=_text(payload.get("roundId")),
            driver_id=_text(payload.get("driverId")),
            division=_text(payload.get("division")),
            points=_int(payload.get("points")),
            race_type=_text(payload.get("raceType")) or "qualification",
            final_type=_text(payload.get("finalType")) or None,
            overall_position=_int(overall) if overall not in (None, "") else None,
            note=_text(payload.get("note")) or None,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "seasonId": self.season_id,
            "roundId": self.round_id,
            "driverId": self.driver_id,
            "division": self.division,
            "points": self.points,
            "raceType": self.race_type,
            "finalType": self.final_type,
            "overallPosition": self.overall_position,
            "note": self.note,
        }


@dataclass
class DivisionChangeRecord:
    """Append-only audit entry for a driver's division assignment."""

    id: str
    season_id: str
    round_id: str
    driver_id: str
    driver_name: str
    change_type: str
    created_at: str
    from_division: Optional[str] = None
    to_division: Optional[str] = None
    division_start: Optional[str] = None  # only for division_start / mid_season_join
    points_adjustments: Optional[Dict[str, int]] = None

    def __post_init__(self) -> None:
        if self.change_type not in CHANGE_TYPES:
            raise ValueError(f"Unknown change type '{self.change_type}'")
        if self.change_type in ("promotion", "demotion"):
            if not (self.from_division and self.to_division):
                raise ValueError(f"{self.change_type} requires fromDivision and toDivision")
        elif not self.division_start:
            raise ValueError(f"{self.change_type} requires a starting division")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "seasonId": self.season_id,
            "roundId": self.round_id,
            "driverId": self.driver_id,
            "driverName": self.driver_name,
            "fromDivision": self.from_division,
            "toDivision": self.to_division,
            "divisionStart": self.division_start,
            "changeType": self.change_type,
            "createdAt": self.created_at,
            "pointsAdjustments": dict(self.points_adjustments) if self.points_adjustments else None,
        }
