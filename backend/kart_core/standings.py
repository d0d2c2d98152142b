"""Season-to-date and per-round standings derived from stored points records.

The aggregator is a pure transformation: it never writes, and the advisory
drop round it reports is never subtracted from a driver's total.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .records import Driver, PointsRecord, Round


@dataclass
class RoundScore:
    round_id: str
    round_number: int
    label: str
    points: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "roundId": self.round_id,
            "roundNumber": self.round_number,
            "label": self.label,
            "points": self.points,
        }


@dataclass
class StandingRow:
    driver_id: str
    driver_name: str
    division: str
    total_points: int
    rounds: List[RoundScore] = field(default_factory=list)
    drop_round: Optional[RoundScore] = None
    rank: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "driverId": self.driver_id,
            "driverName": self.driver_name,
            "division": self.division,
            "rank": self.rank,
            "totalPoints": self.total_points,
            "rounds": [item.to_payload() for item in self.rounds],
            "dropRound": self.drop_round.to_payload() if self.drop_round else None,
        }


def find_drop_round(scores: Iterable[RoundScore]) -> Optional[RoundScore]:
    """Return the round with the strictly lowest positive sum, if there is one.

    Zero-point rounds are never flagged. A driver needs at least two positive
    rounds, and a tie for the lowest positive sum flags nothing.
    """

    positive = [score for score in scores if score.points > 0]
    if len(positive) < 2:
        return None
    lowest = min(score.points for score in positive)
    candidates = [score for score in positive if score.points == lowest]
    if len(candidates) != 1:
        return None
    return candidates[0]


def _assign_ranks(rows: List[StandingRow]) -> List[StandingRow]:
    # Equal totals fall back to name, then id, so ordering never depends on fetch order.
    ordered = sorted(rows, key=lambda row: (-row.total_points, row.driver_name.lower(), row.driver_id))
    for index, row in enumerate(ordered, start=1):
        row.rank = index
    return ordered


def season_standings(
    records: Iterable[PointsRecord],
    drivers: Iterable[Driver],
    rounds: Iterable[Round],
    division: str,
) -> List[StandingRow]:
    """Season-to-date table for the active drivers currently in ``division``.

    A driver's points count wherever they were earned, so drivers promoted or
    demoted mid-season keep their history.
    """

    ordered_rounds = sorted(rounds, key=lambda item: (item.round_number, item.id))
    known_round_ids = {item.id for item in ordered_rounds}

    per_driver: Dict[str, Dict[str, int]] = {}
    extra_round_ids: List[str] = []
    for record in records:
        by_round = per_driver.setdefault(record.driver_id, {})
        by_round[record.round_id] = by_round.get(record.round_id, 0) + record.points
        if record.round_id not in known_round_ids and record.round_id not in extra_round_ids:
            extra_round_ids.append(record.round_id)

    rows: List[StandingRow] = []
    for driver in drivers:
        if driver.division != division or driver.status.upper() != "ACTIVE":
            continue
        by_round = per_driver.get(driver.id, {})
        scores = [
            RoundScore(
                round_id=item.id,
                round_number=item.round_number,
                label=item.label,
                points=by_round.get(item.id, 0),
            )
            for item in ordered_rounds
        ]
        scores.extend(
            RoundScore(round_id=round_id, round_number=0, label=round_id, points=by_round[round_id])
            for round_id in extra_round_ids
            if round_id in by_round
        )
        rows.append(
            StandingRow(
                driver_id=driver.id,
                driver_name=driver.name,
                division=driver.division,
                total_points=sum(by_round.values()),
                rounds=scores,
                drop_round=find_drop_round(scores),
            )
        )

    return _assign_ranks(rows)


def round_standings(
    records: Iterable[PointsRecord],
    drivers: Iterable[Driver],
    round_: Round,
    division: str,
) -> List[StandingRow]:
    """Results for one round, limited to points earned in ``division``."""

    names = {driver.id: driver.name for driver in drivers}
    totals: Dict[str, int] = {}
    for record in records:
        if record.round_id != round_.id or record.division != division:
            continue
        totals[record.driver_id] = totals.get(record.driver_id, 0) + record.points

    rows = [
        StandingRow(
            driver_id=driver_id,
            driver_name=names.get(driver_id, driver_id),
            division=division,
            total_points=total,
            rounds=[
                RoundScore(
                    round_id=round_.id,
                    round_number=round_.round_number,
                    label=round_.label,
                    points=total,
                )
            ],
        )
        for driver_id, total in totals.items()
    ]
    return _assign_ranks(rows)


def build_standings(
    records: Iterable[PointsRecord],
    drivers: Iterable[Driver],
    rounds: Iterable[Round],
    division: str,
    round_id: Optional[str] = None,
) -> List[StandingRow]:
    rounds = list(rounds)
    if not round_id:
        return season_standings(records, drivers, rounds, division)

    selected = next((item for item in rounds if item.id == round_id), None)
    if selected is None:
        raise ValueError("Round not found")
    return round_standings(records, drivers, selected, division)
