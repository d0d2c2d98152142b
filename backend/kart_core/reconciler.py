"""Division-change reconciliation.

Moving a driver between divisions touches three things that live in the
persistence layer: the driver row, any corrected points records, and the
append-only division change log. There is no transaction around them, so the
reconciler runs them as an ordered sequence:

1. validate everything it can before writing,
2. update the driver (a failure here aborts with nothing written),
3. apply point corrections one by one (failures are collected, not fatal),
4. append the audit record,
5. invalidate cached reads for whatever was committed.

If step 4 fails the division change and corrections stand without an audit
entry. That window is logged at ERROR and the failure is re-raised; it is not
rolled back.
"""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .cache import TTLCache, invalidate_division_change
from .divisions import classify_change, division_rank
from .loader import DataStore
from .points import max_points, round_points
from .records import DivisionChangeRecord, Driver, PointsRecord

logger = logging.getLogger(__name__)


@dataclass
class DivisionChangeRequest:
    driver_id: str
    season_id: str
    to_division: str
    round_id: str = ""
    from_division: Optional[str] = None
    points_adjustments: Dict[str, float] = field(default_factory=dict)


@dataclass
class ReconcileResult:
    driver: Driver
    change: DivisionChangeRecord
    corrected: List[PointsRecord] = field(default_factory=list)
    failed_adjustments: Dict[str, str] = field(default_factory=dict)
    invalidated: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "driver": self.driver.to_payload(),
            "change": self.change.to_payload(),
            "corrected": [record.to_payload() for record in self.corrected],
            "failedAdjustments": dict(self.failed_adjustments),
        }


def _utc_now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat().replace("+00:00", "Z")


class DivisionReconciler:
    def __init__(self, store: DataStore, cache: TTLCache) -> None:
        self.store = store
        self.cache = cache

    def reconcile(self, request: DivisionChangeRequest) -> ReconcileResult:
        round_id = (request.round_id or "").strip()
        if not round_id:
            raise ValueError("A round must be selected for a division change")
        division_rank(request.to_division)

        rounds = self.store.fetch_rounds(request.season_id)
        if not any(item.get("id") == round_id for item in rounds):
            raise ValueError(f"Round '{round_id}' not found in season '{request.season_id}'")

        driver_row = self.store.fetch_driver(request.season_id, request.driver_id)
        if driver_row is None:
            raise ValueError("Driver not found")
        driver = Driver.from_payload(driver_row)

        from_division = request.from_division or driver.division
        if from_division != driver.division:
            logger.warning(
                "Division change for driver %s states fromDivision %r but driver is in %r",
                driver.id,
                from_division,
                driver.division,
            )
        change_type = classify_change(from_division, request.to_division)
        if from_division == request.to_division:
            logger.warning("Driver %s division change keeps division %r", driver.id, from_division)

        targets = self._validate_adjustments(request)

        # Nothing has been written yet; from here on, writes are committed as they happen.
        updated_row = self.store.update_driver(
            request.season_id,
            {
                **driver.to_payload(),
                "division": request.to_division,
                "lastUpdated": dt.date.today().isoformat(),
            },
        )
        result_driver = Driver.from_payload(updated_row)

        try:
            corrected, failed, applied = self._apply_corrections(targets, request.to_division)
            change = DivisionChangeRecord(
                id=str(uuid.uuid4()),
                season_id=request.season_id,
                round_id=round_id,
                driver_id=driver.id,
                driver_name=driver.name,
                change_type=change_type,
                created_at=_utc_now_iso(),
                from_division=from_division,
                to_division=request.to_division,
                points_adjustments=applied or None,
            )
            try:
                self.store.append_division_change(change.to_payload())
            except (RuntimeError, ValueError):
                logger.error(
                    "Division change for driver %s in round %s (%s -> %s) was applied but its audit "
                    "record could not be written; corrected points: %s",
                    driver.id,
                    round_id,
                    from_division,
                    request.to_division,
                    sorted(applied),
                )
                raise
        finally:
            invalidated = invalidate_division_change(
                self.cache,
                request.season_id,
                round_id,
                driver.id,
                corrected_round_ids=[record.round_id for record, _ in targets],
            )

        logger.info(
            "Driver %s %s from %s to %s in round %s (%d corrected, %d failed)",
            driver.id,
            "promoted" if change_type == "promotion" else "demoted",
            from_division,
            request.to_division,
            round_id,
            len(corrected),
            len(failed),
        )
        return ReconcileResult(
            driver=result_driver,
            change=change,
            corrected=corrected,
            failed_adjustments=failed,
            invalidated=invalidated,
        )

    def record_division_entry(self, driver: Driver, season_id: str) -> Optional[DivisionChangeRecord]:
        """Log the division a newly added driver starts the season in.

        Before any points exist the entry is a ``division_start`` against the
        season's pre-season placeholder round; afterwards it is a
        ``mid_season_join`` against the season's first round. Failures are
        logged and reported as ``None`` so driver creation is not undone.
        """

        division_rank(driver.division)
        try:
            season_points = self.store.fetch_points_by_season(season_id)
            if season_points:
                rounds = self.store.fetch_rounds(season_id)
                round_id = rounds[0]["id"] if rounds else f"pre-season-{season_id}"
                change_type = "mid_season_join"
            else:
                round_id = f"pre-season-{season_id}"
                change_type = "division_start"

            change = DivisionChangeRecord(
                id=str(uuid.uuid4()),
                season_id=season_id,
                round_id=round_id,
                driver_id=driver.id,
                driver_name=driver.name,
                change_type=change_type,
                created_at=_utc_now_iso(),
                division_start=driver.division,
            )
            self.store.append_division_change(change.to_payload())
        except (RuntimeError, ValueError) as exc:
            logger.warning("Failed to record division entry for driver %s: %s", driver.id, exc)
            return None
        finally:
            self.cache.invalidate_pattern("division-changes:")
        return change

    def _validate_adjustments(self, request: DivisionChangeRequest) -> List[tuple[PointsRecord, int]]:
        if not request.points_adjustments:
            return []

        owned = {
            row["id"]: PointsRecord.from_payload(row)
            for row in self.store.fetch_points_by_driver(request.driver_id, request.season_id)
        }
        ceiling = max_points()
        targets: List[tuple[PointsRecord, int]] = []
        for points_id, value in request.points_adjustments.items():
            record = owned.get(points_id)
            if record is None:
                raise ValueError(f"Points record '{points_id}' does not belong to driver '{request.driver_id}'")
            rounded = round_points(value)
            if not 0 <= rounded <= ceiling:
                raise ValueError(f"Points for '{points_id}' must be between 0 and {ceiling}")
            targets.append((record, rounded))
        return targets

    def _apply_corrections(
        self,
        targets: List[tuple[PointsRecord, int]],
        division: str,
    ) -> tuple[List[PointsRecord], Dict[str, str], Dict[str, int]]:
        corrected: List[PointsRecord] = []
        failed: Dict[str, str] = {}
        applied: Dict[str, int] = {}
        for record, rounded in targets:
            applied[record.id] = rounded
            try:
                row = self.store.update_points({"id": record.id, "points": rounded, "division": division})
            except (RuntimeError, ValueError) as exc:
                logger.warning("Point correction for %s failed: %s", record.id, exc)
                failed[record.id] = str(exc)
                continue
            corrected.append(PointsRecord.from_payload(row))
        return corrected, failed, applied
