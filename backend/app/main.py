from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Callable, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, model_validator

from kart_core import DataStore, DivisionChangeRequest, DivisionReconciler, Driver, PointsRecord, Round, TTLCache
from kart_core import cache as cache_keys
from kart_core.divisions import DIVISIONS
from kart_core.points import MAX_POSITION, RACE_TYPES, max_points, points_for, points_row
from kart_core.standings import build_standings

logger = logging.getLogger(__name__)

DivisionName = Literal["Division 1", "Division 2", "Division 3", "Division 4", "New"]
RaceType = Literal["qualification", "heat", "final"]
DriverStatus = Literal["ACTIVE", "INACTIVE", "BANNED"]


def _env_ms(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        logger.warning("Ignoring non-numeric %s; using %d", name, default)
        return default


CACHE_TTL_MS = _env_ms("KART_CACHE_TTL_MS", 2 * 60 * 1000)
DRIVERS_CACHE_TTL_MS = _env_ms("KART_DRIVERS_CACHE_TTL_MS", 3 * 60 * 1000)
SEASONS_CACHE_KEY = "seasons:all"
_MISSING = object()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.store = DataStore()
    app.state.cache = TTLCache(default_ttl_ms=CACHE_TTL_MS)
    yield
    app.state.cache.clear()


app = FastAPI(title="Kart League API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store(request: Request) -> DataStore:
    return request.app.state.store


def get_cache(request: Request) -> TTLCache:
    return request.app.state.cache


def get_reconciler(
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
) -> DivisionReconciler:
    return DivisionReconciler(store, cache)


class PointsTableRowModel(BaseModel):
    position: int
    standard: int
    major: int
    minor: int


class PointsTableResponse(BaseModel):
    rows: List[PointsTableRowModel]
    race_types: List[str] = Field(alias="raceTypes")
    divisions: List[str]
    max_points: int = Field(alias="maxPoints")

    model_config = ConfigDict(populate_by_name=True)


class SeasonModel(BaseModel):
    id: str
    name: str
    start_date: Optional[str] = Field(default=None, alias="startDate")
    end_date: Optional[str] = Field(default=None, alias="endDate")
    number_of_rounds: Optional[int] = Field(default=None, alias="numberOfRounds")

    model_config = ConfigDict(populate_by_name=True)


class RoundModel(BaseModel):
    id: str
    season_id: str = Field(alias="seasonId")
    round_number: int = Field(alias="roundNumber")
    name: str = ""
    date: Optional[str] = None
    location: str = ""
    address: str = ""
    status: str = "upcoming"

    model_config = ConfigDict(populate_by_name=True)


class SeasonCreatePayload(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    start_date: Optional[str] = Field(default=None, alias="startDate")
    end_date: Optional[str] = Field(default=None, alias="endDate")
    number_of_rounds: Optional[int] = Field(default=None, alias="numberOfRounds", ge=1)

    model_config = ConfigDict(populate_by_name=True)


class RoundCreatePayload(BaseModel):
    id: Optional[str] = None
    round_number: int = Field(alias="roundNumber", ge=1)
    name: Optional[str] = None
    date: Optional[str] = None
    location: Optional[str] = None
    address: Optional[str] = None
    status: Literal["upcoming", "completed", "cancelled"] = "upcoming"

    model_config = ConfigDict(populate_by_name=True)


class DriverModel(BaseModel):
    id: str
    season_id: str = Field(alias="seasonId")
    name: str
    email: str = ""
    division: str
    team_name: str = Field(default="", alias="teamName")
    status: str = "ACTIVE"
    last_updated: str = Field(default="", alias="lastUpdated")
    aliases: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class DriverCreatePayload(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    division: DivisionName
    email: Optional[str] = None
    team_name: Optional[str] = Field(default=None, alias="teamName")
    status: DriverStatus = "ACTIVE"
    aliases: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class PointsModel(BaseModel):
    id: str
    season_id: str = Field(alias="seasonId")
    round_id: str = Field(alias="roundId")
    driver_id: str = Field(alias="driverId")
    division: str
    race_type: str = Field(alias="raceType")
    final_type: Optional[str] = Field(default=None, alias="finalType")
    overall_position: Optional[int] = Field(default=None, alias="overallPosition")
    points: int
    note: Optional[str] = None
    created_at: str = Field(default="", alias="createdAt")
    updated_at: str = Field(default="", alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class PointsCreatePayload(BaseModel):
    id: Optional[str] = None
    season_id: str = Field(alias="seasonId", min_length=1)
    round_id: str = Field(alias="roundId", min_length=1)
    driver_id: str = Field(alias="driverId", min_length=1)
    division: DivisionName
    points: Optional[float] = Field(default=None, ge=0)
    position: Optional[int] = Field(default=None, description="Finishing position used to look up points")
    race_type: RaceType = Field(default="qualification", alias="raceType")
    has_heat_race: bool = Field(default=False, alias="hasHeatRace")
    final_type: Optional[str] = Field(default=None, alias="finalType")
    overall_position: Optional[int] = Field(default=None, alias="overallPosition")
    note: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _points_or_position(self) -> "PointsCreatePayload":
        if self.points is None and self.position is None:
            raise ValueError("Either points or position is required")
        return self


class PointsUpdatePayload(BaseModel):
    points: Optional[float] = Field(default=None, ge=0)
    division: Optional[DivisionName] = None
    overall_position: Optional[int] = Field(default=None, alias="overallPosition")
    note: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class PointsListResponse(BaseModel):
    points: List[PointsModel]


class DivisionChangeModel(BaseModel):
    id: str
    season_id: str = Field(alias="seasonId")
    round_id: str = Field(alias="roundId")
    driver_id: str = Field(alias="driverId")
    driver_name: str = Field(alias="driverName")
    from_division: Optional[str] = Field(default=None, alias="fromDivision")
    to_division: Optional[str] = Field(default=None, alias="toDivision")
    division_start: Optional[str] = Field(default=None, alias="divisionStart")
    change_type: str = Field(alias="changeType")
    created_at: str = Field(alias="createdAt")
    points_adjustments: Optional[Dict[str, int]] = Field(default=None, alias="pointsAdjustments")

    model_config = ConfigDict(populate_by_name=True)


class DivisionChangeListResponse(BaseModel):
    changes: List[DivisionChangeModel]


class DivisionChangePayload(BaseModel):
    driver_id: str = Field(alias="driverId", min_length=1)
    season_id: str = Field(alias="seasonId", min_length=1)
    round_id: str = Field(alias="roundId", min_length=1)
    from_division: Optional[DivisionName] = Field(default=None, alias="fromDivision")
    to_division: DivisionName = Field(alias="toDivision")
    points_adjustments: Dict[str, float] = Field(default_factory=dict, alias="pointsAdjustments")

    model_config = ConfigDict(populate_by_name=True)


class ReconcileResponse(BaseModel):
    driver: DriverModel
    change: DivisionChangeModel
    corrected: List[PointsModel]
    failed_adjustments: Dict[str, str] = Field(alias="failedAdjustments")

    model_config = ConfigDict(populate_by_name=True)


class RoundScoreModel(BaseModel):
    round_id: str = Field(alias="roundId")
    round_number: int = Field(alias="roundNumber")
    label: str
    points: int

    model_config = ConfigDict(populate_by_name=True)


class StandingModel(BaseModel):
    driver_id: str = Field(alias="driverId")
    driver_name: str = Field(alias="driverName")
    division: str
    rank: int
    total_points: int = Field(alias="totalPoints")
    rounds: List[RoundScoreModel]
    drop_round: Optional[RoundScoreModel] = Field(default=None, alias="dropRound")

    model_config = ConfigDict(populate_by_name=True)


class StandingsResponse(BaseModel):
    season_id: str = Field(alias="seasonId")
    division: str
    round_id: Optional[str] = Field(default=None, alias="roundId")
    standings: List[StandingModel]

    model_config = ConfigDict(populate_by_name=True)


def _http_error(exc: Exception, action: str) -> HTTPException:
    if isinstance(exc, ValueError):
        status = 404 if "not found" in str(exc).lower() else 400
        return HTTPException(status_code=status, detail=str(exc))
    logger.error("Failed to %s: %s", action, exc)
    return HTTPException(status_code=502, detail=f"Failed to {action}")


def _cached(cache: TTLCache, key: str, ttl_ms: int, fetch: Callable[[], Any]) -> Any:
    hit = cache.get(key, _MISSING)
    if hit is not _MISSING:
        return hit
    value = fetch()
    cache.set(key, value, ttl_ms)
    return value


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/points-table", response_model=PointsTableResponse)
def points_table():
    rows = [PointsTableRowModel(position=position, **points_row(position)) for position in range(1, MAX_POSITION + 1)]
    return PointsTableResponse(rows=rows, raceTypes=list(RACE_TYPES), divisions=list(DIVISIONS), maxPoints=max_points())


@app.get("/cache/stats")
def cache_stats(cache: TTLCache = Depends(get_cache)) -> dict[str, int]:
    return cache.stats()


@app.get("/seasons", response_model=List[SeasonModel])
def list_seasons(store: DataStore = Depends(get_store), cache: TTLCache = Depends(get_cache)):
    try:
        seasons = _cached(cache, SEASONS_CACHE_KEY, CACHE_TTL_MS, store.fetch_seasons)
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "fetch seasons") from exc
    return [SeasonModel(**season) for season in seasons]


@app.get("/rounds", response_model=List[RoundModel])
def list_rounds(
    season_id: str = Query(alias="seasonId"),
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
):
    try:
        rounds = _cached(
            cache,
            cache_keys.rounds_season_key(season_id),
            CACHE_TTL_MS,
            partial(store.fetch_rounds, season_id),
        )
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "fetch rounds") from exc
    return [RoundModel(**item) for item in rounds]


@app.post("/seasons", response_model=SeasonModel, status_code=201)
def create_season(
    payload: SeasonCreatePayload,
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
):
    try:
        season = store.create_season(payload.model_dump(by_alias=True, exclude_none=True))
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "create season") from exc
    cache.invalidate(SEASONS_CACHE_KEY)
    return SeasonModel(**season)


@app.post("/rounds", response_model=RoundModel, status_code=201)
def create_round(
    payload: RoundCreatePayload,
    season_id: str = Query(alias="seasonId"),
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
):
    try:
        created = store.create_round({**payload.model_dump(by_alias=True, exclude_none=True), "seasonId": season_id})
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "create round") from exc
    cache.invalidate(cache_keys.rounds_season_key(season_id))
    cache_keys.invalidate_season_standings(cache, season_id)
    return RoundModel(**created)


@app.get("/drivers", response_model=List[DriverModel])
def list_drivers(
    season_id: str = Query(alias="seasonId"),
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
):
    try:
        drivers = _cached(
            cache,
            cache_keys.drivers_season_key(season_id),
            DRIVERS_CACHE_TTL_MS,
            partial(store.fetch_drivers, season_id),
        )
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "fetch drivers") from exc
    return [DriverModel(**driver) for driver in drivers]


@app.post("/drivers", response_model=DriverModel, status_code=201)
def create_driver(
    payload: DriverCreatePayload,
    season_id: str = Query(alias="seasonId"),
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
    reconciler: DivisionReconciler = Depends(get_reconciler),
):
    try:
        record = store.create_driver(season_id, payload.model_dump(by_alias=True, exclude_none=True))
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "add driver") from exc

    cache.invalidate(cache_keys.drivers_season_key(season_id))
    cache_keys.invalidate_season_standings(cache, season_id)
    reconciler.record_division_entry(Driver.from_payload(record), season_id)
    return DriverModel(**record)


@app.get("/points", response_model=PointsListResponse)
def list_points(
    round_id: Optional[str] = Query(default=None, alias="roundId"),
    driver_id: Optional[str] = Query(default=None, alias="driverId"),
    season_id: Optional[str] = Query(default=None, alias="seasonId"),
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
):
    if round_id:
        key = cache_keys.points_round_key(round_id)
        fetch = partial(store.fetch_points_by_round, round_id)
    elif driver_id:
        key = cache_keys.points_driver_key(driver_id, season_id)
        fetch = partial(store.fetch_points_by_driver, driver_id, season_id)
    elif season_id:
        key = cache_keys.points_season_key(season_id)
        fetch = partial(store.fetch_points_by_season, season_id)
    else:
        raise HTTPException(status_code=400, detail="roundId, driverId, or seasonId required")

    try:
        points = _cached(cache, key, CACHE_TTL_MS, fetch)
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "fetch points") from exc
    return PointsListResponse(points=[PointsModel(**item) for item in points])


@app.post("/points", response_model=PointsModel, status_code=201)
def create_points(
    payload: PointsCreatePayload,
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
):
    record: Dict[str, Any] = payload.model_dump(
        by_alias=True,
        exclude_none=True,
        exclude={"position", "has_heat_race"},
    )
    if payload.points is None:
        record["points"] = points_for(payload.position or 0, payload.race_type, payload.has_heat_race)
        record.setdefault("overallPosition", payload.position)
    elif payload.points > max_points() + 0.5:
        raise HTTPException(status_code=400, detail=f"points must be between 0 and {max_points()}")

    try:
        created = store.create_points(record)
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "save points") from exc

    cache_keys.invalidate_points_write(cache, created["seasonId"], created["roundId"], created["driverId"])
    return PointsModel(**created)


@app.put("/points/{points_id}", response_model=PointsModel)
def update_points(
    points_id: str,
    payload: PointsUpdatePayload,
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
):
    if payload.points is not None and payload.points > max_points() + 0.5:
        raise HTTPException(status_code=400, detail=f"points must be between 0 and {max_points()}")

    try:
        updated = store.update_points({"id": points_id, **payload.model_dump(by_alias=True, exclude_none=True)})
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "update points") from exc

    cache_keys.invalidate_points_write(cache, updated["seasonId"], updated["roundId"], updated["driverId"])
    return PointsModel(**updated)


@app.delete("/points/{points_id}")
def delete_points(
    points_id: str,
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
) -> dict[str, bool]:
    try:
        removed = store.delete_points(points_id)
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "delete points") from exc
    if removed is None:
        raise HTTPException(status_code=404, detail="Points record not found")

    cache_keys.invalidate_points_write(cache, removed["seasonId"], removed["roundId"], removed["driverId"])
    return {"success": True}


@app.get("/division-changes", response_model=DivisionChangeListResponse)
def list_division_changes(
    round_id: Optional[str] = Query(default=None, alias="roundId"),
    season_id: Optional[str] = Query(default=None, alias="seasonId"),
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
):
    if round_id:
        key = cache_keys.division_changes_round_key(round_id)
        fetch = partial(store.fetch_division_changes_by_round, round_id)
    elif season_id:
        key = cache_keys.division_changes_season_key(season_id)
        fetch = partial(store.fetch_division_changes_by_season, season_id)
    else:
        raise HTTPException(status_code=400, detail="roundId or seasonId required")

    try:
        changes = _cached(cache, key, CACHE_TTL_MS, fetch)
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "fetch division changes") from exc
    return DivisionChangeListResponse(changes=[DivisionChangeModel(**item) for item in changes])


@app.post("/division-changes", response_model=ReconcileResponse, status_code=201)
def change_division(payload: DivisionChangePayload, reconciler: DivisionReconciler = Depends(get_reconciler)):
    request = DivisionChangeRequest(
        driver_id=payload.driver_id,
        season_id=payload.season_id,
        round_id=payload.round_id,
        from_division=payload.from_division,
        to_division=payload.to_division,
        points_adjustments=dict(payload.points_adjustments),
    )
    try:
        result = reconciler.reconcile(request)
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "save division change") from exc
    return ReconcileResponse(**result.to_payload())


@app.get("/standings", response_model=StandingsResponse)
def standings(
    season_id: str = Query(alias="seasonId"),
    division: DivisionName = Query(),
    round_id: Optional[str] = Query(default=None, alias="roundId"),
    store: DataStore = Depends(get_store),
    cache: TTLCache = Depends(get_cache),
):
    def _compute() -> List[Dict[str, Any]]:
        rows = build_standings(
            [PointsRecord.from_payload(item) for item in store.fetch_points_by_season(season_id)],
            [Driver.from_payload(item) for item in store.fetch_drivers(season_id)],
            [Round.from_payload(item) for item in store.fetch_rounds(season_id)],
            division,
            round_id,
        )
        return [row.to_payload() for row in rows]

    key = cache_keys.standings_season_key(season_id, division, round_id)
    try:
        table = _cached(cache, key, CACHE_TTL_MS, _compute)
    except (RuntimeError, ValueError) as exc:
        raise _http_error(exc, "build standings") from exc
    return StandingsResponse(
        seasonId=season_id,
        division=division,
        roundId=round_id,
        standings=[StandingModel(**row) for row in table],
    )
