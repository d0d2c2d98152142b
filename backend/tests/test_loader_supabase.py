from __future__ import annotations

from typing import Any, Dict, Generator, List, Optional

import httpx
import pytest

from kart_core import DataStore
from kart_core import loader as loader_module

_ENV = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_SERVICE_KEY",
    "SUPABASE_ANON_KEY",
    "SUPABASE_SCHEMA",
    "SUPABASE_DRIVERS_TABLE",
    "SUPABASE_POINTS_TABLE",
)


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)
    yield
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def supabase_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co/")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "test-key")


def _response(method: str, endpoint: str, status: int, payload: Any) -> httpx.Response:
    return httpx.Response(status, json=payload, request=httpx.Request(method.upper(), endpoint))


def _stub_client(calls: List[Dict[str, Any]], status: int = 200, payload: Any = None, error: Optional[Exception] = None):
    class _Client:
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            pass

        def __enter__(self) -> "_Client":
            return self

        def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - nothing to clean up
            return None

        def _handle(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
            calls.append({"method": method, "endpoint": endpoint, **kwargs})
            if error is not None:
                raise error
            return _response(method, endpoint, status, payload)

        def get(self, endpoint: str, **kwargs: Any) -> httpx.Response:
            return self._handle("get", endpoint, **kwargs)

        def post(self, endpoint: str, **kwargs: Any) -> httpx.Response:
            return self._handle("post", endpoint, **kwargs)

        def patch(self, endpoint: str, **kwargs: Any) -> httpx.Response:
            return self._handle("patch", endpoint, **kwargs)

        def delete(self, endpoint: str, **kwargs: Any) -> httpx.Response:
            return self._handle("delete", endpoint, **kwargs)

    return _Client


def test_fetch_drivers_from_supabase(monkeypatch: pytest.MonkeyPatch, supabase_env: None) -> None:
    monkeypatch.setenv("SUPABASE_DRIVERS_TABLE", "league_drivers")
    calls: List[Dict[str, Any]] = []
    rows = [
        {
            "id": "d1",
            "season_id": "s1",
            "name": "Ava Hart",
            "division": "Division 1",
            "team_name": "Apex",
            "aliases": "A. Hart, Ava",
            "last_updated": "2025-04-01",
        },
        {"id": "d2", "season_id": "s1", "name": "Ben Cole", "division": "New", "status": None},
    ]
    monkeypatch.setattr(loader_module.httpx, "Client", _stub_client(calls, payload=rows))

    drivers = DataStore().fetch_drivers("s1")

    assert calls[0]["endpoint"] == "https://example.supabase.co/rest/v1/league_drivers"
    assert calls[0]["params"]["season_id"] == "eq.s1"
    assert calls[0]["params"]["order"] == "name.asc"
    assert calls[0]["headers"]["apikey"] == "test-key"
    assert calls[0]["headers"]["Authorization"] == "Bearer test-key"
    assert "Prefer" not in calls[0]["headers"]

    assert drivers[0]["seasonId"] == "s1"
    assert drivers[0]["teamName"] == "Apex"
    assert drivers[0]["aliases"] == ["A. Hart", "Ava"]
    assert drivers[1]["status"] == "ACTIVE"
    assert drivers[1]["email"] == ""


def test_update_points_patches_with_rounded_value(monkeypatch: pytest.MonkeyPatch, supabase_env: None) -> None:
    monkeypatch.setenv("SUPABASE_SCHEMA", "league")
    calls: List[Dict[str, Any]] = []
    row = {
        "id": "p1",
        "season_id": "s1",
        "round_id": "r1",
        "driver_id": "d1",
        "division": "Division 1",
        "points": 46,
        "race_type": "final",
    }
    monkeypatch.setattr(loader_module.httpx, "Client", _stub_client(calls, payload=[row]))

    updated = DataStore().update_points({"id": "p1", "points": 45.5, "division": "Division 1", "seasonId": "s9"})

    call = calls[0]
    assert call["method"] == "patch"
    assert call["params"]["id"] == "eq.p1"
    assert call["json"]["points"] == 46
    assert "season_id" not in call["json"]
    assert call["headers"]["Prefer"] == "return=representation"
    assert call["headers"]["Content-Profile"] == "league"
    assert call["headers"]["Accept-Profile"] == "league"
    assert updated["points"] == 46
    assert updated["raceType"] == "final"


def test_update_points_missing_row(monkeypatch: pytest.MonkeyPatch, supabase_env: None) -> None:
    monkeypatch.setattr(loader_module.httpx, "Client", _stub_client([], payload=[]))

    with pytest.raises(ValueError, match="Points record not found"):
        DataStore().update_points({"id": "p404", "points": 10})


def test_rejection_surfaces_as_value_error(monkeypatch: pytest.MonkeyPatch, supabase_env: None) -> None:
    payload = {"message": "duplicate key value violates unique constraint", "code": "23505"}
    monkeypatch.setattr(loader_module.httpx, "Client", _stub_client([], status=409, payload=payload))

    with pytest.raises(ValueError, match="duplicate key"):
        DataStore().create_points(
            {"seasonId": "s1", "roundId": "r1", "driverId": "d1", "division": "New", "points": 10}
        )


def test_server_error_surfaces_as_runtime_error(monkeypatch: pytest.MonkeyPatch, supabase_env: None) -> None:
    monkeypatch.setattr(loader_module.httpx, "Client", _stub_client([], status=503, payload={"message": "down"}))

    with pytest.raises(RuntimeError, match="fetch season points"):
        DataStore().fetch_points_by_season("s1")


def test_transport_error_surfaces_as_runtime_error(monkeypatch: pytest.MonkeyPatch, supabase_env: None) -> None:
    error = httpx.ConnectError("connection refused")
    monkeypatch.setattr(loader_module.httpx, "Client", _stub_client([], error=error))

    with pytest.raises(RuntimeError):
        DataStore().append_division_change(
            {"seasonId": "s1", "roundId": "r1", "driverId": "d1", "changeType": "promotion"}
        )


def test_division_changes_normalised(monkeypatch: pytest.MonkeyPatch, supabase_env: None) -> None:
    calls: List[Dict[str, Any]] = []
    rows = [
        {
            "id": "c1",
            "season_id": "s1",
            "round_id": "r1",
            "driver_id": "d1",
            "driver_name": "Ava Hart",
            "from_division": "Division 2",
            "to_division": "Division 1",
            "change_type": "promotion",
            "created_at": "2025-04-02T10:00:00Z",
            "points_adjustments": '{"p1": 46}',
        }
    ]
    monkeypatch.setattr(loader_module.httpx, "Client", _stub_client(calls, payload=rows))

    changes = DataStore().fetch_division_changes_by_round("r1")

    assert calls[0]["params"]["order"] == "created_at.desc"
    assert changes[0]["pointsAdjustments"] == {"p1": 46}
    assert changes[0]["divisionStart"] is None
    assert changes[0]["changeType"] == "promotion"


def test_local_store_without_supabase(tmp_path) -> None:
    store = DataStore(data_dir=tmp_path)
    assert store.remote is False

    store.create_points(
        {"id": "p1", "seasonId": "s1", "roundId": "r1", "driverId": "d1", "division": "New", "points": 12.5}
    )
    store.create_points(
        {"id": "p2", "seasonId": "s1", "roundId": "r1", "driverId": "d2", "division": "New", "points": 20}
    )

    assert (tmp_path / "points_local.json").exists()
    assert [row["id"] for row in store.fetch_points_by_round("r1")] == ["p2", "p1"]
    assert store.fetch_points_by_driver("d1", "s1")[0]["points"] == 13

    removed = store.delete_points("p1")
    assert removed is not None and removed["driverId"] == "d1"
    assert store.delete_points("p1") is None

    with pytest.raises(ValueError, match="already exists"):
        store.create_points(
            {"id": "p2", "seasonId": "s1", "roundId": "r1", "driverId": "d2", "division": "New", "points": 1}
        )


def test_create_points_requires_fields(tmp_path) -> None:
    with pytest.raises(ValueError, match="roundId"):
        DataStore(data_dir=tmp_path).create_points({"seasonId": "s1", "driverId": "d1", "division": "New", "points": 5})
