from __future__ import annotations

import datetime as dt
import json
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from .points import round_points


logger = logging.getLogger(__name__)

# (column, descending)
Ordering = Sequence[Tuple[str, bool]]


class DataStore:
    """League persistence backed by Supabase, or local JSON files when Supabase is not configured.

    Every call is a fallible remote operation. Rejections from Supabase (4xx)
    surface as ``ValueError`` with the server's detail; transport failures and
    server errors surface as ``RuntimeError``. Rows are stored snake_case and
    returned as camelCase dictionaries.
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or (Path(__file__).parent.parent / "data")

        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_ANON_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.seasons_table = os.getenv("SUPABASE_SEASONS_TABLE", "seasons")
        self.rounds_table = os.getenv("SUPABASE_ROUNDS_TABLE", "rounds")
        self.drivers_table = os.getenv("SUPABASE_DRIVERS_TABLE", "drivers")
        self.points_table = os.getenv("SUPABASE_POINTS_TABLE", "points")
        self.division_changes_table = os.getenv("SUPABASE_DIVISION_CHANGES_TABLE", "division_changes")

    @property
    def remote(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    # ------------------------------------------------------------------
    # Seasons & rounds

    def fetch_seasons(self) -> List[Dict[str, Any]]:
        rows = self._select(self.seasons_table, {}, [("start_date", False), ("name", False)], "fetch seasons")
        return [self._normalise_season_row(row) for row in rows]

    def create_season(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        name = str(payload.get("name") or "").strip()
        if not name:
            raise ValueError("Season name is required")
        record = {
            "id": str(payload.get("id") or uuid.uuid4()),
            "name": name,
            "start_date": self._coerce_date(payload.get("startDate")),
            "end_date": self._coerce_date(payload.get("endDate")),
            "number_of_rounds": payload.get("numberOfRounds"),
        }
        return self._normalise_season_row(self._insert(self.seasons_table, record, "create season"))

    def fetch_rounds(self, season_id: str) -> List[Dict[str, Any]]:
        rows = self._select(
            self.rounds_table,
            {"season_id": season_id},
            [("round_number", False), ("date", False)],
            "fetch rounds",
        )
        return [self._normalise_round_row(row) for row in rows]

    def create_round(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        season_id = str(payload.get("seasonId") or "").strip()
        if not season_id:
            raise ValueError("seasonId is required")
        try:
            round_number = int(payload.get("roundNumber") or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError("roundNumber must be a whole number") from exc
        record = {
            "id": str(payload.get("id") or uuid.uuid4()),
            "season_id": season_id,
            "round_number": round_number,
            "name": str(payload.get("name") or "").strip(),
            "date": self._coerce_date(payload.get("date")),
            "location": str(payload.get("location") or "").strip(),
            "address": str(payload.get("address") or "").strip(),
            "status": str(payload.get("status") or "upcoming"),
        }
        return self._normalise_round_row(self._insert(self.rounds_table, record, "create round"))

    # ------------------------------------------------------------------
    # Drivers

    def fetch_drivers(self, season_id: str) -> List[Dict[str, Any]]:
        rows = self._select(self.drivers_table, {"season_id": season_id}, [("name", False)], "fetch drivers")
        return [self._normalise_driver_row(row) for row in rows]

    def fetch_driver(self, season_id: str, driver_id: str) -> Optional[Dict[str, Any]]:
        rows = self._select(
            self.drivers_table,
            {"season_id": season_id, "id": driver_id},
            [],
            "fetch driver",
        )
        return self._normalise_driver_row(rows[0]) if rows else None

    def create_driver(self, season_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self._driver_record(payload)
        if not record.get("name"):
            raise ValueError("Driver name is required")
        if not record.get("division"):
            raise ValueError("Driver division is required")
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("status", "ACTIVE")
        record["season_id"] = season_id
        record.setdefault("last_updated", dt.date.today().isoformat())
        return self._normalise_driver_row(self._insert(self.drivers_table, record, "create driver"))

    def update_driver(self, season_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        driver_id = str(payload.get("id") or "").strip()
        if not driver_id:
            raise ValueError("Driver id is required")
        fields = self._driver_record(payload)
        fields.pop("id", None)
        rows = self._patch(
            self.drivers_table,
            {"id": driver_id, "season_id": season_id},
            fields,
            "update driver",
        )
        if not rows:
            raise ValueError("Driver not found")
        return self._normalise_driver_row(rows[0])

    # ------------------------------------------------------------------
    # Points

    def fetch_points_by_round(self, round_id: str) -> List[Dict[str, Any]]:
        rows = self._select(self.points_table, {"round_id": round_id}, [("points", True)], "fetch round points")
        return [self._normalise_points_row(row) for row in rows]

    def fetch_points_by_driver(self, driver_id: str, season_id: Optional[str] = None) -> List[Dict[str, Any]]:
        filters = {"driver_id": driver_id}
        if season_id:
            filters["season_id"] = season_id
        rows = self._select(self.points_table, filters, [("created_at", True)], "fetch driver points")
        return [self._normalise_points_row(row) for row in rows]

    def fetch_points_by_season(self, season_id: str) -> List[Dict[str, Any]]:
        rows = self._select(
            self.points_table,
            {"season_id": season_id},
            [("round_id", False), ("points", True)],
            "fetch season points",
        )
        return [self._normalise_points_row(row) for row in rows]

    def create_points(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self._points_record(payload)
        missing = [
            name
            for name, column in (
                ("seasonId", "season_id"),
                ("roundId", "round_id"),
                ("driverId", "driver_id"),
                ("division", "division"),
                ("points", "points"),
            )
            if record.get(column) in (None, "")
        ]
        if missing:
            raise ValueError(f"Missing required points fields: {', '.join(missing)}")
        now = self._utc_now_iso()
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("race_type", "qualification")
        record["created_at"] = now
        record["updated_at"] = now
        return self._normalise_points_row(self._insert(self.points_table, record, "create points"))

    def update_points(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        points_id = str(payload.get("id") or "").strip()
        if not points_id:
            raise ValueError("Points id is required")
        fields = self._points_record(payload)
        for column in ("id", "season_id", "round_id", "driver_id", "created_at"):
            fields.pop(column, None)
        fields["updated_at"] = self._utc_now_iso()
        rows = self._patch(self.points_table, {"id": points_id}, fields, "update points")
        if not rows:
            raise ValueError("Points record not found")
        return self._normalise_points_row(rows[0])

    def delete_points(self, points_id: str) -> Optional[Dict[str, Any]]:
        rows = self._delete(self.points_table, {"id": points_id}, "delete points")
        return self._normalise_points_row(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Division changes (append-only)

    def append_division_change(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = {
            "id": str(payload.get("id") or uuid.uuid4()),
            "season_id": payload.get("seasonId"),
            "round_id": payload.get("roundId"),
            "driver_id": payload.get("driverId"),
            "driver_name": payload.get("driverName"),
            "from_division": payload.get("fromDivision"),
            "to_division": payload.get("toDivision"),
            "division_start": payload.get("divisionStart"),
            "change_type": payload.get("changeType"),
            "created_at": payload.get("createdAt") or self._utc_now_iso(),
            "points_adjustments": payload.get("pointsAdjustments") or None,
        }
        return self._normalise_division_change_row(
            self._insert(self.division_changes_table, record, "append division change")
        )

    def fetch_division_changes_by_round(self, round_id: str) -> List[Dict[str, Any]]:
        rows = self._select(
            self.division_changes_table,
            {"round_id": round_id},
            [("created_at", True)],
            "fetch round division changes",
        )
        return [self._normalise_division_change_row(row) for row in rows]

    def fetch_division_changes_by_season(self, season_id: str) -> List[Dict[str, Any]]:
        rows = self._select(
            self.division_changes_table,
            {"season_id": season_id},
            [("created_at", True)],
            "fetch season division changes",
        )
        return [self._normalise_division_change_row(row) for row in rows]

    # ---- generic table access -------------------------------------------------

    def _select(self, table: str, filters: Dict[str, Any], order: Ordering, action: str) -> List[Dict[str, Any]]:
        if not self.remote:
            rows = [row for row in self._load_local(table) if self._matches(row, filters)]
            return self._sort_rows(rows, order)

        params: Dict[str, Any] = {"select": "*"}
        params.update(self._filter_params(filters))
        if order:
            params["order"] = ",".join(f"{column}.{'desc' if desc else 'asc'}" for column, desc in order)
        return self._remote_call("get", table, params, None, action)

    def _insert(self, table: str, record: Dict[str, Any], action: str) -> Dict[str, Any]:
        if not self.remote:
            data = self._load_local(table)
            if any(row.get("id") == record.get("id") for row in data):
                raise ValueError(f"Record '{record.get('id')}' already exists")
            data.append(record)
            self._write_local(table, data)
            return dict(record)

        rows = self._remote_call("post", table, {"select": "*"}, record, action)
        if rows:
            return rows[0]
        raise RuntimeError(f"Unexpected response when trying to {action}")

    def _patch(self, table: str, filters: Dict[str, Any], fields: Dict[str, Any], action: str) -> List[Dict[str, Any]]:
        if not self.remote:
            data = self._load_local(table)
            updated: List[Dict[str, Any]] = []
            for row in data:
                if self._matches(row, filters):
                    row.update(fields)
                    updated.append(dict(row))
            if updated:
                self._write_local(table, data)
            return updated

        params: Dict[str, Any] = {"select": "*"}
        params.update(self._filter_params(filters))
        return self._remote_call("patch", table, params, fields, action)

    def _delete(self, table: str, filters: Dict[str, Any], action: str) -> List[Dict[str, Any]]:
        if not self.remote:
            data = self._load_local(table)
            kept = [row for row in data if not self._matches(row, filters)]
            removed = [row for row in data if self._matches(row, filters)]
            if removed:
                self._write_local(table, kept)
            return removed

        params: Dict[str, Any] = {"select": "*"}
        params.update(self._filter_params(filters))
        return self._remote_call("delete", table, params, None, action)

    def _remote_call(
        self,
        method: str,
        table: str,
        params: Dict[str, Any],
        payload: Optional[Dict[str, Any]],
        action: str,
    ) -> List[Dict[str, Any]]:
        endpoint = self._supabase_endpoint(table)
        headers = self._supabase_headers(
            prefer=None if method == "get" else "return=representation",
            include_content_profile=method != "get",
        )

        try:
            with httpx.Client(timeout=10.0) as client:
                if method == "get":
                    response = client.get(endpoint, params=params, headers=headers)
                elif method == "delete":
                    response = client.delete(endpoint, params=params, headers=headers)
                else:
                    headers["Content-Type"] = "application/json"
                    response = getattr(client, method)(endpoint, params=params, json=payload, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            detail = self._extract_supabase_detail(exc.response)
            if status_code is not None and 400 <= status_code < 500:
                raise ValueError(detail or f"Supabase rejected {action} ({status_code})") from exc
            logger.warning("Supabase %s failed (%s)", action, exc)
            raise RuntimeError(f"Failed to {action}: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning("Supabase %s failed (%s)", action, exc)
            raise RuntimeError(f"Failed to {action}: {exc}") from exc

        if isinstance(rows, list):
            return [row for row in rows if isinstance(row, dict)]
        if isinstance(rows, dict):
            return [rows]
        return []

    @staticmethod
    def _filter_params(filters: Dict[str, Any]) -> Dict[str, str]:
        return {column: f"eq.{value}" for column, value in filters.items()}

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        return all(str(row.get(column)) == str(value) for column, value in filters.items())

    @staticmethod
    def _sort_rows(rows: List[Dict[str, Any]], order: Ordering) -> List[Dict[str, Any]]:
        # Stable sorts applied from the least significant column mirror SQL ORDER BY.
        for column, desc in reversed(list(order)):
            present = [row for row in rows if row.get(column) is not None]
            absent = [row for row in rows if row.get(column) is None]
            present.sort(key=lambda row: row.get(column), reverse=desc)
            rows = present + absent
        return rows

    # ---- internal Supabase helpers -------------------------------------------------

    def _supabase_endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{table}"

    def _supabase_headers(self, prefer: str | None = None, include_content_profile: bool = True) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if include_content_profile and self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _extract_supabase_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            for key in ("message", "detail", "error", "hint", "code"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    # ---- local JSON fallback -------------------------------------------------

    def _local_path(self, table: str) -> Path:
        return self.data_dir / f"{table}_local.json"

    def _load_local(self, table: str) -> List[Dict[str, Any]]:
        data = self._read_json_file(self._local_path(table), [])
        return [row for row in data if isinstance(row, dict)] if isinstance(data, list) else []

    def _write_local(self, table: str, rows: List[Dict[str, Any]]) -> None:
        self._write_json_file(self._local_path(table), rows)

    def _read_json_file(self, path: Path, default: Any) -> Any:
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Falling back to default for %s due to read error: %s", path, exc)
            return default

    def _write_json_file(self, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
        except OSError as exc:
            raise RuntimeError(f"Failed to write local data store {path}") from exc

    # ---- record shaping -------------------------------------------------

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.UTC).isoformat().replace("+00:00", "Z")

    def _coerce_date(self, value: Any) -> str | None:
        if value in (None, ""):
            return None
        if isinstance(value, dt.datetime):
            return value.date().isoformat()
        if isinstance(value, dt.date):
            return value.isoformat()
        text = str(value).strip()
        if not re.match(r"^\d{4}-\d{2}-\d{2}", text):
            raise ValueError(f"Invalid date '{text}'")
        return text[:10]

    @staticmethod
    def _driver_record(payload: Dict[str, Any]) -> Dict[str, Any]:
        mapping = {
            "id": "id",
            "name": "name",
            "email": "email",
            "division": "division",
            "teamName": "team_name",
            "status": "status",
            "lastUpdated": "last_updated",
            "firstName": "first_name",
            "lastName": "last_name",
        }
        record = {column: payload[key] for key, column in mapping.items() if payload.get(key) not in (None, "")}
        aliases = payload.get("aliases")
        if isinstance(aliases, list):
            record["aliases"] = ",".join(str(alias).strip() for alias in aliases if str(alias).strip())
        return record

    @staticmethod
    def _points_record(payload: Dict[str, Any]) -> Dict[str, Any]:
        mapping = {
            "id": "id",
            "seasonId": "season_id",
            "roundId": "round_id",
            "driverId": "driver_id",
            "division": "division",
            "raceType": "race_type",
            "finalType": "final_type",
            "overallPosition": "overall_position",
            "note": "note",
        }
        record = {column: payload[key] for key, column in mapping.items() if key in payload and payload[key] is not None}
        if payload.get("points") is not None:
            record["points"] = round_points(payload["points"])
        return record

    @staticmethod
    def _normalise_season_row(row: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": str(row.get("id") or ""),
            "name": row.get("name") or "",
            "startDate": row.get("start_date"),
            "endDate": row.get("end_date"),
            "numberOfRounds": row.get("number_of_rounds"),
        }

    @staticmethod
    def _normalise_round_row(row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            round_number = int(row.get("round_number") or 0)
        except (TypeError, ValueError):
            round_number = 0
        return {
            "id": str(row.get("id") or ""),
            "seasonId": str(row.get("season_id") or ""),
            "roundNumber": round_number,
            "name": row.get("name") or "",
            "date": row.get("date"),
            "location": row.get("location") or "",
            "address": row.get("address") or "",
            "status": row.get("status") or "upcoming",
        }

    @staticmethod
    def _normalise_driver_row(row: Dict[str, Any]) -> Dict[str, Any]:
        aliases_raw = row.get("aliases")
        if isinstance(aliases_raw, list):
            aliases = [str(alias) for alias in aliases_raw if alias]
        else:
            aliases = [alias.strip() for alias in str(aliases_raw or "").split(",") if alias.strip()]
        return {
            "id": str(row.get("id") or ""),
            "seasonId": str(row.get("season_id") or ""),
            "name": row.get("name") or "",
            "email": row.get("email") or "",
            "division": row.get("division") or "",
            "teamName": row.get("team_name") or "",
            "status": row.get("status") or "ACTIVE",
            "lastUpdated": row.get("last_updated") or "",
            "firstName": row.get("first_name") or "",
            "lastName": row.get("last_name") or "",
            "aliases": aliases,
        }

    @staticmethod
    def _normalise_points_row(row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            points = round_points(row.get("points") or 0)
        except ValueError:
            points = 0
        return {
            "id": str(row.get("id") or ""),
            "seasonId": str(row.get("season_id") or ""),
            "roundId": str(row.get("round_id") or ""),
            "driverId": str(row.get("driver_id") or ""),
            "division": row.get("division") or "",
            "raceType": row.get("race_type") or "qualification",
            "finalType": row.get("final_type") or None,
            "overallPosition": row.get("overall_position") or None,
            "points": points,
            "note": row.get("note") or None,
            "createdAt": row.get("created_at") or "",
            "updatedAt": row.get("updated_at") or "",
        }

    @staticmethod
    def _normalise_division_change_row(row: Dict[str, Any]) -> Dict[str, Any]:
        adjustments = row.get("points_adjustments")
        if isinstance(adjustments, str):
            try:
                adjustments = json.loads(adjustments)
            except ValueError:
                adjustments = None
        return {
            "id": str(row.get("id") or ""),
            "seasonId": str(row.get("season_id") or ""),
            "roundId": str(row.get("round_id") or ""),
            "driverId": str(row.get("driver_id") or ""),
            "driverName": row.get("driver_name") or "",
            "fromDivision": row.get("from_division") or None,
            "toDivision": row.get("to_division") or None,
            "divisionStart": row.get("division_start") or None,
            "changeType": row.get("change_type") or "",
            "createdAt": row.get("created_at") or "",
            "pointsAdjustments": adjustments if isinstance(adjustments, dict) and adjustments else None,
        }
