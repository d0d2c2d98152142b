"""Points, standings and division bookkeeping for the kart league API."""

from .cache import TTLCache
from .divisions import DIVISIONS, classify_change
from .loader import DataStore
from .points import points_for
from .reconciler import DivisionChangeRequest, DivisionReconciler, ReconcileResult
from .records import DivisionChangeRecord, Driver, PointsRecord, Round
from .standings import StandingRow, build_standings

__all__ = [
    "DIVISIONS",
    "DataStore",
    "DivisionChangeRecord",
    "DivisionChangeRequest",
    "DivisionReconciler",
    "Driver",
    "PointsRecord",
    "ReconcileResult",
    "Round",
    "StandingRow",
    "TTLCache",
    "build_standings",
    "classify_change",
    "points_for",
]
