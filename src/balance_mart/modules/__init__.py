from .aggregator import MovementDeltas, aggregate_movements
from .calendar import Calendar
from .engine import materialize_account, plan_account, walk_balances
from .errors import MartError, MaterializationError
from .sink import FactSink, SqliteFactSink

__all__ = [
    "Calendar",
    "FactSink",
    "MartError",
    "MaterializationError",
    "MovementDeltas",
    "SqliteFactSink",
    "aggregate_movements",
    "materialize_account",
    "plan_account",
    "walk_balances",
]
