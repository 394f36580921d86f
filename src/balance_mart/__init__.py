"""
balance_mart: daily account balance materialisation over a SQLite data mart.

Typical use::

    from balance_mart import create_mart_db, build_datamart, run_materialization

    db = create_mart_db(Path("project/database/mart.db"))
    build_datamart(Path("source.db"), db)
    summary = run_materialization("full", db_path=db)
"""

from balance_mart.data.build_datamart import build_datamart
from balance_mart.data.create_mart_db import create_mart_db
from balance_mart.modules.config import MartConfig, load_config
from balance_mart.modules.coordinator import BalanceRun, RunMode, run_materialization
from balance_mart.modules.data import AccountOutcome, RunSummary

__all__ = [
    "AccountOutcome",
    "BalanceRun",
    "MartConfig",
    "RunMode",
    "RunSummary",
    "build_datamart",
    "create_mart_db",
    "load_config",
    "run_materialization",
]
