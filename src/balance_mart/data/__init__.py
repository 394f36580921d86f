"""
Public interface for the balance_mart.data sub-package.

Exposes:
    build_datamart        -- reload mart dimensions and movements from a source database
    create_mart_db        -- create the SQLite mart schema
    generate_mock_source  -- fill a deterministic mock source database
    BalanceAudit          -- consistency checks over materialised balances
"""

from balance_mart.data.audit import BalanceAudit
from balance_mart.data.build_datamart import build_datamart
from balance_mart.data.create_mart_db import create_mart_db
from balance_mart.data.mock_source_data import generate_mock_source

__all__ = [
    "build_datamart",
    "create_mart_db",
    "generate_mock_source",
    "BalanceAudit",
]
