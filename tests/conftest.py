"""
conftest.py: shared fixtures.

``mart_db``
    An empty mart database (schema only) in a temporary project folder.

``seed_mart``
    Callable that loads hand-written accounts and movements into a mart
    database and lays down a calendar, for small exact scenarios.

``mock_project``
    A project whose mart has been built from the deterministic mock source
    database (calendar up to 2024-06-30), ready to materialise.

``fast_config``
    A :class:`MartConfig` with two workers, small batches and no retry delay.
"""

import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date
from pathlib import Path

import pytest

from balance_mart.data.build_datamart import build_datamart
from balance_mart.data.create_mart_db import create_mart_db
from balance_mart.data.mock_source_data import generate_mock_source
from balance_mart.modules.calendar import extend_calendar
from balance_mart.modules.config import BalanceSettings, MartConfig, RunSettings
from balance_mart.modules.paths import get_paths

MOCK_AS_OF = 20240630


@dataclass
class ProjectContext:
    """Holds all state produced by a project fixture."""

    project_path: Path
    db_path: Path
    source_path: Path


@pytest.fixture
def mart_db(tmp_path) -> Path:
    return create_mart_db(get_paths(tmp_path / "project").mart_db)


@pytest.fixture
def seed_mart() -> Callable[..., None]:
    """
    Return ``seed(db_path, accounts, movements, start, end, skip=())``.

    *accounts* are ``(account_id, opening_balance, opened_on)`` tuples,
    *movements* are ``(account_id, "YYYY-MM-DD", code, amount)`` tuples and
    the calendar covers ``[start, end]`` minus *skip*.
    """

    def seed(
        db_path: Path,
        accounts: Iterable[tuple],
        movements: Iterable[tuple],
        start: date,
        end: date,
        skip: Iterable[date] = (),
    ) -> None:
        conn = sqlite3.connect(db_path)
        try:
            conn.executemany(
                "INSERT INTO DimAccount (account_id, user_id, name, opening_balance, opened_on) VALUES (?, 1, ?, ?, ?)",
                [(a, f"Account {a}", balance, opened) for a, balance, opened in accounts],
            )
            conn.executemany(
                """
                INSERT INTO FactMovement (movement_id, time_id, account_id, movement_type, amount)
                VALUES (?, CAST(strftime('%Y%m%d', ?) AS INTEGER), ?, ?, ?)
                """,
                [(i, moved_on, a, code, amount) for i, (a, moved_on, code, amount) in enumerate(movements, start=1)],
            )
            extend_calendar(conn, start, end)
            for day in skip:
                conn.execute("DELETE FROM DimTime WHERE id_date = ?", (day.isoformat(),))
            conn.commit()
        finally:
            conn.close()

    return seed


@pytest.fixture
def mock_project(tmp_path) -> ProjectContext:
    project_path = tmp_path / "project"
    paths = get_paths(project_path)
    db_path = create_mart_db(paths.mart_db)
    source_path = tmp_path / "source.db"
    generate_mock_source(source_path, seed=42)
    build_datamart(source_path, db_path, as_of=MOCK_AS_OF, verbose=False)
    return ProjectContext(project_path=project_path, db_path=db_path, source_path=source_path)


@pytest.fixture
def fast_config() -> MartConfig:
    return MartConfig(
        run=RunSettings(workers=2, batch_size=7, max_retries=2, backoff_secs=0.0, write_timeout_secs=5.0),
        balances=BalanceSettings(),
    )
