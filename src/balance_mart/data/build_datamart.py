import argparse
import sqlite3
import time
from datetime import date
from pathlib import Path

from balance_mart.modules.calendar import extend_calendar, from_day_key, today_key
from balance_mart.modules.data import MovementType
from balance_mart.modules.errors import ProjectDatabaseMissing, SourceDataError

SOURCE_TABLES = ("users", "accounts", "categories", "subcategories", "counterparties", "movements")

# ---------------------------------------------------------------------------
# Load statements, in dependency order.  ``src`` is the attached source database.
# ---------------------------------------------------------------------------

_LOADS = [
    (
        "DimUser",
        """
        INSERT INTO DimUser (user_id, name, email)
        SELECT user_id, name, email FROM src.users
        """,
    ),
    (
        "DimCategory",
        """
        INSERT INTO DimCategory (category_id, name)
        SELECT category_id, name FROM src.categories
        """,
    ),
    (
        "DimSubcategory",
        """
        INSERT INTO DimSubcategory (subcategory_id, category_id, name)
        SELECT subcategory_id, category_id, name FROM src.subcategories
        """,
    ),
    (
        "DimCounterparty",
        """
        INSERT INTO DimCounterparty (counterparty_id, name)
        SELECT counterparty_id, name FROM src.counterparties
        """,
    ),
    (
        "DimAccount",
        """
        INSERT INTO DimAccount (account_id, user_id, name, opening_balance, opened_on)
        SELECT account_id, user_id, name, opening_balance, date(opened_on) FROM src.accounts
        """,
    ),
]

# Movement type codes are kept raw on the fact; an unknown code is rejected
# when movements are loaded for materialisation, not here.
_LOAD_FACT_MOVEMENT = """
    INSERT INTO FactMovement (
        movement_id, time_id, account_id, counterparty_id, category_id,
        subcategory_id, movement_type_id, movement_type, amount
    )
    SELECT
        m.movement_id,
        CAST(strftime('%Y%m%d', m.moved_on) AS INTEGER) AS time_id,
        m.account_id,
        m.counterparty_id,
        m.category_id,
        m.subcategory_id,
        mt.movement_type_id,
        m.movement_type,
        m.amount
    FROM src.movements m
    LEFT JOIN DimMovementType mt ON mt.code = m.movement_type
"""


# ---------------------------------------------------------------------------
# Build steps
# ---------------------------------------------------------------------------


def _check_source(conn: sqlite3.Connection) -> None:
    present = {row[0] for row in conn.execute("SELECT name FROM src.sqlite_master WHERE type = 'table'")}
    missing = [t for t in SOURCE_TABLES if t not in present]
    if missing:
        raise SourceDataError(f"Source database is missing table(s): {', '.join(missing)}")


def _truncate(conn: sqlite3.Connection) -> None:
    """Empty the reloadable tables, dependants first.  DimTime and balance tables are kept."""
    for table_name in ["FactMovement", "DimMovementType"] + [name for name, _ in reversed(_LOADS)]:
        conn.execute(f"DELETE FROM {table_name}")


def _load_table(conn: sqlite3.Connection, step: str, table_name: str, sql: str, verbose: bool) -> float:
    t0 = time.monotonic()
    conn.execute(sql)
    elapsed = time.monotonic() - t0
    if verbose:
        n = conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0]
        print(f"  [{step}] {table_name} ({n:,} rows): {elapsed:.2f}s")
    return elapsed


def _build_dim_movement_type(conn: sqlite3.Connection, step: str, verbose: bool) -> float:
    t0 = time.monotonic()
    conn.executemany(
        "INSERT INTO DimMovementType (movement_type_id, code, label, sign) VALUES (?, ?, ?, ?)",
        [(i, mt.value, mt.label, mt.sign) for i, mt in enumerate(MovementType, start=1)],
    )
    elapsed = time.monotonic() - t0
    if verbose:
        print(f"  [{step}] DimMovementType ({len(MovementType)} rows): {elapsed:.2f}s")
    return elapsed


def _build_dim_time(conn: sqlite3.Connection, step: str, as_of: int, verbose: bool) -> float:
    """Extend DimTime so it covers every day from the earliest opening/movement date to *as_of*."""
    t0 = time.monotonic()
    first, last = conn.execute("""
        SELECT MIN(d), MAX(d) FROM (
            SELECT date(opened_on) AS d FROM src.accounts WHERE opened_on IS NOT NULL
            UNION ALL
            SELECT date(moved_on) AS d FROM src.movements WHERE moved_on IS NOT NULL
        )
    """).fetchone()
    added = 0
    if first is not None:
        end = max(from_day_key(as_of), date.fromisoformat(last))
        added = extend_calendar(conn, date.fromisoformat(first), end)
    elapsed = time.monotonic() - t0
    if verbose:
        n = conn.execute("SELECT COUNT(*) FROM DimTime").fetchone()[0]
        print(f"  [{step}] DimTime ({n:,} rows, {added:,} added): {elapsed:.2f}s")
    return elapsed


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def build_datamart(source_path: Path, db_path: Path, as_of: int | None = None, verbose: bool = True) -> dict:
    """
    Reload the mart dimensions and FactMovement from the source database.

    Dimensions and movements are a full replace inside one transaction.  DimTime
    is only ever extended, never rewritten, and FactBalance, watermarks and run
    records are left untouched; materialise balances afterwards.

    Args:
        source_path: Operational SQLite database holding ``users``,
            ``accounts``, ``categories``, ``subcategories``, ``counterparties``
            and ``movements``.
        db_path: Mart database created by ``create_mart_db``.
        as_of: Last day the calendar must cover; defaults to today.
        verbose: Print step timings.

    Returns a dict with per-step timings and the total elapsed time.
    """
    t_total = time.monotonic()
    source_path = Path(source_path)
    db_path = Path(db_path)
    if not db_path.exists():
        raise ProjectDatabaseMissing(db_path)
    if not source_path.exists():
        raise SourceDataError(f"Source database not found: {source_path}")
    as_of = as_of if as_of is not None else today_key()

    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute("ATTACH DATABASE ? AS src", (str(source_path),))

    if verbose:
        print(f"Building data mart in {db_path} from {source_path} ...")

    steps = len(_LOADS) + 3
    timings: dict[str, float] = {}
    try:
        _check_source(conn)
        _truncate(conn)
        for i, (table_name, sql) in enumerate(_LOADS, start=1):
            timings[table_name] = _load_table(conn, f"{i}/{steps}", table_name, sql, verbose)
        timings["DimMovementType"] = _build_dim_movement_type(conn, f"{steps - 2}/{steps}", verbose)
        timings["DimTime"] = _build_dim_time(conn, f"{steps - 1}/{steps}", as_of, verbose)
        timings["FactMovement"] = _load_table(conn, f"{steps}/{steps}", "FactMovement", _LOAD_FACT_MOVEMENT, verbose)
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.execute("DETACH DATABASE src")
        conn.close()

    timings["total"] = time.monotonic() - t_total
    if verbose:
        print(f"\n  Total time: {timings['total']:.2f}s")

    return timings


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reload the mart dimensions and movements from a source database.")
    parser.add_argument("--source", type=Path, required=True, help="Path to the source SQLite database")
    parser.add_argument("--db", type=Path, required=True, help="Path to the mart SQLite database")
    parser.add_argument("--quiet", action="store_true", help="Suppress progress output")
    args = parser.parse_args()

    build_datamart(source_path=args.source, db_path=args.db, verbose=not args.quiet)
    print("Done.")
