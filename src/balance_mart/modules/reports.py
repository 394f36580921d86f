"""
SQLite-backed report classes and export helpers.

Functions:
    export_csv: Write report CSVs to a folder (defaults to project export/csv/).
    export_excel: Write report sheets to a single Excel workbook
        (defaults to project export/excel/balances.xlsx).

Classes:
    FlatBalance, FactBalance, DimAccount, DimTime, RunHead, RunLine:
        Report frames read from the mart database.
"""

import sqlite3
from pathlib import Path

import polars as pl
from xlsxwriter import Workbook

from balance_mart.modules.paths import get_paths

_FLAT_BALANCE = """
    SELECT
        fb.account_id,
        da.name       AS account_name,
        du.name       AS user_name,
        dt.id_date,
        dt.year,
        dt.quarter,
        dt.month,
        dt.weekday,
        fb.balance
    FROM FactBalance fb
    INNER JOIN DimTime dt ON dt.time_id = fb.time_id
    LEFT JOIN DimAccount da ON da.account_id = fb.account_id
    LEFT JOIN DimUser du ON du.user_id = da.user_id
    ORDER BY fb.account_id, fb.time_id
"""


def _read_table(db_path: Path, table_name: str) -> pl.LazyFrame:
    return _read_query(db_path, f"SELECT * FROM {table_name}")


def _read_query(db_path: Path, query: str) -> pl.LazyFrame:
    with sqlite3.connect(db_path) as conn:
        return pl.read_database(query, connection=conn, infer_schema_length=None).lazy()


class FlatBalance:
    """One row per account and day, with account, owner and calendar attributes."""

    __slots__ = ("all",)

    def __init__(self, project_path: Path | None = None, account_id: int | None = None) -> None:
        db_path = get_paths(project_path).require_mart_db()
        self.all = _read_query(db_path, _FLAT_BALANCE)
        if account_id is not None:
            self.all = self.all.filter(pl.col("account_id") == account_id)


class FactBalance:
    __slots__ = ("all",)

    def __init__(self, project_path: Path | None = None, account_id: int | None = None) -> None:
        db_path = get_paths(project_path).require_mart_db()
        self.all = _read_table(db_path, "FactBalance").sort("account_id", "time_id")
        if account_id is not None:
            self.all = self.all.filter(pl.col("account_id") == account_id)


class DimAccount:
    __slots__ = ("all",)

    def __init__(self, project_path: Path | None = None) -> None:
        self.all = _read_table(get_paths(project_path).require_mart_db(), "DimAccount")


class DimTime:
    __slots__ = ("all",)

    def __init__(self, project_path: Path | None = None) -> None:
        self.all = _read_table(get_paths(project_path).require_mart_db(), "DimTime").sort("time_id")


class RunHead:
    __slots__ = ("all", "latest")

    def __init__(self, project_path: Path | None = None) -> None:
        self.all = _read_table(get_paths(project_path).require_mart_db(), "RunHead").sort("updatetime")
        self.latest = self.all.tail(1)


class RunLine:
    __slots__ = ("all", "failed")

    def __init__(self, project_path: Path | None = None, run_id: str | None = None) -> None:
        self.all = _read_table(get_paths(project_path).require_mart_db(), "RunLine")
        if run_id is not None:
            self.all = self.all.filter(pl.col("run_id") == run_id)
        self.failed = self.all.filter(pl.col("status") != "success")


def _report_frames(type: str, project_path: Path | None) -> dict[str, pl.DataFrame]:
    if type == "full":
        return {
            "balances": FlatBalance(project_path).all.collect(),
            "account": DimAccount(project_path).all.collect(),
            "calendar": DimTime(project_path).all.collect(),
            "run_heads": RunHead(project_path).all.collect(),
            "run_lines": RunLine(project_path).all.collect(),
        }
    if type == "simple":
        return {"balances": FlatBalance(project_path).all.collect()}
    raise ValueError(f"Unknown export type {type!r} (expected 'full' or 'simple')")


def export_csv(folder: Path | None = None, type: str = "full", project_path: Path | None = None) -> list[Path]:
    """
    Write report data to CSV files in *folder*.

    Args:
        folder: Directory to write CSV files into.  When ``None`` the project's
            ``export/csv/`` directory is used and created if absent.
        type: ``"full"`` (balances, accounts, calendar and run records) or
            ``"simple"`` (flat balances only).
        project_path: Project root used to find the mart database.

    Returns:
        list[Path]: the files written.
    """
    paths = get_paths(project_path)
    if folder is None:
        folder = paths.ensure_subdir_for_write(paths.csv)
    written = []
    for name, frame in _report_frames(type, project_path).items():
        file = Path(folder).joinpath(f"{name}.csv")
        frame.write_csv(file=file, separator=",", include_header=True, quote_style="non_numeric", float_precision=2)
        written.append(file)
    return written


def export_excel(path: Path | None = None, type: str = "full", project_path: Path | None = None) -> Path:
    """
    Write report data to an Excel workbook at *path*, one sheet per report.

    When *path* is ``None`` the workbook is written to
    ``export/excel/balances.xlsx`` inside the project.
    """
    if path is None:
        paths = get_paths(project_path)
        path = paths.ensure_subdir_for_write(paths.excel) / "balances.xlsx"
    with Workbook(str(path)) as wb:
        for name, frame in _report_frames(type, project_path).items():
            frame.write_excel(
                workbook=wb,
                worksheet=name,
                autofit=False,
                table_name=name,
                table_style="Table Style Medium 4",
            )
    return Path(path)


if __name__ == "__main__":
    pl.Config.set_tbl_rows(100)
    pl.Config.set_tbl_cols(20)
    print(FlatBalance().all.collect())
