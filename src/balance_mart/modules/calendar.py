"""
Calendar sequence (the ``DimTime`` spine).

The calendar is generated upstream of balance materialisation and is immutable
once written: :func:`extend_calendar` only ever adds missing days.  The engine
never generates days itself; it calls :meth:`Calendar.require_contiguous` to
prove that every day of an account's range is present before walking it.

Day keys are integers in ``YYYYMMDD`` form, so they sort in date order.
"""

import sqlite3
from bisect import bisect_left
from collections.abc import Iterable, Iterator
from datetime import date, timedelta
from pathlib import Path

import polars as pl

from balance_mart.modules.data import CalendarDay
from balance_mart.modules.errors import CalendarGapError

ONE_DAY = timedelta(days=1)

DIM_TIME_COLUMNS = ["time_id", "id_date", "day", "month", "quarter", "year", "weekday"]


def day_key(value: date) -> int:
    return value.year * 10000 + value.month * 100 + value.day


def from_day_key(key: int) -> date:
    return date(key // 10000, key // 100 % 100, key % 100)


def next_day_key(key: int) -> int:
    return day_key(from_day_key(key) + ONE_DAY)


def parse_day_key(text: str) -> int:
    """Parse ``YYYYMMDD`` or ``YYYY-MM-DD`` into a validated day key."""
    text = text.strip()
    try:
        if "-" in text:
            return day_key(date.fromisoformat(text))
        key = int(text)
        from_day_key(key)
    except ValueError as e:
        raise ValueError(f"Not a valid day (expected YYYYMMDD or YYYY-MM-DD): {text!r}") from e
    return key


def today_key() -> int:
    return day_key(date.today())


def calendar_frame(start: date, end: date) -> pl.DataFrame:
    """Build the ``DimTime`` rows for every day in ``[start, end]`` (empty if end < start)."""
    if end < start:
        return pl.DataFrame(
            schema={
                "time_id": pl.Int64,
                "id_date": pl.Date,
                "day": pl.Int8,
                "month": pl.Int8,
                "quarter": pl.Int8,
                "year": pl.Int32,
                "weekday": pl.Utf8,
            }
        )
    return (
        pl.DataFrame({"id_date": pl.date_range(start, end, interval="1d", eager=True)})
        .with_columns(
            pl.col("id_date").dt.strftime("%Y%m%d").cast(pl.Int64).alias("time_id"),
            pl.col("id_date").dt.day().alias("day"),
            pl.col("id_date").dt.month().alias("month"),
            pl.col("id_date").dt.quarter().alias("quarter"),
            pl.col("id_date").dt.year().alias("year"),
            pl.col("id_date").dt.strftime("%A").alias("weekday"),
        )
        .select(DIM_TIME_COLUMNS)
    )


def extend_calendar(conn: sqlite3.Connection, start: date, end: date) -> int:
    """
    Add any missing ``DimTime`` rows for ``[start, end]``.

    Existing rows are left untouched.  The caller owns the transaction.

    Returns:
        int: Number of days inserted.
    """
    frame = calendar_frame(start, end).with_columns(pl.col("id_date").dt.strftime("%Y-%m-%d"))
    if frame.is_empty():
        return 0
    before = conn.total_changes
    conn.executemany(
        f"INSERT OR IGNORE INTO DimTime ({', '.join(DIM_TIME_COLUMNS)}) VALUES ({', '.join(['?'] * len(DIM_TIME_COLUMNS))})",
        frame.rows(),
    )
    return conn.total_changes - before


def load_calendar(db_path: Path, start_key: int | None = None, end_key: int | None = None) -> "Calendar":
    query = "SELECT time_id, id_date, day, month, quarter, year, weekday FROM DimTime WHERE 1 = 1"
    params: list[int] = []
    if start_key is not None:
        query += " AND time_id >= ?"
        params.append(start_key)
    if end_key is not None:
        query += " AND time_id <= ?"
        params.append(end_key)
    query += " ORDER BY time_id"
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    return Calendar(
        CalendarDay(
            day_key=row[0],
            date=date.fromisoformat(row[1]),
            day=row[2],
            month=row[3],
            quarter=row[4],
            year=row[5],
            weekday_name=row[6],
        )
        for row in rows
    )


class Calendar:
    """An ordered, read-only sequence of :class:`CalendarDay` entries."""

    __slots__ = ("days", "_keys")

    def __init__(self, days: Iterable[CalendarDay]):
        self.days: list[CalendarDay] = sorted(days, key=lambda d: d.day_key)
        self._keys: list[int] = [d.day_key for d in self.days]
        for previous, current in zip(self._keys, self._keys[1:]):
            if previous == current:
                raise ValueError(f"Duplicate calendar day {current}")

    @classmethod
    def from_range(cls, start: date, end: date, skip: Iterable[date] = ()) -> "Calendar":
        """Generate an in-memory calendar, optionally leaving out some days."""
        skipped = set(skip)
        return cls(
            CalendarDay(
                day_key=row["time_id"],
                date=row["id_date"],
                day=row["day"],
                month=row["month"],
                quarter=row["quarter"],
                year=row["year"],
                weekday_name=row["weekday"],
            )
            for row in calendar_frame(start, end).iter_rows(named=True)
            if row["id_date"] not in skipped
        )

    def __len__(self) -> int:
        return len(self.days)

    def __iter__(self) -> Iterator[CalendarDay]:
        return iter(self.days)

    def __contains__(self, key: int) -> bool:
        idx = bisect_left(self._keys, key)
        return idx < len(self._keys) and self._keys[idx] == key

    @property
    def first_key(self) -> int | None:
        return self._keys[0] if self._keys else None

    @property
    def last_key(self) -> int | None:
        return self._keys[-1] if self._keys else None

    def require_contiguous(self, start_key: int, end_key: int, account_id: int | None = None) -> list[CalendarDay]:
        """
        Return the days in ``[start_key, end_key]``, proving none is missing.

        Raises:
            CalendarGapError: naming the first day of the range that is absent
                (including days before the calendar starts or after it ends).
        """
        if end_key < start_key:
            return []
        expected = from_day_key(start_key)
        last = from_day_key(end_key)
        idx = bisect_left(self._keys, start_key)
        days: list[CalendarDay] = []
        while expected <= last:
            if idx >= len(self.days) or self.days[idx].date != expected:
                raise CalendarGapError(account_id, day_key(expected), start_key, end_key)
            days.append(self.days[idx])
            idx += 1
            expected += ONE_DAY
        return days

    def gaps(self) -> list[int]:
        """Day keys missing between the first and last calendar day."""
        missing: list[int] = []
        for previous, current in zip(self.days, self.days[1:]):
            expected = previous.date + ONE_DAY
            while expected < current.date:
                missing.append(day_key(expected))
                expected += ONE_DAY
        return missing
