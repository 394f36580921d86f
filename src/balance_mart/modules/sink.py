"""
Fact sink: durable storage for materialised balances.

:class:`FactSink` is the interface the run coordinator writes through;
:class:`SqliteFactSink` implements it against the mart database created by
:func:`~balance_mart.data.create_mart_db.create_mart_db`.

Every public method opens its own short-lived connection, so one sink
instance can be shared by all worker threads of a run.  Writes take the
SQLite write lock up front (``BEGIN IMMEDIATE``) and give up after
``write_timeout_secs``; that is the per-batch write timeout.
"""

import sqlite3
import time
from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal
from pathlib import Path

from balance_mart.modules.data import BalanceFact, RunSummary
from balance_mart.modules.errors import ConcurrentRunError, ProjectDatabaseMissing

# SQLite allows at most 999 bound parameters on older builds.
_IN_CHUNK = 500


def _chunks(values: Sequence, size: int = _IN_CHUNK) -> Iterable[Sequence]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class FactSink:
    """Interface for balance fact storage.  Implementations must upsert by (account, day)."""

    __slots__ = ()

    def upsert_balance_facts(
        self, account_id: int, facts: Sequence[BalanceFact], run_id: str | None = None, reset: bool = False
    ) -> int:
        raise NotImplementedError

    def get_watermark(self, account_id: int) -> int | None:
        raise NotImplementedError

    def get_watermarks(self, account_ids: Iterable[int]) -> dict[int, int]:
        return {a: w for a in account_ids if (w := self.get_watermark(a)) is not None}

    def get_balance(self, account_id: int, day_key: int) -> Decimal | None:
        raise NotImplementedError

    def acquire_run_lock(self, run_id: str, mode: str, account_ids: Iterable[int]) -> None:
        raise NotImplementedError

    def release_run_lock(self, run_id: str) -> None:
        raise NotImplementedError

    def record_run(self, summary: RunSummary) -> None:
        raise NotImplementedError


class SqliteFactSink(FactSink):
    __slots__ = ("db_path", "write_timeout_secs", "lock_ttl_secs", "decimal_places")

    def __init__(
        self,
        db_path: Path,
        write_timeout_secs: float = 30.0,
        lock_ttl_secs: int = 3600,
        decimal_places: int = 2,
    ) -> None:
        self.db_path = Path(db_path)
        if not self.db_path.exists():
            raise ProjectDatabaseMissing(self.db_path)
        self.write_timeout_secs = write_timeout_secs
        self.lock_ttl_secs = lock_ttl_secs
        self.decimal_places = decimal_places

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.write_timeout_secs, isolation_level=None)
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _to_decimal(self, value) -> Decimal:
        return Decimal(str(value)).quantize(Decimal(1).scaleb(-self.decimal_places))

    # ------------------------------------------------------------------
    # Facts and watermarks
    # ------------------------------------------------------------------

    def upsert_balance_facts(
        self, account_id: int, facts: Sequence[BalanceFact], run_id: str | None = None, reset: bool = False
    ) -> int:
        """
        Write one batch of an account's facts and advance its watermark.

        The facts and the watermark are committed in one transaction, so the
        watermark never points past a day that was not written.

        Args:
            account_id: The account every fact belongs to.
            facts: Facts in ascending day order.
            run_id: Identifier of the writing run, recorded with the watermark.
                When given, the run's leases are renewed in the same
                transaction.
            reset: Delete the account's existing facts and watermark first
                (used for the first batch of a full rebuild).

        Returns:
            int: Number of facts written.

        Raises:
            ValueError: If a fact belongs to another account or the batch is
                not in ascending day order.
            sqlite3.Error: On any database failure, including the busy timeout.
            ConcurrentRunError: If another run now holds the lease on
                *account_id*.  Nothing is written in that case.
        """
        previous = None
        for fact in facts:
            if fact.account_id != account_id:
                raise ValueError(f"Fact for account {fact.account_id} in a batch for account {account_id}")
            if previous is not None and fact.day_key <= previous:
                raise ValueError(f"Facts for account {account_id} are not in ascending day order")
            previous = fact.day_key

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if run_id is not None:
                    self._renew_lease(conn, account_id, run_id)
                if reset:
                    conn.execute("DELETE FROM FactBalance WHERE account_id = ?", (account_id,))
                    conn.execute("DELETE FROM BalanceWatermark WHERE account_id = ?", (account_id,))
                if facts:
                    conn.executemany(
                        """
                        INSERT INTO FactBalance (account_id, time_id, balance) VALUES (?, ?, ?)
                        ON CONFLICT (account_id, time_id) DO UPDATE SET balance = excluded.balance
                        """,
                        [(f.account_id, f.day_key, float(f.balance)) for f in facts],
                    )
                    conn.execute(
                        """
                        INSERT INTO BalanceWatermark (account_id, time_id, run_id, updatetime) VALUES (?, ?, ?, ?)
                        ON CONFLICT (account_id) DO UPDATE SET
                            time_id = excluded.time_id, run_id = excluded.run_id, updatetime = excluded.updatetime
                        """,
                        (account_id, facts[-1].day_key, run_id, datetime.now().isoformat()),
                    )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()
        return len(facts)

    def get_watermark(self, account_id: int) -> int | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT time_id FROM BalanceWatermark WHERE account_id = ?", (account_id,)).fetchone()
        finally:
            conn.close()
        return row[0] if row else None

    def get_watermarks(self, account_ids: Iterable[int]) -> dict[int, int]:
        ids = list(account_ids)
        watermarks: dict[int, int] = {}
        conn = self._connect()
        try:
            for chunk in _chunks(ids):
                placeholders = ", ".join(["?"] * len(chunk))
                rows = conn.execute(
                    f"SELECT account_id, time_id FROM BalanceWatermark WHERE account_id IN ({placeholders})", tuple(chunk)
                ).fetchall()
                watermarks.update(dict(rows))
        finally:
            conn.close()
        return watermarks

    def get_balance(self, account_id: int, day_key: int) -> Decimal | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT balance FROM FactBalance WHERE account_id = ? AND time_id = ?", (account_id, day_key)
            ).fetchone()
        finally:
            conn.close()
        return self._to_decimal(row[0]) if row else None

    def get_balance_facts(self, account_id: int | None = None) -> list[BalanceFact]:
        """Read committed facts ordered by account and day (all accounts when *account_id* is None)."""
        query = "SELECT account_id, time_id, balance FROM FactBalance"
        params: tuple = ()
        if account_id is not None:
            query += " WHERE account_id = ?"
            params = (account_id,)
        query += " ORDER BY account_id, time_id"
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [BalanceFact(row[0], row[1], self._to_decimal(row[2])) for row in rows]

    # ------------------------------------------------------------------
    # Run lease
    # ------------------------------------------------------------------

    def acquire_run_lock(self, run_id: str, mode: str, account_ids: Iterable[int]) -> None:
        """
        Lease *account_ids* to *run_id* for ``lock_ttl_secs``.

        Every batch the run writes pushes the expiry of all its leases out by
        another ``lock_ttl_secs``, so the TTL bounds the time between two
        writes, not the length of the run.

        Expired leases are cleared first.  The check and the insert happen in
        one ``BEGIN IMMEDIATE`` transaction, so two processes cannot both
        acquire the same account.

        Raises:
            ConcurrentRunError: If another run holds a live lease on any of the
                accounts.  No lease is taken in that case.
        """
        ids = sorted(set(account_ids))
        now = time.time()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM RunLock WHERE expires_at < ?", (now,))
                held: list[tuple[int, str]] = []
                for chunk in _chunks(ids):
                    placeholders = ", ".join(["?"] * len(chunk))
                    held.extend(
                        conn.execute(
                            f"SELECT account_id, run_id FROM RunLock WHERE run_id != ? AND account_id IN ({placeholders})",
                            (run_id, *chunk),
                        ).fetchall()
                    )
                if held:
                    raise ConcurrentRunError([row[0] for row in held], [row[1] for row in held])
                conn.executemany(
                    "INSERT OR REPLACE INTO RunLock (account_id, run_id, mode, acquired_at, expires_at) VALUES (?, ?, ?, ?, ?)",
                    [(a, run_id, mode, now, now + self.lock_ttl_secs) for a in ids],
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def _renew_lease(self, conn: sqlite3.Connection, account_id: int, run_id: str) -> None:
        # Accounts that were never leased are written without a check.
        row = conn.execute("SELECT run_id FROM RunLock WHERE account_id = ?", (account_id,)).fetchone()
        if row is None:
            return
        if row[0] != run_id:
            raise ConcurrentRunError([account_id], [row[0]])
        conn.execute("UPDATE RunLock SET expires_at = ? WHERE run_id = ?", (time.time() + self.lock_ttl_secs, run_id))

    def release_run_lock(self, run_id: str) -> None:
        conn = self._connect()
        try:
            conn.execute("DELETE FROM RunLock WHERE run_id = ?", (run_id,))
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Run records
    # ------------------------------------------------------------------

    def record_run(self, summary: RunSummary) -> None:
        """Write the run header and one line per account outcome."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO RunHead (
                        run_id, mode, as_of, account_count, success_count, failed_count,
                        cancelled_count, days_written, duration_secs, updatetime
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        summary.run_id,
                        summary.mode,
                        summary.as_of,
                        len(summary.outcomes),
                        len(summary.succeeded),
                        len(summary.failed),
                        len(summary.cancelled),
                        summary.days_written,
                        summary.duration_secs,
                        datetime.now().isoformat(),
                    ),
                )
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO RunLine (
                        run_id, account_id, days_written, new_watermark, status, error_kind, error_message
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            summary.run_id,
                            o.account_id,
                            o.days_written,
                            o.new_watermark,
                            o.status,
                            o.error_kind,
                            o.error_message,
                        )
                        for o in summary.outcomes
                    ],
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()
