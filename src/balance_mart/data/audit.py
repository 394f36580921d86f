import argparse
import sqlite3
from pathlib import Path

from balance_mart.modules.calendar import next_day_key


class BalanceAudit:
    """
    Read-only consistency checks over materialised balances.

    Each check returns a list of problem rows; :meth:`check` collects them
    into one report keyed by check name.  The only write is :meth:`cleanup`
    with ``delete=True``, which removes facts and watermarks for accounts no
    longer present in ``DimAccount``.
    """

    FK_RELATIONSHIPS = [
        ("FactBalance", "account_id", "DimAccount", "account_id"),
        ("FactBalance", "time_id", "DimTime", "time_id"),
        ("BalanceWatermark", "account_id", "DimAccount", "account_id"),
    ]

    # Identifiers permitted in dynamically-constructed SQL.
    _ALLOWED_TABLES: frozenset[str] = frozenset(
        [rel[0] for rel in FK_RELATIONSHIPS] + [rel[2] for rel in FK_RELATIONSHIPS]
    )
    _ALLOWED_COLUMNS: frozenset[str] = frozenset(["account_id", "time_id"])

    # Net signed movement per account-day, as the materialiser sees it.
    _DAILY_DELTA = """
        daily AS (
            SELECT account_id, time_id,
                   SUM(CASE movement_type WHEN 'C' THEN ABS(amount) WHEN 'D' THEN -ABS(amount) ELSE 0 END) AS delta
            FROM FactMovement
            GROUP BY account_id, time_id
        )
    """

    def __init__(self, db_path: Path, decimal_places: int = 2):
        self.db_path = db_path
        self.decimal_places = decimal_places

    @staticmethod
    def _validate_identifier(value: str, allowed: frozenset[str], label: str) -> None:
        """Raise ValueError if *value* is not in the *allowed* whitelist."""
        if value not in allowed:
            raise ValueError(f"Unsafe SQL identifier for {label}: {value!r}")

    def find_orphans(self, conn: sqlite3.Connection, table: str, fk_column: str, parent_table: str, parent_key: str) -> list:
        self._validate_identifier(table, self._ALLOWED_TABLES, "table")
        self._validate_identifier(fk_column, self._ALLOWED_COLUMNS, "fk_column")
        self._validate_identifier(parent_table, self._ALLOWED_TABLES, "parent_table")
        self._validate_identifier(parent_key, self._ALLOWED_COLUMNS, "parent_key")
        query = f"""
            SELECT DISTINCT t.{fk_column}
            FROM {table} t
            LEFT JOIN {parent_table} p ON t.{fk_column} = p.{parent_key}
            WHERE t.{fk_column} IS NOT NULL AND p.{parent_key} IS NULL
            ORDER BY t.{fk_column}
        """
        return [row[0] for row in conn.execute(query).fetchall()]

    def calendar_gaps(self, conn: sqlite3.Connection) -> list[int]:
        """Days missing from DimTime between its first and last day."""
        keys = [row[0] for row in conn.execute("SELECT time_id FROM DimTime ORDER BY time_id")]
        missing = []
        for previous, current in zip(keys, keys[1:]):
            expected = next_day_key(previous)
            while expected < current:
                missing.append(expected)
                expected = next_day_key(expected)
        return missing

    def series_violations(self, conn: sqlite3.Connection) -> tuple[list[tuple], list[tuple]]:
        """
        Walk every account's facts in day order.

        Returns:
            tuple: ``(gaps, recurrence)`` where *gaps* lists
                ``(account_id, previous_day, day)`` for non-consecutive facts and
                *recurrence* lists ``(account_id, day, expected, actual)`` where
                ``balance(day) != balance(day - 1) + delta(day)``.
        """
        rows = conn.execute(f"""
            WITH {self._DAILY_DELTA},
            seq AS (
                SELECT account_id, time_id, balance,
                       LAG(time_id) OVER w AS prev_time_id,
                       LAG(balance) OVER w AS prev_balance
                FROM FactBalance
                WINDOW w AS (PARTITION BY account_id ORDER BY time_id)
            )
            SELECT s.account_id, s.time_id, s.prev_time_id, s.prev_balance, s.balance, COALESCE(d.delta, 0)
            FROM seq s
            LEFT JOIN daily d ON d.account_id = s.account_id AND d.time_id = s.time_id
            WHERE s.prev_time_id IS NOT NULL
            ORDER BY s.account_id, s.time_id
        """).fetchall()
        gaps = []
        recurrence = []
        for account_id, time_id, prev_time_id, prev_balance, balance, delta in rows:
            if next_day_key(prev_time_id) != time_id:
                gaps.append((account_id, prev_time_id, time_id))
                continue
            expected = round(prev_balance + delta, self.decimal_places)
            if round(balance, self.decimal_places) != expected:
                recurrence.append((account_id, time_id, expected, balance))
        return gaps, recurrence

    def seed_violations(self, conn: sqlite3.Connection) -> list[tuple]:
        """
        ``(account_id, first_day, expected, actual)`` where an account's first
        fact is not ``opening_balance + delta(first_day)``.

        The day-to-day check cannot see a series shifted by a constant; this one
        anchors it to the account's opening balance.  Accounts missing from
        DimAccount are left to the orphan check.
        """
        rows = conn.execute(f"""
            WITH {self._DAILY_DELTA},
            first_fact AS (
                SELECT account_id, MIN(time_id) AS time_id FROM FactBalance GROUP BY account_id
            )
            SELECT f.account_id, f.time_id, a.opening_balance, b.balance, COALESCE(d.delta, 0)
            FROM first_fact f
            JOIN DimAccount a ON a.account_id = f.account_id
            JOIN FactBalance b ON b.account_id = f.account_id AND b.time_id = f.time_id
            LEFT JOIN daily d ON d.account_id = f.account_id AND d.time_id = f.time_id
            ORDER BY f.account_id
        """).fetchall()
        violations = []
        for account_id, time_id, opening_balance, balance, delta in rows:
            expected = None if opening_balance is None else round(opening_balance + delta, self.decimal_places)
            if expected is None or round(balance, self.decimal_places) != expected:
                violations.append((account_id, time_id, expected, balance))
        return violations

    def watermark_mismatches(self, conn: sqlite3.Connection) -> list[tuple]:
        """``(account_id, watermark, last_fact_day)`` where the watermark is not the last committed fact."""
        return conn.execute("""
            SELECT w.account_id, w.time_id, f.last_day
            FROM BalanceWatermark w
            LEFT JOIN (SELECT account_id, MAX(time_id) AS last_day FROM FactBalance GROUP BY account_id) f
                ON f.account_id = w.account_id
            WHERE f.last_day IS NULL OR f.last_day != w.time_id
            UNION ALL
            SELECT f.account_id, NULL, MAX(f.time_id)
            FROM FactBalance f
            LEFT JOIN BalanceWatermark w ON w.account_id = f.account_id
            WHERE w.account_id IS NULL
            GROUP BY f.account_id
            ORDER BY 1
        """).fetchall()

    def check(self) -> dict[str, dict]:
        conn = sqlite3.connect(self.db_path)
        try:
            results = {}
            missing_days = self.calendar_gaps(conn)
            results["DimTime.gaps"] = {"count": len(missing_days), "sample": missing_days[:10]}
            gaps, recurrence = self.series_violations(conn)
            results["FactBalance.gaps"] = {"count": len(gaps), "sample": gaps[:10]}
            results["FactBalance.recurrence"] = {"count": len(recurrence), "sample": recurrence[:10]}
            seeds = self.seed_violations(conn)
            results["FactBalance.seed"] = {"count": len(seeds), "sample": seeds[:10]}
            mismatches = self.watermark_mismatches(conn)
            results["BalanceWatermark.mismatch"] = {"count": len(mismatches), "sample": mismatches[:10]}
            for table, fk_column, parent_table, parent_key in self.FK_RELATIONSHIPS:
                orphans = self.find_orphans(conn, table, fk_column, parent_table, parent_key)
                results[f"{table}.{fk_column}"] = {
                    "parent_table": parent_table,
                    "count": len(orphans),
                    "sample": orphans[:10],
                }
        finally:
            conn.close()
        return results

    @staticmethod
    def problem_count(results: dict[str, dict]) -> int:
        return sum(r["count"] for r in results.values())

    def cleanup(self, delete: bool = False) -> dict[str, dict]:
        results = self.check()

        total = self.problem_count(results)
        if total == 0:
            print("No problems found. Balance facts are consistent.")
            return results

        print(f"Found {total} problem(s):")
        for name, info in results.items():
            if info["count"] > 0:
                print(f"  {name}: {info['count']} (e.g. {info['sample'][:3]})")

        orphaned_accounts = sorted(
            set(results["FactBalance.account_id"]["sample"]) | set(results["BalanceWatermark.account_id"]["sample"])
        )
        if not delete or not orphaned_accounts:
            if orphaned_accounts:
                print("\nRun with --delete to remove facts for accounts missing from DimAccount.")
            return results

        conn = sqlite3.connect(self.db_path)
        try:
            orphans = sorted(
                set(self.find_orphans(conn, "FactBalance", "account_id", "DimAccount", "account_id"))
                | set(self.find_orphans(conn, "BalanceWatermark", "account_id", "DimAccount", "account_id"))
            )
            placeholders = ", ".join(["?" for _ in orphans])
            deleted = conn.execute(f"DELETE FROM FactBalance WHERE account_id IN ({placeholders})", orphans).rowcount
            conn.execute(f"DELETE FROM BalanceWatermark WHERE account_id IN ({placeholders})", orphans)
            conn.commit()
        finally:
            conn.close()

        print(f"\nDeleted {deleted} fact(s) for {len(orphans)} orphaned account(s)")
        return results


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Balance fact consistency audit")
    parser.add_argument(
        "--delete",
        action="store_true",
        help="Delete facts for accounts missing from DimAccount (default is to only report)",
    )
    parser.add_argument("--db", type=Path, required=True, help="Path to the mart database")
    args = parser.parse_args()

    BalanceAudit(args.db).cleanup(delete=args.delete)
