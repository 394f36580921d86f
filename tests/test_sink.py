import sqlite3
from decimal import Decimal

import pytest

from balance_mart.modules.data import AccountOutcome, BalanceFact, RunSummary
from balance_mart.modules.errors import ConcurrentRunError, ProjectDatabaseMissing
from balance_mart.modules.sink import SqliteFactSink


def _facts(account_id: int, *pairs: tuple[int, str]) -> list[BalanceFact]:
    return [BalanceFact(account_id, day, Decimal(balance)) for day, balance in pairs]


@pytest.fixture
def sink(mart_db) -> SqliteFactSink:
    return SqliteFactSink(mart_db, write_timeout_secs=1.0, lock_ttl_secs=60)


class TestUpsert:
    def test_write_advances_watermark(self, sink):
        assert sink.upsert_balance_facts(1, _facts(1, (20240101, "1.00"), (20240102, "2.50"))) == 2
        assert sink.get_watermark(1) == 20240102
        assert sink.get_balance(1, 20240102) == Decimal("2.50")

    def test_upsert_is_idempotent(self, sink):
        batch = _facts(1, (20240101, "1.00"), (20240102, "2.00"))
        sink.upsert_balance_facts(1, batch)
        sink.upsert_balance_facts(1, batch)
        assert [(f.day_key, f.balance) for f in sink.get_balance_facts(1)] == [
            (20240101, Decimal("1.00")),
            (20240102, Decimal("2.00")),
        ]

    def test_upsert_replaces_existing_balance(self, sink):
        sink.upsert_balance_facts(1, _facts(1, (20240101, "1.00")))
        sink.upsert_balance_facts(1, _facts(1, (20240101, "9.99")))
        assert sink.get_balance(1, 20240101) == Decimal("9.99")

    def test_reset_clears_previous_series(self, sink):
        sink.upsert_balance_facts(1, _facts(1, (20240101, "1"), (20240102, "1"), (20240103, "1")))
        sink.upsert_balance_facts(2, _facts(2, (20240101, "5")))
        sink.upsert_balance_facts(1, _facts(1, (20240102, "7")), reset=True)
        assert [f.day_key for f in sink.get_balance_facts(1)] == [20240102]
        assert sink.get_watermark(1) == 20240102
        assert sink.get_watermark(2) == 20240101

    def test_reset_with_empty_batch_removes_watermark(self, sink):
        sink.upsert_balance_facts(1, _facts(1, (20240101, "1")))
        sink.upsert_balance_facts(1, [], reset=True)
        assert sink.get_watermark(1) is None
        assert sink.get_balance_facts(1) == []

    def test_rejects_foreign_account(self, sink):
        with pytest.raises(ValueError):
            sink.upsert_balance_facts(1, _facts(2, (20240101, "1")))

    def test_rejects_unordered_batch(self, sink):
        with pytest.raises(ValueError):
            sink.upsert_balance_facts(1, _facts(1, (20240102, "1"), (20240101, "1")))
        assert sink.get_watermark(1) is None

    def test_get_watermarks(self, sink):
        sink.upsert_balance_facts(1, _facts(1, (20240101, "1")))
        sink.upsert_balance_facts(3, _facts(3, (20240105, "1")))
        assert sink.get_watermarks([1, 2, 3]) == {1: 20240101, 3: 20240105}

    def test_busy_database_raises_operational_error(self, mart_db):
        sink = SqliteFactSink(mart_db, write_timeout_secs=0.1)
        blocker = sqlite3.connect(mart_db, isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(sqlite3.OperationalError):
                sink.upsert_balance_facts(1, _facts(1, (20240101, "1")))
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

    def test_missing_database(self, tmp_path):
        with pytest.raises(ProjectDatabaseMissing):
            SqliteFactSink(tmp_path / "absent.db")


class TestRunLock:
    def test_second_run_is_refused(self, sink):
        sink.acquire_run_lock("run-a", "full", [1, 2, 3])
        with pytest.raises(ConcurrentRunError) as excinfo:
            sink.acquire_run_lock("run-b", "incremental", [3, 4])
        assert excinfo.value.account_ids == [3]
        assert excinfo.value.holders == ["run-a"]

    def test_refused_run_takes_no_lease(self, sink):
        sink.acquire_run_lock("run-a", "full", [1])
        with pytest.raises(ConcurrentRunError):
            sink.acquire_run_lock("run-b", "full", [1, 2])
        sink.release_run_lock("run-a")
        sink.acquire_run_lock("run-c", "full", [2])

    def test_disjoint_accounts_may_run_together(self, sink):
        sink.acquire_run_lock("run-a", "full", [1, 2])
        sink.acquire_run_lock("run-b", "full", [3, 4])

    def test_release_frees_accounts(self, sink):
        sink.acquire_run_lock("run-a", "full", [1])
        sink.release_run_lock("run-a")
        sink.acquire_run_lock("run-b", "full", [1])

    def test_expired_lease_is_ignored(self, mart_db):
        sink = SqliteFactSink(mart_db, lock_ttl_secs=-1)
        sink.acquire_run_lock("run-a", "full", [1])
        sink.acquire_run_lock("run-b", "full", [1])

    def test_write_renews_the_runs_leases(self, sink, mart_db):
        sink.acquire_run_lock("run-a", "full", [1, 2])
        conn = sqlite3.connect(mart_db)
        try:
            conn.execute("UPDATE RunLock SET expires_at = 0")
            conn.commit()
            sink.upsert_balance_facts(1, _facts(1, (20240101, "1.00")), run_id="run-a")
            expiries = [row[0] for row in conn.execute("SELECT expires_at FROM RunLock ORDER BY account_id")]
        finally:
            conn.close()
        assert len(expiries) == 2
        assert all(e > 0 for e in expiries)
        with pytest.raises(ConcurrentRunError):
            sink.acquire_run_lock("run-b", "full", [2])

    def test_write_after_lease_was_taken_over(self, mart_db):
        sink = SqliteFactSink(mart_db, lock_ttl_secs=-1)
        sink.acquire_run_lock("run-a", "full", [1])
        sink.acquire_run_lock("run-b", "full", [1])
        with pytest.raises(ConcurrentRunError):
            sink.upsert_balance_facts(1, _facts(1, (20240101, "1.00")), run_id="run-a")
        assert sink.get_watermark(1) is None
        assert sink.get_balance_facts(1) == []


class TestRunRecords:
    def test_record_run_writes_head_and_lines(self, sink, mart_db):
        summary = RunSummary(
            run_id="run-x",
            mode="full",
            as_of=20240110,
            outcomes=[
                AccountOutcome(1, 10, 20240110, "success", None, None),
                AccountOutcome(2, 0, None, "failed", "CalendarGapError", "missing"),
            ],
            duration_secs=0.5,
        )
        sink.record_run(summary)
        conn = sqlite3.connect(mart_db)
        try:
            head = conn.execute(
                "SELECT account_count, success_count, failed_count, days_written FROM RunHead WHERE run_id = 'run-x'"
            ).fetchone()
            lines = conn.execute("SELECT account_id, status, error_kind FROM RunLine ORDER BY account_id").fetchall()
        finally:
            conn.close()
        assert head == (2, 1, 1, 10)
        assert lines == [(1, "success", None), (2, "failed", "CalendarGapError")]
