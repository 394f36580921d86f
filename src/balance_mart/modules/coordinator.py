"""
Balance materialisation run coordinator.

Classes:
    RunMode: ``full`` or ``incremental``.
    BalanceRun: One materialisation run over a set of accounts.

Functions:
    partition_accounts: Round-robin assignment of accounts to workers.
    run_materialization: Load accounts, movements and the calendar from a
        mart database and run a :class:`BalanceRun` against it.
"""

import asyncio
import signal
import sqlite3
import sys
import threading
import time
import traceback
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from itertools import islice
from pathlib import Path
from uuid import uuid4

from balance_mart.modules.aggregator import MovementDeltas, aggregate_movements
from balance_mart.modules.calendar import Calendar, load_calendar, next_day_key, today_key
from balance_mart.modules.config import MartConfig, load_config
from balance_mart.modules.data import (
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_SUCCESS,
    Account,
    AccountOutcome,
    Movement,
    ResumePoint,
    RunSummary,
)
from balance_mart.modules.engine import plan_account, walk_balances
from balance_mart.modules.errors import ConcurrentRunError, MaterializationError, SinkWriteError, SourceDataError
from balance_mart.modules.paths import get_paths
from balance_mart.modules.sink import FactSink, SqliteFactSink
from balance_mart.modules.source import apply_series_start, load_accounts, load_movements

# Failures worth retrying at the batch level; anything else is a bug or bad data.
RETRYABLE_SINK_ERRORS = (sqlite3.OperationalError, OSError)


class RunMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


def partition_accounts(accounts: Sequence[Account], workers: int) -> list[list[Account]]:
    """
    Split *accounts* into at most *workers* disjoint partitions.

    Accounts are sorted by id and dealt round-robin, so every account lands in
    exactly one partition and one worker owns it for the whole run.
    """
    ordered = sorted(accounts, key=lambda a: a.account_id)
    count = max(1, min(workers, len(ordered)))
    return [p for p in (ordered[i::count] for i in range(count)) if p]


class BalanceRun:
    """
    One materialisation run.

    Aggregates the run's movements once, then hands each account to exactly
    one worker, which plans, walks and writes it end to end.  Facts are
    streamed to the sink in batches of ``config.run.batch_size``; a failed
    batch is retried with exponential backoff and, once retries are exhausted,
    fails that account only.

    A lease on every account is taken from the sink before the first write and
    released when the run ends.  :meth:`cancel` stops the run between accounts;
    an account that has started is always finished.  While :meth:`run` is
    executing in the main thread, SIGINT (Ctrl-C) calls :meth:`interrupt`,
    which cancels the same way; a second Ctrl-C raises ``KeyboardInterrupt``.

    Accounts listed in *rejected* had source rows that could not be read;
    they fail with ``SourceDataError`` without touching the sink.

    Attributes:
        run_id: Unique identifier of this run.
        mode: :class:`RunMode` of the run.
        as_of: Last day key materialised (inclusive).
        summary: :class:`RunSummary` once :meth:`run` has returned.
    """

    __slots__ = (
        "run_id",
        "sink",
        "accounts",
        "movements",
        "calendar",
        "mode",
        "as_of",
        "config",
        "print_log",
        "turbo",
        "rejected",
        "summary",
        "_cancel",
    )

    def __init__(
        self,
        sink: FactSink,
        accounts: Iterable[Account],
        movements: Iterable[Movement],
        calendar: Calendar,
        mode: RunMode | str,
        as_of: int | None = None,
        config: MartConfig | None = None,
        run_id: str | None = None,
        print_log: bool = True,
        turbo: bool = True,
        rejected: Mapping[int, str] | None = None,
    ):
        self.run_id: str = run_id or str(uuid4())
        self.sink = sink
        self.accounts: list[Account] = list(accounts)
        self.movements = movements
        self.calendar = calendar
        self.mode = RunMode(mode)
        self.as_of: int = as_of if as_of is not None else today_key()
        self.config = config or MartConfig()
        self.print_log = print_log
        self.turbo = turbo
        self.rejected: dict[int, str] = dict(rejected or {})
        self.summary: RunSummary | None = None
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Ask the workers to stop before their next account."""
        self._cancel.set()

    def interrupt(self, signum=None, frame=None) -> None:
        """SIGINT handler: cancel on the first interrupt, abort on the second."""
        if self._cancel.is_set():
            raise KeyboardInterrupt
        self._log("Interrupted: finishing accounts in progress (Ctrl-C again to abort)")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _log(self, message: str) -> None:
        if self.print_log:
            print(message)

    def _resolve_accounts(self, deltas: MovementDeltas) -> list[Account]:
        known = {a.account_id for a in self.accounts}
        # Movements for an account missing from the dimension still get an outcome.
        unknown = (set(deltas.accounts) | set(self.rejected)) - known
        orphans = [Account(account_id=a, opening_balance=None, opening_date=None) for a in sorted(unknown)]
        return apply_series_start(self.accounts + orphans, deltas, self.config.balances.series_start)

    def run(self) -> RunSummary:
        """
        Execute the run and record it in the sink.

        Returns:
            RunSummary: One :data:`AccountOutcome` per account, ordered by id.

        Raises:
            ConcurrentRunError: Another run holds a lease on any of the
                accounts.  Nothing is written in that case.
            KeyboardInterrupt: A second SIGINT arrived while cancelling.  The
                lease is still released; the run is not recorded.
        """
        timer_start = time.monotonic()
        deltas = aggregate_movements(self.movements)
        accounts = self._resolve_accounts(deltas)
        account_ids = [a.account_id for a in accounts]

        self.sink.acquire_run_lock(self.run_id, self.mode.value, account_ids)
        try:
            partitions = partition_accounts(accounts, self.config.workers)
            self._log(
                f"{self.mode.value} run {self.run_id}: {len(accounts)} account(s), "
                f"{deltas.movement_count:,} movement(s), as of {self.as_of}, {len(partitions)} worker(s)"
            )
            # Signal handlers can only be set from the main thread.
            handle_sigint = threading.current_thread() is threading.main_thread()
            if handle_sigint:
                previous_handler = signal.signal(signal.SIGINT, self.interrupt)
            try:
                if self.turbo and len(partitions) > 1:
                    outcomes = asyncio.run(self.process_turbo(partitions, deltas), debug=False)
                else:
                    outcomes = [o for p in partitions for o in self.process_partition(p, deltas)]
            finally:
                if handle_sigint:
                    signal.signal(signal.SIGINT, previous_handler if previous_handler is not None else signal.SIG_DFL)
            outcomes.sort(key=lambda o: o.account_id)
            self.summary = RunSummary(
                run_id=self.run_id,
                mode=self.mode.value,
                as_of=self.as_of,
                outcomes=outcomes,
                duration_secs=time.monotonic() - timer_start,
            )
            self.sink.record_run(self.summary)
        finally:
            self.sink.release_run_lock(self.run_id)

        summary = self.summary
        self._log(
            f"Done: {len(summary.outcomes)} account(s): {len(summary.succeeded)} succeeded, "
            f"{len(summary.failed)} failed, {len(summary.cancelled)} cancelled; "
            f"{summary.days_written:,} day(s) written in {summary.duration_secs:.1f}s."
        )
        return summary

    async def process_turbo(self, partitions: list[list[Account]], deltas: MovementDeltas) -> list:
        """
        Process the partitions in parallel, one executor thread per partition.

        A partition that dies outside the per-account guard marks its remaining
        accounts as failed; the other partitions are unaffected.
        """
        loop = asyncio.get_running_loop()
        with ThreadPoolExecutor(max_workers=len(partitions), thread_name_prefix="balance-run") as executor:
            tasks = [loop.run_in_executor(executor, self.process_partition, partition, deltas) for partition in partitions]
            results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes = []
        for partition, result in zip(partitions, results):
            if isinstance(result, BaseException):
                outcomes.extend(
                    AccountOutcome(a.account_id, 0, None, STATUS_FAILED, type(result).__name__, str(result)) for a in partition
                )
            else:
                outcomes.extend(result)
        return outcomes

    def process_partition(self, accounts: list[Account], deltas: MovementDeltas) -> list:
        """Process one worker's accounts in order, checking for cancellation between accounts."""
        outcomes = []
        for account in accounts:
            if self._cancel.is_set():
                outcomes.append(AccountOutcome(account.account_id, 0, None, STATUS_CANCELLED, None, None))
                continue
            outcomes.append(self.process_account(account, deltas))
        return outcomes

    def process_account(self, account: Account, deltas: MovementDeltas) -> AccountOutcome:
        """
        Plan, walk and write one account.

        Never raises: every failure becomes a ``failed`` outcome carrying the
        number of days committed before it and the resulting watermark.
        """
        account_id = account.account_id
        account_deltas = deltas.for_account(account_id)
        batch_size = self.config.run.batch_size
        days_written = 0
        watermark: int | None = None
        if account_id in self.rejected:
            message = self.rejected[account_id]
            self._log(f"[account {account_id}] SourceDataError: {message}")
            return AccountOutcome(account_id, 0, None, STATUS_FAILED, SourceDataError.__name__, message)
        try:
            watermark = self.sink.get_watermark(account_id)
            resume = None
            if self.mode is RunMode.INCREMENTAL and watermark is not None:
                resume = ResumePoint(watermark, self.sink.get_balance(account_id, watermark))
            plan = plan_account(account, account_deltas, self.calendar, self.as_of, resume)

            reset = self.mode is RunMode.FULL
            facts = walk_balances(plan, account_deltas)
            first = True
            while True:
                batch = list(islice(facts, batch_size))
                if not batch and not (first and reset):
                    break
                self.flush(account_id, batch, reset=reset and first)
                days_written += len(batch)
                if batch:
                    watermark = batch[-1].day_key
                elif reset:
                    watermark = None
                first = False
                if len(batch) < batch_size:
                    break
        except (MaterializationError, ConcurrentRunError) as e:
            self._log(f"[account {account_id}] {type(e).__name__}: {e}")
            return AccountOutcome(account_id, days_written, watermark, STATUS_FAILED, type(e).__name__, str(e))
        except Exception as e:
            # Last-resort guard so one account can never take down the run.
            self._log(f"[account {account_id}] ** Unexpected Failure **: {type(e).__name__}: {e}")
            traceback.print_exc(file=sys.stderr)
            return AccountOutcome(account_id, days_written, watermark, STATUS_FAILED, type(e).__name__, str(e))
        return AccountOutcome(account_id, days_written, watermark, STATUS_SUCCESS, None, None)

    def flush(self, account_id: int, batch: list, reset: bool = False) -> int:
        """
        Write one batch, retrying with exponential backoff.

        Raises:
            SinkWriteError: once ``max_retries`` retries have failed.
        """
        max_retries = self.config.run.max_retries
        backoff = self.config.run.backoff_secs
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.sink.upsert_balance_facts(account_id, batch, run_id=self.run_id, reset=reset)
            except RETRYABLE_SINK_ERRORS as e:
                if attempt > max_retries:
                    raise SinkWriteError(account_id, attempt, e) from e
                delay = backoff * 2 ** (attempt - 1)
                self._log(f"[account {account_id}] batch write failed ({type(e).__name__}: {e}); retry {attempt}/{max_retries} in {delay:.2f}s")
                time.sleep(delay)


def run_materialization(
    mode: RunMode | str,
    as_of: int | None = None,
    project_path: Path | None = None,
    db_path: Path | None = None,
    config: MartConfig | None = None,
    account_ids: Iterable[int] | None = None,
    print_log: bool = True,
    turbo: bool = True,
) -> RunSummary:
    """
    Materialise balances for the accounts in a mart database.

    Args:
        mode: ``"full"`` or ``"incremental"``.
        as_of: Last day key to materialise; defaults to today.
        project_path: Project root used to locate ``database/mart.db`` when
            *db_path* is not given.
        db_path: Explicit mart database path.
        config: Run configuration; loaded from TOML when ``None``.
        account_ids: Restrict the run to these accounts.
        print_log: Print progress and failures.
        turbo: Process partitions in parallel.

    Movements with an unknown type code or no amount or date fail their
    account with ``SourceDataError``; the other accounts still run.

    Returns:
        RunSummary: per-account outcomes.

    Raises:
        ProjectDatabaseMissing: The mart database does not exist.
        ConcurrentRunError: Another run holds a lease on one of the accounts.
    """
    config = config or load_config()
    mode = RunMode(mode)
    as_of = as_of if as_of is not None else today_key()
    db_path = Path(db_path) if db_path is not None else get_paths(project_path).require_mart_db()
    places = config.balances.decimal_places
    wanted = list(account_ids) if account_ids is not None else None

    sink = SqliteFactSink(
        db_path,
        write_timeout_secs=config.run.write_timeout_secs,
        lock_ttl_secs=config.run.lock_ttl_secs,
        decimal_places=places,
    )
    accounts = load_accounts(db_path, wanted, places)

    # Incremental runs only need movements after the oldest watermark, as long
    # as every account has one and the series start does not depend on the
    # first movement.
    since = None
    if mode is RunMode.INCREMENTAL and accounts and config.balances.series_start == "opened_on":
        watermarks = sink.get_watermarks(a.account_id for a in accounts)
        if len(watermarks) == len(accounts):
            since = next_day_key(min(watermarks.values()))

    rejected: dict[int, str] = {}
    movements = load_movements(db_path, since_day_key=since, account_ids=wanted, decimal_places=places, rejected=rejected)
    calendar = load_calendar(db_path, end_key=as_of)
    run = BalanceRun(
        sink=sink,
        accounts=accounts,
        movements=movements,
        calendar=calendar,
        mode=mode,
        as_of=as_of,
        config=config,
        print_log=print_log,
        turbo=turbo,
        rejected=rejected,
    )
    return run.run()
