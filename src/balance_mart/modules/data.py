from collections import namedtuple
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional


class MovementType(Enum):
    """Raw OLTP movement type codes, resolved to a sign once at ingestion."""

    DEBIT = "D"
    CREDIT = "C"

    @property
    def sign(self) -> int:
        return 1 if self is MovementType.CREDIT else -1

    @property
    def label(self) -> str:
        return "Credit" if self is MovementType.CREDIT else "Debit"

    def signed(self, amount: Decimal) -> Decimal:
        return abs(amount) * self.sign


@dataclass(frozen=True, slots=True)
class CalendarDay:
    day_key: int
    date: date
    day: int
    month: int
    quarter: int
    year: int
    weekday_name: str


@dataclass(frozen=True, slots=True)
class Account:
    account_id: int
    opening_balance: Optional[Decimal]
    opening_date: Optional[date]
    opened_on: Optional[date] = None


@dataclass(frozen=True, slots=True)
class Movement:
    account_id: int
    day_key: int
    signed_amount: Decimal


@dataclass(frozen=True, slots=True)
class BalanceFact:
    account_id: int
    day_key: int
    balance: Decimal


@dataclass(frozen=True, slots=True)
class ResumePoint:
    day_key: int
    balance: Optional[Decimal]


@dataclass(frozen=True, slots=True)
class AccountSeries:
    account_id: int
    facts: list[BalanceFact]
    watermark: Optional[int]


AccountOutcome = namedtuple(
    "AccountOutcome",
    [
        "account_id",  # int
        "days_written",  # int, facts durably committed by this run
        "new_watermark",  # int | None, highest committed day key after the run
        "status",  # str: "success" | "failed" | "cancelled"
        "error_kind",  # str | None, exception class name on failure
        "error_message",  # str | None
    ],
)
"""Named tuple returned by the coordinator for every account in a run.

Fields
------
account_id:
    The account the outcome describes.
days_written:
    Number of balance facts committed to the sink during this run.  On failure
    this counts the batches that were committed before the failure.
new_watermark:
    The account's watermark after the run, so an incremental run can resume
    from it.  ``None`` if the account has never had a fact committed.
status:
    ``"success"``, ``"failed"`` or ``"cancelled"`` (never started because the
    run was cancelled).
error_kind:
    Exception class name for failed accounts, e.g. ``"CalendarGapError"``.
error_message:
    Human-readable failure description.
"""

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


@dataclass(slots=True)
class RunSummary:
    run_id: str
    mode: str
    as_of: int
    outcomes: list
    duration_secs: float = 0.0

    @property
    def succeeded(self) -> list:
        return [o for o in self.outcomes if o.status == STATUS_SUCCESS]

    @property
    def failed(self) -> list:
        return [o for o in self.outcomes if o.status == STATUS_FAILED]

    @property
    def cancelled(self) -> list:
        return [o for o in self.outcomes if o.status == STATUS_CANCELLED]

    @property
    def days_written(self) -> int:
        return sum(o.days_written for o in self.outcomes)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1
