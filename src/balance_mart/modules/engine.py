"""
Balance recurrence engine.

Turns one account's opening balance and its pre-aggregated daily deltas into
a gapless daily balance series::

    balance(start)  = seed + delta(start)
    balance(day_n)  = balance(day_n-1) + delta(day_n)

where *seed* is the opening balance for a fresh series, or the committed
balance at the watermark when resuming.  The opening balance is a
start-of-day figure, so a movement on the opening day is included in the
opening day's fact.

All validation happens in :func:`plan_account`, before the first fact is
produced; :func:`walk_balances` is a pure in-memory fold that cannot fail
half way.  Nothing here touches the fact sink.
"""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from decimal import Decimal

from balance_mart.modules.calendar import Calendar, day_key, next_day_key
from balance_mart.modules.data import Account, AccountSeries, BalanceFact, CalendarDay, ResumePoint
from balance_mart.modules.errors import (
    MissingOpeningDataError,
    MovementBeforeOpeningError,
    WatermarkInconsistencyError,
)

_ZERO = Decimal(0)


@dataclass(frozen=True, slots=True)
class AccountPlan:
    account_id: int
    days: list[CalendarDay]
    seed: Decimal
    previous_watermark: int | None

    @property
    def final_watermark(self) -> int | None:
        return self.days[-1].day_key if self.days else self.previous_watermark


def plan_account(
    account: Account,
    deltas: Mapping[int, Decimal],
    calendar: Calendar,
    as_of: int,
    resume: ResumePoint | None = None,
) -> AccountPlan:
    """
    Validate one account's inputs and work out which days to walk.

    ``opening_balance`` is the balance at the start of the opening day, so the
    first fact is ``opening_balance + delta(opening_day)`` rather than
    ``opening_balance`` itself.  They differ whenever the opening day has a
    non-zero net movement, which is the usual case under the
    ``first_movement`` series start.

    Args:
        account: The account, with its governing ``opening_date`` already set.
        deltas: The account's net delta per day key.
        calendar: The calendar sequence covering the account's range.
        as_of: Last day key to materialise (inclusive).
        resume: Watermark and committed balance to resume from, or ``None``
            for a fresh series starting at the opening day.

    Returns:
        AccountPlan: the contiguous days to walk and the seed balance.  The
            day list is empty when there is nothing new to materialise.

    Raises:
        MissingOpeningDataError: The account has movements but no opening
            balance or date.
        MovementBeforeOpeningError: A movement is dated before the opening day.
        WatermarkInconsistencyError: Resuming, but no balance was committed at
            the watermark day, or the watermark precedes the opening day.
        CalendarGapError: A day between the start and *as_of* is missing from
            the calendar.
    """
    account_id = account.account_id
    if account.opening_balance is None or account.opening_date is None:
        if deltas:
            raise MissingOpeningDataError(account_id)
        # No opening data and nothing ever happened: there is no series to build.
        return AccountPlan(account_id, [], _ZERO, resume.day_key if resume else None)

    opening_key = day_key(account.opening_date)
    if deltas:
        first_movement = min(deltas)
        if first_movement < opening_key:
            raise MovementBeforeOpeningError(account_id, first_movement, opening_key)

    if resume is not None:
        if resume.day_key < opening_key:
            raise WatermarkInconsistencyError(account_id, resume.day_key, f"it precedes the opening day {opening_key}")
        if resume.balance is None:
            raise WatermarkInconsistencyError(account_id, resume.day_key, "no balance fact exists at the watermark day")
        start_key = next_day_key(resume.day_key)
        seed = resume.balance
        previous = resume.day_key
    else:
        start_key = opening_key
        seed = account.opening_balance
        previous = None

    days = calendar.require_contiguous(start_key, as_of, account_id=account_id)
    return AccountPlan(account_id, days, seed, previous)


def walk_balances(plan: AccountPlan, deltas: Mapping[int, Decimal]) -> Iterator[BalanceFact]:
    """Yield one fact per planned day, in date order, carrying the balance forward."""
    balance = plan.seed
    for day in plan.days:
        balance = balance + deltas.get(day.day_key, _ZERO)
        yield BalanceFact(plan.account_id, day.day_key, balance)


def materialize_account(
    account: Account,
    deltas: Mapping[int, Decimal],
    calendar: Calendar,
    as_of: int,
    resume: ResumePoint | None = None,
) -> AccountSeries:
    """Plan and walk one account, returning the full ordered series and its new watermark."""
    plan = plan_account(account, deltas, calendar, as_of, resume)
    return AccountSeries(account_id=plan.account_id, facts=list(walk_balances(plan, deltas)), watermark=plan.final_watermark)
