"""
Tests for the balance recurrence engine: the fresh-series and resume
scenarios, and every validation failure raised before a fact is produced.
"""

from datetime import date
from decimal import Decimal

import pytest

from balance_mart.modules.aggregator import aggregate_movements
from balance_mart.modules.calendar import Calendar
from balance_mart.modules.data import Account, Movement, ResumePoint
from balance_mart.modules.engine import materialize_account, plan_account, walk_balances
from balance_mart.modules.errors import (
    CalendarGapError,
    MissingOpeningDataError,
    MovementBeforeOpeningError,
    WatermarkInconsistencyError,
)

JAN = Calendar.from_range(date(2024, 1, 1), date(2024, 1, 31))


def _account(balance: str | None = "100.00", opened: date | None = date(2024, 1, 1), account_id: int = 1) -> Account:
    return Account(
        account_id=account_id,
        opening_balance=Decimal(balance) if balance is not None else None,
        opening_date=opened,
        opened_on=opened,
    )


def _deltas(*movements: tuple[int, str], account_id: int = 1):
    return aggregate_movements(Movement(account_id, day, Decimal(amount)) for day, amount in movements).for_account(account_id)


def _series(facts) -> list[tuple[int, Decimal]]:
    return [(f.day_key, f.balance) for f in facts]


# ---------------------------------------------------------------------------
# Fresh series
# ---------------------------------------------------------------------------


class TestFreshSeries:
    def test_carry_forward_between_movements(self):
        series = materialize_account(_account(), _deltas((20240103, "50.00")), JAN, as_of=20240105)
        assert _series(series.facts) == [
            (20240101, Decimal("100.00")),
            (20240102, Decimal("100.00")),
            (20240103, Decimal("150.00")),
            (20240104, Decimal("150.00")),
            (20240105, Decimal("150.00")),
        ]
        assert series.watermark == 20240105

    def test_movement_on_opening_day_is_included(self):
        series = materialize_account(_account(), _deltas((20240101, "-30.00")), JAN, as_of=20240102)
        assert _series(series.facts) == [(20240101, Decimal("70.00")), (20240102, Decimal("70.00"))]

    def test_no_movements_gives_flat_series(self):
        series = materialize_account(_account("12.34"), _deltas(), JAN, as_of=20240110)
        assert len(series.facts) == 10
        assert {f.balance for f in series.facts} == {Decimal("12.34")}

    def test_one_fact_per_day_in_range(self):
        series = materialize_account(_account(opened=date(2024, 1, 10)), _deltas((20240115, "1")), JAN, as_of=20240131)
        keys = [f.day_key for f in series.facts]
        assert keys == [d.day_key for d in JAN.require_contiguous(20240110, 20240131)]
        assert len(set(keys)) == len(keys)

    def test_decimal_precision_is_exact(self):
        deltas = _deltas(*[(20240101 + i, "0.10") for i in range(10)])
        series = materialize_account(_account("0.00"), deltas, JAN, as_of=20240110)
        assert series.facts[-1].balance == Decimal("1.00")

    def test_opening_after_as_of_writes_nothing(self):
        series = materialize_account(_account(opened=date(2024, 1, 20)), _deltas(), JAN, as_of=20240110)
        assert series.facts == []
        assert series.watermark is None


# ---------------------------------------------------------------------------
# Resume from a watermark
# ---------------------------------------------------------------------------


class TestResume:
    def test_resume_emits_only_days_after_watermark(self):
        deltas = _deltas((20240103, "50.00"), (20240106, "-20.00"))
        series = materialize_account(
            _account(), deltas, JAN, as_of=20240106, resume=ResumePoint(20240103, Decimal("150.00"))
        )
        assert _series(series.facts) == [
            (20240104, Decimal("150.00")),
            (20240105, Decimal("150.00")),
            (20240106, Decimal("130.00")),
        ]
        assert series.watermark == 20240106

    def test_resume_matches_full_recompute(self):
        deltas = _deltas((20240103, "50.00"), (20240106, "-20.00"), (20240120, "7.77"))
        full = materialize_account(_account(), deltas, JAN, as_of=20240131)
        head = materialize_account(_account(), deltas, JAN, as_of=20240110)
        tail = materialize_account(
            _account(), deltas, JAN, as_of=20240131, resume=ResumePoint(head.watermark, head.facts[-1].balance)
        )
        assert _series(head.facts + tail.facts) == _series(full.facts)

    def test_watermark_at_as_of_is_a_no_op(self):
        plan = plan_account(_account(), _deltas(), JAN, as_of=20240105, resume=ResumePoint(20240105, Decimal("100.00")))
        assert plan.days == []
        assert plan.final_watermark == 20240105

    def test_missing_balance_at_watermark(self):
        with pytest.raises(WatermarkInconsistencyError):
            plan_account(_account(), _deltas(), JAN, as_of=20240110, resume=ResumePoint(20240105, None))

    def test_watermark_before_opening_day(self):
        with pytest.raises(WatermarkInconsistencyError):
            plan_account(
                _account(opened=date(2024, 1, 10)), _deltas(), JAN, as_of=20240120, resume=ResumePoint(20240105, Decimal(0))
            )


# ---------------------------------------------------------------------------
# Validation failures
# ---------------------------------------------------------------------------


class TestValidation:
    def test_calendar_gap_fails_before_any_fact(self):
        calendar = Calendar.from_range(date(2024, 1, 1), date(2024, 1, 5), skip=[date(2024, 1, 4)])
        with pytest.raises(CalendarGapError) as excinfo:
            plan_account(_account(), _deltas((20240103, "50.00")), calendar, as_of=20240105)
        assert excinfo.value.missing_day_key == 20240104
        assert excinfo.value.account_id == 1

    def test_calendar_shorter_than_as_of(self):
        with pytest.raises(CalendarGapError):
            plan_account(_account(), _deltas(), JAN, as_of=20240202)

    def test_movements_without_opening_balance(self):
        with pytest.raises(MissingOpeningDataError):
            plan_account(_account(balance=None), _deltas((20240103, "1")), JAN, as_of=20240105)

    def test_movements_without_opening_date(self):
        with pytest.raises(MissingOpeningDataError):
            plan_account(_account(opened=None), _deltas((20240103, "1")), JAN, as_of=20240105)

    def test_no_opening_data_and_no_movements_is_empty(self):
        plan = plan_account(_account(balance=None, opened=None), _deltas(), JAN, as_of=20240105)
        assert plan.days == []
        assert list(walk_balances(plan, _deltas())) == []

    def test_movement_before_opening_day(self):
        with pytest.raises(MovementBeforeOpeningError) as excinfo:
            plan_account(_account(opened=date(2024, 1, 5)), _deltas((20240103, "1")), JAN, as_of=20240110)
        assert excinfo.value.first_movement_key == 20240103
        assert isinstance(excinfo.value, MissingOpeningDataError)
