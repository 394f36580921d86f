"""
Loads accounts and movements from the mart for balance materialisation.

Raw movement type codes are resolved to a sign here, once, via
:class:`~balance_mart.modules.data.MovementType`; everything downstream only
sees signed amounts.
"""

import sqlite3
from collections.abc import Iterable
from dataclasses import replace
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path

from balance_mart.modules.aggregator import MovementDeltas
from balance_mart.modules.calendar import from_day_key
from balance_mart.modules.data import Account, Movement, MovementType
from balance_mart.modules.errors import ConfigError, SourceDataError


def _decimal(value, places: int) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(Decimal(1).scaleb(-places))
    except InvalidOperation as e:
        raise SourceDataError(f"Not a valid amount: {value!r}") from e


def load_accounts(db_path: Path, account_ids: Iterable[int] | None = None, decimal_places: int = 2) -> list[Account]:
    """
    Read accounts from ``DimAccount``.

    ``opening_date`` is left empty; :func:`apply_series_start` fills it from
    the configured policy.
    """
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute("SELECT account_id, opening_balance, opened_on FROM DimAccount ORDER BY account_id").fetchall()
    finally:
        conn.close()
    wanted = set(account_ids) if account_ids is not None else None
    accounts = []
    for account_id, opening_balance, opened_on in rows:
        if wanted is not None and account_id not in wanted:
            continue
        try:
            opened = date.fromisoformat(opened_on[:10]) if opened_on else None
        except ValueError as e:
            raise SourceDataError(f"Account {account_id} has an invalid opening date: {opened_on!r}") from e
        accounts.append(
            Account(
                account_id=account_id,
                opening_balance=_decimal(opening_balance, decimal_places),
                opening_date=None,
                opened_on=opened,
            )
        )
    return accounts


def normalize_movement(movement_id: int, account_id: int, day_key: int, type_code: str | None, amount, decimal_places: int = 2) -> Movement:
    """Build a signed :class:`Movement` from a raw row, rejecting unknown type codes."""
    try:
        movement_type = MovementType(type_code)
    except ValueError as e:
        raise SourceDataError(f"Movement {movement_id} has an unknown movement type {type_code!r}") from e
    value = _decimal(amount, decimal_places)
    if value is None or day_key is None:
        raise SourceDataError(f"Movement {movement_id} is missing its amount or date")
    return Movement(account_id=account_id, day_key=day_key, signed_amount=movement_type.signed(value))


def load_movements(
    db_path: Path,
    since_day_key: int | None = None,
    account_ids: Iterable[int] | None = None,
    decimal_places: int = 2,
    rejected: dict[int, str] | None = None,
) -> list[Movement]:
    """
    Read signed movements from ``FactMovement``.

    Args:
        db_path: Mart database.
        since_day_key: Only movements on or after this day (incremental window).
        account_ids: Only movements for these accounts.
        decimal_places: Amounts are quantised to this many places.
        rejected: When given, bad rows are skipped instead of raising and the
            first problem seen for each account is recorded here, keyed by
            account id.  Rows with no account id always raise.

    Raises:
        SourceDataError: On an unknown movement type code or a missing amount/date.
    """
    query = "SELECT movement_id, account_id, time_id, movement_type, amount FROM FactMovement"
    params: tuple = ()
    if since_day_key is not None:
        query += " WHERE time_id >= ?"
        params = (since_day_key,)
    query += " ORDER BY movement_id"
    wanted = set(account_ids) if account_ids is not None else None
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    movements = []
    for movement_id, account_id, time_id, code, amount in rows:
        if wanted is not None and account_id not in wanted:
            continue
        try:
            movements.append(normalize_movement(movement_id, account_id, time_id, code, amount, decimal_places))
        except SourceDataError as e:
            if rejected is None or account_id is None:
                raise
            rejected.setdefault(account_id, str(e))
    return movements


def apply_series_start(accounts: Iterable[Account], deltas: MovementDeltas, policy: str) -> list[Account]:
    """
    Set each account's governing ``opening_date`` according to *policy*.

    ``"opened_on"``
        The series starts on the account's creation date.
    ``"first_movement"``
        The series starts on the account's first movement day; accounts with
        no movements fall back to their creation date.
    """
    if policy not in ("opened_on", "first_movement"):
        raise ConfigError(f"Unknown series start policy: {policy!r}")
    resolved = []
    for account in accounts:
        start = account.opened_on
        if policy == "first_movement":
            first = deltas.first_day(account.account_id)
            if first is not None:
                start = from_day_key(first)
        resolved.append(replace(account, opening_date=start))
    return resolved
