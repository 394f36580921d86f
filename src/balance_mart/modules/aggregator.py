"""
Movement aggregation.

Folds signed movements into one net delta per (account, day) in a single
pass, so the recurrence never has to look anything up per day.
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal
from types import MappingProxyType

from balance_mart.modules.data import Movement

_EMPTY: Mapping[int, Decimal] = MappingProxyType({})


class MovementDeltas:
    """Net signed delta per (account_id, day_key); absent days are zero."""

    __slots__ = ("_by_account", "movement_count")

    def __init__(self, by_account: dict[int, dict[int, Decimal]], movement_count: int = 0):
        self._by_account = by_account
        self.movement_count = movement_count

    @property
    def accounts(self) -> frozenset[int]:
        return frozenset(self._by_account)

    def for_account(self, account_id: int) -> Mapping[int, Decimal]:
        deltas = self._by_account.get(account_id)
        return MappingProxyType(deltas) if deltas is not None else _EMPTY

    def get(self, account_id: int, day_key: int) -> Decimal:
        return self._by_account.get(account_id, {}).get(day_key, Decimal(0))

    def first_day(self, account_id: int) -> int | None:
        deltas = self._by_account.get(account_id)
        return min(deltas) if deltas else None

    def last_day(self, account_id: int) -> int | None:
        deltas = self._by_account.get(account_id)
        return max(deltas) if deltas else None

    def __len__(self) -> int:
        return sum(len(d) for d in self._by_account.values())

    def __contains__(self, key: tuple[int, int]) -> bool:
        account_id, day = key
        return day in self._by_account.get(account_id, {})


def aggregate_movements(movements: Iterable[Movement]) -> MovementDeltas:
    """
    Sum signed movement amounts per (account, day).

    Runs in one linear pass over *movements*; input order does not matter.
    A day whose movements cancel out keeps an explicit zero entry.

    Args:
        movements: Movements with the debit/credit sign already applied.

    Returns:
        MovementDeltas: the per-account, per-day net deltas and the set of
            accounts that had at least one movement.
    """
    by_account: dict[int, dict[int, Decimal]] = {}
    count = 0
    for movement in movements:
        days = by_account.setdefault(movement.account_id, {})
        days[movement.day_key] = days.get(movement.day_key, Decimal(0)) + movement.signed_amount
        count += 1
    return MovementDeltas(by_account, movement_count=count)
