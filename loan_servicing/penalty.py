"""
Penalty (Mora) Module

Late-payment penalty: a monthly rate prorated linearly by days overdue,
``balance * rate/100 * days/30``. No compounding. An optional absolute cap
limits the total penalty a loan can accrue.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Optional

from .currency import Money, Number, to_decimal, min_money


DEFAULT_MONTHLY_RATE = Decimal('2')
DAYS_PER_MONTH = Decimal('30')


def days_overdue(due_date: Optional[date], as_of: date) -> int:
    """Whole days past ``due_date``; zero when not yet due or no due date"""
    if due_date is None:
        return 0
    return max(0, (as_of - due_date).days)


def penalty(balance: Money, days: int, monthly_rate: Number = DEFAULT_MONTHLY_RATE) -> Money:
    """Mora on ``balance`` for ``days`` overdue at ``monthly_rate`` percent per 30 days"""
    if days <= 0 or not balance.is_positive():
        return Money.zero(balance.currency)
    rate = to_decimal(monthly_rate) / Decimal('100')
    return balance * (rate * Decimal(days) / DAYS_PER_MONTH)


@dataclass(frozen=True)
class PenaltyCalculator:
    """Mora at a configured monthly rate, optionally capped"""
    monthly_rate: Decimal = DEFAULT_MONTHLY_RATE
    cap: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, 'monthly_rate', to_decimal(self.monthly_rate))
        if self.monthly_rate < 0:
            raise ValueError("Penalty rate cannot be negative")
        if self.cap is not None:
            object.__setattr__(self, 'cap', to_decimal(self.cap))

    def calculate(self, balance: Money, days: int) -> Money:
        amount = penalty(balance, days, self.monthly_rate)
        return self._apply_cap(amount, Money.zero(balance.currency))

    def accrue(self, balance: Money, due_date: Optional[date], as_of: date,
               accrued_through: Optional[date], already_accrued: Money) -> Money:
        """
        Penalty for the days not yet assessed.

        Days are counted from the later of ``due_date`` and ``accrued_through``,
        so evaluating the same loan twice on one date never charges twice.
        """
        zero = Money.zero(balance.currency)
        if due_date is None:
            return zero
        assessed_from = max(due_date, accrued_through) if accrued_through else due_date
        increment = penalty(balance, days_overdue(assessed_from, as_of), self.monthly_rate)
        return self._apply_cap(increment, already_accrued)

    def _apply_cap(self, increment: Money, already_accrued: Money) -> Money:
        if self.cap is None:
            return increment
        headroom = (Money(self.cap, increment.currency) - already_accrued).clamp_zero()
        return min_money(increment, headroom)
