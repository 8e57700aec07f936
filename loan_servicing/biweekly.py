"""
Biweekly Accrual Module

Open-ended loans are billed interest-only on the 15th and on the last
calendar day of every month (quincenas) until the principal reaches zero.
Each quincena charges ``principal_balance * rate / 100``: the rate is a
per-quincena rate, not an annual one, and nothing compounds.

Arrears are the quincenas that have already passed without a matching
payment. Payments written by this package list the due dates they settled;
older payments without that list are matched heuristically (interest portion
covers one quincena and the payment fell within a window around the due date).
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Set, Tuple
import calendar

from .currency import Money, Number, to_decimal
from .loans import Payment


DEFAULT_MATCH_WINDOW_DAYS = 7
MID_MONTH_DAY = 15


@dataclass(frozen=True)
class QuincenaPeriod:
    """One elapsed, unpaid quincena"""
    due_date: date
    interest: Money
    days_overdue: int


@dataclass(frozen=True)
class BiweeklyAccrual:
    """Interest position of an open-ended loan as of a date"""
    current_period_interest: Money
    arrears_interest: Money
    total_interest_due: Money
    next_due_date: date
    next_due_amount: Money
    per_period_interest: Money
    overdue_periods: Tuple[QuincenaPeriod, ...] = field(default_factory=tuple)

    @property
    def oldest_unpaid_due_date(self) -> Optional[date]:
        return self.overdue_periods[0].due_date if self.overdue_periods else None

    @property
    def is_behind(self) -> bool:
        return bool(self.overdue_periods)

    def outstanding_due_dates(self) -> List[date]:
        """Due dates still owed, oldest first, ending with the current one"""
        dates = [period.due_date for period in self.overdue_periods]
        if self.current_period_interest.is_positive():
            dates.append(self.next_due_date)
        return dates


def month_end(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def next_quincena(today: date) -> date:
    """
    Next quincena due date on or after ``today``.

    Days 1-15 fall due on the 15th, later days on the last day of the month.
    A due date maps to itself.
    """
    if today.day <= MID_MONTH_DAY:
        return today.replace(day=MID_MONTH_DAY)
    return month_end(today)


def quincena_dates(start: date, as_of: date) -> List[date]:
    """Every quincena due date from the loan start up to ``as_of`` inclusive"""
    dates = []
    due = next_quincena(start)
    while due <= as_of:
        dates.append(due)
        due = next_quincena(due + timedelta(days=1))
    return dates


def quincena_interest(principal_balance: Money, rate: Number) -> Money:
    """Flat interest for one quincena"""
    rate = to_decimal(rate)
    if not principal_balance.is_positive() or rate <= 0:
        return Money.zero(principal_balance.currency)
    return principal_balance * (rate / Decimal('100'))


def _explicitly_settled(payments: Iterable[Payment]) -> Set[date]:
    settled = set()
    for payment in payments:
        if payment.settled_periods:
            settled.update(payment.settled_periods)
    return settled


def _match_legacy(due_dates: Sequence[date], payments: Iterable[Payment],
                  per_period: Money, window_days: int) -> Set[date]:
    """Window heuristic for payments that do not name their quincenas"""
    candidates = [p for p in payments if p.settled_periods is None]
    used: Set[str] = set()
    matched = set()
    for due in due_dates:
        for payment in candidates:
            if payment.id in used:
                continue
            if (abs((payment.paid_on - due).days) <= window_days
                    and payment.interest_portion >= per_period):
                used.add(payment.id)
                matched.add(due)
                break
    return matched


def accrue(principal_balance: Money, rate: Number, start: date, as_of: date,
           payments: Sequence[Payment] = (),
           window_days: int = DEFAULT_MATCH_WINDOW_DAYS) -> BiweeklyAccrual:
    """
    Current and arrears interest of an open-ended loan as of ``as_of``.

    Every quincena from ``start`` through ``as_of`` is enumerated. Those that
    already elapsed and were not paid contribute one quincena of interest each
    to arrears, based on the current balance. The first upcoming quincena
    that has not been settled in advance contributes the current interest.
    """
    zero = Money.zero(principal_balance.currency)
    next_due = next_quincena(max(as_of, start))
    per_period = quincena_interest(principal_balance, rate)

    if per_period.is_zero():
        return BiweeklyAccrual(
            current_period_interest=zero,
            arrears_interest=zero,
            total_interest_due=zero,
            next_due_date=next_due,
            next_due_amount=zero,
            per_period_interest=zero,
        )

    elapsed = [due for due in quincena_dates(start, as_of) if due < as_of]
    candidates = elapsed + [next_due]
    paid = _explicitly_settled(payments) | _match_legacy(candidates, payments, per_period, window_days)

    overdue = tuple(
        QuincenaPeriod(due_date=due, interest=per_period, days_overdue=(as_of - due).days)
        for due in elapsed if due not in paid
    )
    arrears = per_period * len(overdue)

    # A quincena settled in advance hands the current slot to the next one
    while next_due in paid:
        next_due = next_quincena(next_due + timedelta(days=1))
    total = arrears + per_period

    return BiweeklyAccrual(
        current_period_interest=per_period,
        arrears_interest=arrears,
        total_interest_due=total,
        next_due_date=next_due,
        next_due_amount=total,
        per_period_interest=per_period,
        overdue_periods=overdue,
    )


def settle_periods(outstanding: Sequence[date], per_period: Money, credit: Money,
                   interest_paid: Money) -> Tuple[Tuple[date, ...], Money]:
    """
    Apply interest paid (plus any carried credit) to outstanding quincenas.

    Periods are settled oldest first and only when fully covered; whatever is
    left is returned as the new credit.
    """
    available = credit + interest_paid
    settled = []
    if per_period.is_positive():
        for due in outstanding:
            if available < per_period:
                break
            settled.append(due)
            available = available - per_period
    return tuple(settled), available


def suggested_payment(principal_balance: Money, interest_due: Money,
                      principal_share: Number = Decimal('0.10')) -> Money:
    """Interest owed plus a share of the principal, as a nudge toward payoff"""
    if not principal_balance.is_positive():
        return interest_due
    return principal_balance * to_decimal(principal_share) + interest_due
