"""
Amortization Module

Fixed-term loan math: per-period rate from the rate basis, flat simple
interest totals, the equal-installment (French) payment, maturity dates, and
the full amortization table, plus the interest earned and the next
installment owed against that table. Every function is pure; degenerate inputs give
zero results instead of raising so schedule displays stay well-defined.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
import calendar

from .currency import Money, Currency, Number, to_decimal, min_money
from .loans import RateBasis


PERIODS_PER_YEAR = {
    RateBasis.QUINCENAL: 24,
    RateBasis.MENSUAL: 12,
    RateBasis.ANUAL: 1,
}

QUINCENA_DAYS = 15


@dataclass(frozen=True)
class AmortizationQuote:
    """Everything needed to open a fixed-term loan"""
    periodic_rate: Decimal          # fraction, e.g. 0.0125 for 15% mensual
    installment: Money
    total_interest: Money           # flat simple interest, informational
    total_payable: Money
    maturity_date: Optional[date]
    next_due_date: Optional[date]

    @property
    def is_degenerate(self) -> bool:
        return self.installment.is_zero()


@dataclass(frozen=True)
class AmortizationEntry:
    """Single row of an amortization table"""
    installment_number: int
    due_date: date
    payment: Money
    principal: Money
    interest: Money
    remaining_balance: Money

    def __post_init__(self):
        if self.principal + self.interest != self.payment:
            raise ValueError(f"Payment {self.payment.to_string()} does not equal "
                             f"principal {self.principal.to_string()} + "
                             f"interest {self.interest.to_string()}")


def _fixed_basis(basis: RateBasis) -> RateBasis:
    if basis not in PERIODS_PER_YEAR:
        raise ValueError(f"Rate basis {basis.value} has no fixed period length")
    return basis


def periodic_rate(rate: Number, basis: RateBasis) -> Decimal:
    """Per-period rate as a fraction: r/24, r/12 or r, then /100"""
    periods = PERIODS_PER_YEAR[_fixed_basis(basis)]
    return to_decimal(rate) / Decimal(periods) / Decimal('100')


def _degenerate(principal: Money, rate: Number, periods: int) -> bool:
    return not principal.is_positive() or to_decimal(rate) < 0 or periods <= 0


def total_simple_interest(principal: Money, rate: Number, periods: int,
                          basis: RateBasis) -> Money:
    """Flat interest P * i * n, informational only"""
    if _degenerate(principal, rate, periods):
        return Money.zero(principal.currency)
    return principal * (periodic_rate(rate, basis) * periods)


def fixed_installment(principal: Money, rate: Number, periods: int,
                      basis: RateBasis) -> Money:
    """
    Equal installment P * i * (1+i)^n / ((1+i)^n - 1).

    A zero rate divides the principal evenly; negative rates, non-positive
    principal or term give zero.
    """
    if _degenerate(principal, rate, periods):
        return Money.zero(principal.currency)

    i = periodic_rate(rate, basis)
    if i == 0:
        return principal / periods

    factor = (Decimal('1') + i) ** periods
    return Money(principal.amount * (i * factor) / (factor - Decimal('1')), principal.currency)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the end of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance(start: date, basis: RateBasis, periods: int = 1) -> date:
    """Move a date forward by whole periods of the rate basis"""
    basis = _fixed_basis(basis)
    if basis == RateBasis.QUINCENAL:
        return start + timedelta(days=QUINCENA_DAYS * periods)
    if basis == RateBasis.MENSUAL:
        return add_months(start, periods)
    return add_months(start, 12 * periods)


def maturity_date(start: date, basis: RateBasis, periods: int) -> date:
    return advance(start, basis, periods)


def first_due_date(start: date, basis: RateBasis) -> date:
    return advance(start, basis, 1)


def quote(principal: Money, rate: Number, periods: int, basis: RateBasis,
          start: date) -> AmortizationQuote:
    """Installment, totals and key dates for a fixed-term loan"""
    installment = fixed_installment(principal, rate, periods, basis)
    total_interest = total_simple_interest(principal, rate, periods, basis)
    degenerate = _degenerate(principal, rate, periods)
    return AmortizationQuote(
        periodic_rate=Decimal('0') if degenerate else periodic_rate(rate, basis),
        installment=installment,
        total_interest=total_interest,
        total_payable=Money.zero(principal.currency) if degenerate else principal + total_interest,
        maturity_date=None if periods <= 0 else maturity_date(start, basis, periods),
        next_due_date=None if periods <= 0 else first_due_date(start, basis),
    )


def build_schedule(principal: Money, rate: Number, periods: int, basis: RateBasis,
                   start: date) -> List[AmortizationEntry]:
    """
    Equal-installment amortization table.

    Interest for each row is charged on the remaining balance; the final row
    pays exactly what is left so the table always closes at zero.
    """
    if _degenerate(principal, rate, periods):
        return []

    installment = fixed_installment(principal, rate, periods, basis)
    i = periodic_rate(rate, basis)
    zero = Money.zero(principal.currency)
    remaining = principal
    schedule = []

    for number in range(1, periods + 1):
        interest = remaining * i
        if number == periods:
            principal_part = remaining
        else:
            principal_part = installment - interest
            if principal_part > remaining:
                principal_part = remaining

        remaining = remaining - principal_part
        schedule.append(AmortizationEntry(
            installment_number=number,
            due_date=advance(start, basis, number),
            payment=principal_part + interest,
            principal=principal_part,
            interest=interest,
            remaining_balance=remaining,
        ))

        if remaining == zero:
            break

    return schedule


def accrued_interest(schedule: Sequence[AmortizationEntry], start: date, as_of: date,
                     currency: Currency = Currency.USD) -> Money:
    """
    Scheduled interest earned by ``as_of``.

    Rows whose due date has arrived count in full. The row in progress accrues
    by actual days elapsed in its period.
    """
    total = Money.zero(currency)
    period_start = start
    for entry in schedule:
        if entry.due_date <= as_of:
            total = total + entry.interest
            period_start = entry.due_date
            continue
        if as_of > period_start:
            elapsed = Decimal((as_of - period_start).days)
            length = Decimal((entry.due_date - period_start).days)
            total = total + entry.interest * (elapsed / length)
        break
    return total


def next_installment(schedule: Sequence[AmortizationEntry], repaid: Money,
                     principal_balance: Money,
                     interest_paid: Money) -> Tuple[Optional[date], Money]:
    """
    First row not yet covered and the amount that brings the loan up to it.

    ``repaid`` is everything paid so far toward interest and principal. The
    amount never exceeds the payoff as of that row's due date.
    """
    zero = Money.zero(principal_balance.currency)
    if not principal_balance.is_positive() or not schedule:
        return None, zero

    scheduled = zero
    interest = zero
    for entry in schedule:
        scheduled = scheduled + entry.payment
        interest = interest + entry.interest
        if scheduled > repaid:
            payoff = principal_balance + (interest - interest_paid).clamp_zero()
            return entry.due_date, min_money(scheduled - repaid, payoff)

    # Every row covered but principal remains
    return schedule[-1].due_date, principal_balance + (interest - interest_paid).clamp_zero()
