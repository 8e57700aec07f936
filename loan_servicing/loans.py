"""
Loan Module

Loan and payment records, the fixed-term / open-ended terms variant, and the
enumerations shared by the calculation engines. Records are frozen snapshots:
the lifecycle produces a new Loan for every change instead of mutating one.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Optional, Tuple, Union
from enum import Enum
import time

from .currency import Money, Currency
from .exceptions import InvalidInput
from .storage import StorageRecord


class RateBasis(Enum):
    """Period the nominal rate refers to"""
    QUINCENAL = "quincenal"    # 24 periods per year, 15-day steps
    MENSUAL = "mensual"        # 12 periods per year
    ANUAL = "anual"            # 1 period per year
    INDEFINIDO = "indefinido"  # open-ended, rate is charged per quincena


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Recorded, not yet disbursed
    ACTIVE = "active"          # Current on its schedule
    OVERDUE = "overdue"        # Past maturity (fixed-term) or marked behind
    SETTLED = "settled"        # Principal fully repaid (terminal)
    CANCELLED = "cancelled"    # Administratively cancelled (terminal)

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.SETTLED, LoanStatus.CANCELLED)


class PaymentMethod(Enum):
    """How the borrower paid"""
    EFECTIVO = "efectivo"
    TRANSFERENCIA = "transferencia"
    CHEQUE = "cheque"
    YAPPY = "yappy"
    NEQUI = "nequi"
    OTRO = "otro"


@dataclass(frozen=True)
class FixedTerm:
    """Amortized loan repaid in a fixed number of periods"""
    periods: int
    maturity_date: date

    def __post_init__(self):
        if self.periods <= 0:
            raise InvalidInput("Fixed-term loans need a positive number of periods")


@dataclass(frozen=True)
class OpenEnded:
    """Interest-only loan billed per quincena until principal reaches zero"""


LoanTerms = Union[FixedTerm, OpenEnded]


def is_open_ended_request(term: Optional[int], open_ended: bool, rate_basis: RateBasis) -> bool:
    """
    Decide between fixed-term and open-ended from origination input.

    A term that is absent, zero or negative counts as open-ended only when the
    caller also asked for it (flag or 'indefinido' basis).

    Raises:
        InvalidInput: a positive term together with the open-ended flag or an
            'indefinido' basis, or neither a term nor the open-ended flag
    """
    has_term = term is not None and term > 0
    wants_open = open_ended or rate_basis == RateBasis.INDEFINIDO
    if has_term and wants_open:
        raise InvalidInput("A loan cannot have both a fixed term and be open-ended")
    if not has_term and not wants_open:
        raise InvalidInput("A loan needs a positive term or the open-ended flag")
    return not has_term


@dataclass(frozen=True)
class Loan(StorageRecord):
    """Loan snapshot: terms, running balances, schedule and status"""
    number: str
    client_id: str
    principal: Money                   # monto
    rate: Decimal                      # tasaInteres, percent
    rate_basis: RateBasis
    terms: LoanTerms
    start_date: date

    # Running balances
    principal_balance: Money
    interest_due: Money
    penalty_accrued: Money
    interest_paid_to_date: Money
    interest_credit: Money = None      # partial quincena interest not yet covering a period
    days_overdue: int = 0
    penalty_accrued_through: Optional[date] = None

    # Schedule
    due_date: Optional[date] = None    # maturity, fixed-term only
    next_due_date: Optional[date] = None
    next_due_amount: Money = None

    status: LoanStatus = LoanStatus.ACTIVE
    version: int = 1
    purpose: str = ""
    notes: str = ""
    settled_on: Optional[date] = None
    cancelled_on: Optional[date] = None

    def __post_init__(self):
        zero = Money.zero(self.principal.currency)
        if self.interest_credit is None:
            object.__setattr__(self, 'interest_credit', zero)
        if self.next_due_amount is None:
            object.__setattr__(self, 'next_due_amount', zero)

        amounts = [self.principal_balance, self.interest_due, self.penalty_accrued,
                   self.interest_paid_to_date, self.interest_credit, self.next_due_amount]
        if any(amount.currency != self.principal.currency for amount in amounts):
            raise ValueError("All loan amounts must use the loan currency")
        if any(amount.is_negative() for amount in amounts):
            raise ValueError("Loan balances cannot be negative")
        if self.days_overdue < 0:
            raise ValueError("days_overdue cannot be negative")

        if isinstance(self.terms, OpenEnded) and self.due_date is not None:
            raise ValueError("Open-ended loans never carry a maturity date")
        if isinstance(self.terms, FixedTerm) and self.due_date != self.terms.maturity_date:
            raise ValueError("Fixed-term due_date must equal the maturity date")

        if self.principal_balance.is_zero() != (self.status == LoanStatus.SETTLED):
            raise ValueError(
                f"principal_balance {self.principal_balance.to_string()} "
                f"is inconsistent with status {self.status.value}"
            )

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def is_open_ended(self) -> bool:
        return isinstance(self.terms, OpenEnded)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(frozen=True)
class Payment(StorageRecord):
    """
    Immutable payment record with its allocation and the resulting balances.

    A payment is the cause of a new Loan snapshot; it never changes after it
    is written.
    """
    number: str
    loan_id: str
    client_id: str
    amount: Money
    penalty_portion: Money
    interest_portion: Money
    principal_portion: Money
    overflow: Money
    paid_on: date
    recorded_on: date
    method: PaymentMethod = PaymentMethod.EFECTIVO
    reference: str = ""
    notes: str = ""
    # Quincena due dates this payment settled; None for imported/legacy payments
    settled_periods: Optional[Tuple[date, ...]] = None

    # Balance snapshot for audit
    principal_balance_before: Optional[Money] = None
    principal_balance_after: Optional[Money] = None
    interest_due_after: Optional[Money] = None
    penalty_accrued_after: Optional[Money] = None
    days_overdue_before: int = 0
    days_overdue_after: int = 0

    def __post_init__(self):
        portions = (self.penalty_portion + self.interest_portion
                    + self.principal_portion + self.overflow)
        if portions != self.amount:
            raise ValueError(
                f"Payment portions {portions.to_string()} do not add up to "
                f"{self.amount.to_string()}"
            )
        if self.settled_periods is not None and not isinstance(self.settled_periods, tuple):
            object.__setattr__(self, 'settled_periods', tuple(self.settled_periods))


def _sequence_number(prefix: str, issued_on: date, clock=time.time_ns) -> str:
    millis = clock() // 1_000_000
    return f"{prefix}{issued_on:%y%m}{millis % 1_000_000:06d}"


def generate_loan_number(issued_on: date, clock=time.time_ns) -> str:
    """PR + yymm + last six digits of the millisecond clock"""
    return _sequence_number("PR", issued_on, clock)


def generate_payment_number(issued_on: date, clock=time.time_ns) -> str:
    """PAG + yymm + last six digits of the millisecond clock"""
    return _sequence_number("PAG", issued_on, clock)
