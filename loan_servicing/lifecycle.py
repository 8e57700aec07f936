"""
Loan Lifecycle Module

State machine over immutable Loan snapshots: origination, recomputation of
pending amounts as of a date, payment application, status derivation and
administrative transitions. Nothing here touches storage; every operation
takes a snapshot (plus the loan's payment history) and returns a new one.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass, replace
from typing import List, NamedTuple, Optional, Sequence, Tuple
import uuid

from .currency import Money, Number, to_decimal
from .exceptions import InvalidInput, InvalidLoanState
from .loans import (
    Loan, Payment, LoanStatus, RateBasis, PaymentMethod, FixedTerm, OpenEnded,
    is_open_ended_request, generate_loan_number, generate_payment_number
)
from .amortization import (
    AmortizationEntry, quote, build_schedule, accrued_interest, next_installment
)
from .biweekly import (
    BiweeklyAccrual, DEFAULT_MATCH_WINDOW_DAYS, accrue, next_quincena,
    quincena_interest, settle_periods
)
from .penalty import PenaltyCalculator, days_overdue
from .allocation import PendingAmounts, PaymentAllocation, allocate
from .config import LoanServicingConfig


@dataclass(frozen=True)
class Assessment:
    """Pending amounts of a loan recomputed as of a date"""
    as_of: date
    pending: PendingAmounts
    days_overdue: int
    penalty_accrued_through: Optional[date]
    accrual: Optional[BiweeklyAccrual] = None   # open-ended loans only


class AppliedPayment(NamedTuple):
    loan: Loan
    payment: Payment
    allocation: PaymentAllocation


def derive_status(loan: Loan, as_of: date,
                  principal_balance: Optional[Money] = None) -> LoanStatus:
    """
    Status implied by a snapshot as of ``as_of``.

    ``principal_balance`` overrides the stored balance so a candidate balance
    can be classified before the new snapshot exists.
    """
    balance = loan.principal_balance if principal_balance is None else principal_balance
    if loan.status == LoanStatus.CANCELLED:
        return LoanStatus.CANCELLED
    if not balance.is_positive():
        return LoanStatus.SETTLED
    if loan.status == LoanStatus.PENDING:
        return LoanStatus.PENDING
    if isinstance(loan.terms, FixedTerm):
        return LoanStatus.OVERDUE if as_of > loan.due_date else LoanStatus.ACTIVE
    return loan.status


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoanLifecycle:
    """
    Loan state transitions.

    Policy (penalty rate and cap, legacy matching window, principal gate for
    fixed-term loans) is fixed at construction; see ``from_config``.
    """

    def __init__(
        self,
        penalty_calculator: Optional[PenaltyCalculator] = None,
        match_window_days: int = DEFAULT_MATCH_WINDOW_DAYS,
        gate_fixed_term: bool = True
    ):
        self.penalty_calculator = penalty_calculator or PenaltyCalculator()
        self.match_window_days = match_window_days
        self.gate_fixed_term = gate_fixed_term

    @classmethod
    def from_config(cls, config: LoanServicingConfig) -> 'LoanLifecycle':
        return cls(
            penalty_calculator=PenaltyCalculator(
                monthly_rate=config.penalty_rate_monthly,
                cap=config.penalty_cap,
            ),
            match_window_days=config.arrears_match_window_days,
            gate_fixed_term=config.gate_fixed_term_principal,
        )

    def originate(
        self,
        client_id: str,
        principal: Money,
        rate: Number,
        rate_basis: RateBasis,
        start_date: date,
        term: Optional[int] = None,
        open_ended: bool = False,
        loan_id: Optional[str] = None,
        number: Optional[str] = None,
        purpose: str = "",
        notes: str = "",
        status: LoanStatus = LoanStatus.ACTIVE,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Build the first snapshot of a new loan.

        Raises:
            InvalidInput: non-positive principal or rate, a missing or
                contradictory term, or an initial status other than pending
                or active
        """
        if not client_id:
            raise InvalidInput("client_id is required")
        if not principal.is_positive():
            raise InvalidInput("Principal must be positive")
        rate = to_decimal(rate)
        if rate <= 0:
            raise InvalidInput("Interest rate must be positive")
        if status not in (LoanStatus.PENDING, LoanStatus.ACTIVE):
            raise InvalidInput(f"Loans cannot be originated as {status.value}")

        now = now or _utcnow()
        zero = Money.zero(principal.currency)
        common = dict(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            number=number or generate_loan_number(start_date),
            client_id=client_id,
            principal=principal,
            rate=rate,
            principal_balance=principal,
            penalty_accrued=zero,
            interest_paid_to_date=zero,
            start_date=start_date,
            status=status,
            purpose=purpose,
            notes=notes,
        )

        if is_open_ended_request(term, open_ended, rate_basis):
            return Loan(
                rate_basis=RateBasis.INDEFINIDO,
                terms=OpenEnded(),
                interest_due=zero,
                next_due_date=next_quincena(start_date),
                next_due_amount=quincena_interest(principal, rate),
                **common
            )

        terms_quote = quote(principal, rate, term, rate_basis, start_date)
        schedule = build_schedule(principal, rate, term, rate_basis, start_date)
        next_due_date, next_due_amount = next_installment(schedule, zero, principal, zero)
        return Loan(
            rate_basis=rate_basis,
            terms=FixedTerm(periods=term, maturity_date=terms_quote.maturity_date),
            interest_due=zero,
            due_date=terms_quote.maturity_date,
            next_due_date=next_due_date,
            next_due_amount=next_due_amount,
            **common
        )

    def assess(self, loan: Loan, as_of: date, payments: Sequence[Payment] = ()) -> Assessment:
        """
        Recompute penalty, interest and days overdue as of ``as_of``.

        Open-ended interest is re-accrued from the quincena calendar minus any
        carried credit; fixed-term interest is what the amortization table has
        earned by ``as_of`` minus the interest already paid. Mora is
        charged on the arrears interest (open-ended, from the oldest unpaid
        quincena) or on the principal balance (fixed-term, from maturity), and
        only for days not assessed before.
        """
        if loan.is_terminal or loan.status == LoanStatus.PENDING:
            return Assessment(
                as_of=as_of,
                pending=PendingAmounts(loan.penalty_accrued, loan.interest_due, loan.principal_balance),
                days_overdue=loan.days_overdue,
                penalty_accrued_through=loan.penalty_accrued_through,
            )

        accrual = None
        if loan.is_open_ended:
            accrual = accrue(loan.principal_balance, loan.rate, loan.start_date, as_of,
                             payments, self.match_window_days)
            interest_due = (accrual.total_interest_due - loan.interest_credit).clamp_zero()
            penalty_base = accrual.arrears_interest
            reference_date = accrual.oldest_unpaid_due_date
        else:
            earned = accrued_interest(self.schedule(loan), loan.start_date, as_of, loan.currency)
            interest_due = (earned - loan.interest_paid_to_date).clamp_zero()
            penalty_base = loan.principal_balance
            reference_date = loan.due_date

        overdue = days_overdue(reference_date, as_of)
        increment = self.penalty_calculator.accrue(
            penalty_base, reference_date, as_of,
            loan.penalty_accrued_through, loan.penalty_accrued
        )
        accrued_through = loan.penalty_accrued_through
        if overdue > 0 and (accrued_through is None or as_of > accrued_through):
            accrued_through = as_of

        return Assessment(
            as_of=as_of,
            pending=PendingAmounts(loan.penalty_accrued + increment, interest_due, loan.principal_balance),
            days_overdue=overdue,
            penalty_accrued_through=accrued_through,
            accrual=accrual,
        )

    def refresh(self, loan: Loan, as_of: date, payments: Sequence[Payment] = (),
                now: Optional[datetime] = None) -> Loan:
        """
        Snapshot with pending amounts, status and next-due fields as of ``as_of``.

        Returns ``loan`` itself when nothing changed, so callers can skip the
        write.
        """
        if loan.is_terminal or loan.status == LoanStatus.PENDING:
            return loan

        assessment = self.assess(loan, as_of, payments)
        pending = assessment.pending
        if loan.is_open_ended:
            next_due_date = assessment.accrual.next_due_date
            next_due_amount = pending.interest_due
        else:
            next_due_date, next_due_amount = self._fixed_next_due(
                loan, loan.principal_balance, loan.interest_paid_to_date
            )

        candidate = replace(
            loan,
            interest_due=pending.interest_due,
            penalty_accrued=pending.penalty_due,
            days_overdue=assessment.days_overdue,
            penalty_accrued_through=assessment.penalty_accrued_through,
            next_due_date=next_due_date,
            next_due_amount=next_due_amount,
            status=derive_status(loan, as_of),
        )
        if candidate == loan:
            return loan
        return replace(candidate, version=loan.version + 1, updated_at=now or _utcnow())

    def apply_payment(
        self,
        loan: Loan,
        amount: Money,
        paid_on: date,
        payments: Sequence[Payment] = (),
        as_of: Optional[date] = None,
        method: PaymentMethod = PaymentMethod.EFECTIVO,
        reference: str = "",
        notes: str = "",
        recorded_on: Optional[date] = None,
        payment_id: Optional[str] = None,
        number: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> AppliedPayment:
        """
        Allocate a payment and derive the loan snapshot it produces.

        Pending amounts are assessed as of ``as_of`` (default ``paid_on``) and
        the payment goes penalty, interest, principal, overflow. Open-ended
        loans record which quincenas the interest settled; any interest that
        does not cover a whole quincena is carried as credit.

        Raises:
            InvalidLoanState: loan is pending, settled or cancelled
            InvalidInput: non-positive amount or foreign currency
        """
        if loan.is_terminal or loan.status == LoanStatus.PENDING:
            raise InvalidLoanState(f"Cannot apply payments to a {loan.status.value} loan")
        if amount.currency != loan.currency:
            raise InvalidInput(f"Payment currency {amount.currency.code} does not match "
                               f"loan currency {loan.currency.code}")
        if not amount.is_positive():
            raise InvalidInput("Payment amount must be positive")

        as_of = as_of or paid_on
        recorded_on = recorded_on or as_of
        now = now or _utcnow()
        zero = Money.zero(loan.currency)

        assessment = self.assess(loan, as_of, payments)
        pending = assessment.pending
        gated = loan.is_open_ended or self.gate_fixed_term
        allocation = allocate(amount, pending, gated=gated)

        principal_balance = pending.principal_balance - allocation.principal_paid
        interest_due = pending.interest_due - allocation.interest_paid
        penalty_accrued = pending.penalty_due - allocation.penalty_paid
        interest_paid_to_date = loan.interest_paid_to_date + allocation.interest_paid
        settled = not principal_balance.is_positive()

        settled_periods: Tuple[date, ...] = ()
        credit = loan.interest_credit
        if loan.is_open_ended and assessment.accrual is not None:
            settled_periods, credit = settle_periods(
                assessment.accrual.outstanding_due_dates(),
                assessment.accrual.per_period_interest,
                loan.interest_credit,
                allocation.interest_paid,
            )

        payment = Payment(
            id=payment_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            number=number or generate_payment_number(recorded_on),
            loan_id=loan.id,
            client_id=loan.client_id,
            amount=amount,
            penalty_portion=allocation.penalty_paid,
            interest_portion=allocation.interest_paid,
            principal_portion=allocation.principal_paid,
            overflow=allocation.overflow,
            paid_on=paid_on,
            recorded_on=recorded_on,
            method=method,
            reference=reference,
            notes=notes,
            settled_periods=settled_periods,
            principal_balance_before=pending.principal_balance,
            principal_balance_after=principal_balance,
            interest_due_after=interest_due,
            penalty_accrued_after=penalty_accrued,
            days_overdue_before=assessment.days_overdue,
        )

        if settled:
            status = LoanStatus.SETTLED
            next_due_date, next_due_amount = None, zero
            overdue = 0
            credit = zero
        elif loan.is_open_ended:
            after = accrue(principal_balance, loan.rate, loan.start_date, as_of,
                           list(payments) + [payment], self.match_window_days)
            status = LoanStatus.OVERDUE if after.is_behind else LoanStatus.ACTIVE
            next_due_date = after.next_due_date
            next_due_amount = (after.total_interest_due - credit).clamp_zero()
            overdue = days_overdue(after.oldest_unpaid_due_date, as_of)
        else:
            status = derive_status(loan, as_of, principal_balance)
            next_due_date, next_due_amount = self._fixed_next_due(
                loan, principal_balance, interest_paid_to_date
            )
            overdue = assessment.days_overdue

        payment = replace(payment, days_overdue_after=overdue)
        new_loan = replace(
            loan,
            principal_balance=principal_balance,
            interest_due=interest_due,
            penalty_accrued=penalty_accrued,
            interest_paid_to_date=interest_paid_to_date,
            interest_credit=credit,
            days_overdue=overdue,
            penalty_accrued_through=assessment.penalty_accrued_through,
            next_due_date=next_due_date,
            next_due_amount=next_due_amount,
            status=status,
            settled_on=paid_on if settled else None,
            version=loan.version + 1,
            updated_at=now,
        )
        return AppliedPayment(new_loan, payment, allocation)

    def cancel(self, loan: Loan, as_of: date, reason: str = "",
               now: Optional[datetime] = None) -> Loan:
        """Administrative cancellation from any non-terminal state"""
        if loan.is_terminal:
            raise InvalidLoanState(f"Cannot cancel a {loan.status.value} loan")
        notes = loan.notes
        if reason:
            notes = f"{notes}\n{reason}".strip()
        return replace(
            loan,
            status=LoanStatus.CANCELLED,
            cancelled_on=as_of,
            next_due_date=None,
            next_due_amount=Money.zero(loan.currency),
            notes=notes,
            version=loan.version + 1,
            updated_at=now or _utcnow(),
        )

    def activate(self, loan: Loan, now: Optional[datetime] = None) -> Loan:
        """Pending -> active once the funds are disbursed"""
        if loan.status != LoanStatus.PENDING:
            raise InvalidLoanState(f"Only pending loans can be activated, not {loan.status.value}")
        return replace(loan, status=LoanStatus.ACTIVE, version=loan.version + 1,
                       updated_at=now or _utcnow())

    def schedule(self, loan: Loan) -> List[AmortizationEntry]:
        """Amortization table a fixed-term loan accrues interest from"""
        if not isinstance(loan.terms, FixedTerm):
            raise InvalidLoanState(f"Loan {loan.number} is open-ended and has no amortization table")
        return build_schedule(loan.principal, loan.rate, loan.terms.periods,
                              loan.rate_basis, loan.start_date)

    def _fixed_next_due(self, loan: Loan, principal_balance: Money,
                        interest_paid_to_date: Money) -> Tuple[Optional[date], Money]:
        repaid = interest_paid_to_date + (loan.principal - principal_balance)
        return next_installment(self.schedule(loan), repaid, principal_balance, interest_paid_to_date)
