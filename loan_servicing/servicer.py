"""
Loan Servicer Module

Orchestrates the pure loan core against storage: loads a snapshot and its
payment history, runs the lifecycle, commits the result with a version check
and records the outcome in the audit trail and the structured log. A commit
that loses a race is retried from a fresh load, never with stale numbers.
"""

from datetime import date
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional, TypeVar, Union

from .amortization import AmortizationEntry
from .allocation import PaymentAllocation
from .audit import AuditTrail, AuditEventType
from .biweekly import suggested_payment
from .config import LoanServicingConfig, get_config
from .currency import Money, Currency
from .exceptions import (
    AllocationOverflow, ConcurrentModification, DataQualityError, InvalidLoanState
)
from .lifecycle import LoanLifecycle
from .loans import Loan, Payment, LoanStatus, RateBasis, PaymentMethod, FixedTerm
from .logging_config import get_logger, log_action, setup_logging
from .repository import LoanRepository
from .storage import StorageInterface, SQLiteStorage


T = TypeVar('T')
Amount = Union[Money, Decimal, int, str]


@dataclass(frozen=True)
class PaymentReceipt:
    """What the caller gets back from a committed payment"""
    payment: Payment
    loan: Loan
    allocation: PaymentAllocation

    @property
    def has_overflow(self) -> bool:
        return self.allocation.has_overflow


@dataclass(frozen=True)
class PaymentSummary:
    """Totals over a loan's payment history"""
    loan_id: str
    payment_count: int
    total_paid: Money
    principal_paid: Money
    interest_paid: Money
    penalty_paid: Money
    overflow: Money
    last_payment: Optional[Payment] = None


@dataclass(frozen=True)
class PayoffQuote:
    """Amount that would settle a loan as of a date"""
    loan_id: str
    as_of: date
    penalty_due: Money
    interest_due: Money
    principal_balance: Money
    days_overdue: int
    suggested_payment: Money

    @property
    def total(self) -> Money:
        return self.penalty_due + self.interest_due + self.principal_balance


class LoanServicer:
    """
    Entry point for loan operations.

    Every mutating call loads the current snapshot, recomputes through
    LoanLifecycle and commits loan + payment as one unit.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[LoanServicingConfig] = None,
        lifecycle: Optional[LoanLifecycle] = None
    ):
        self.config = config or get_config()
        self.storage = storage
        self.repository = LoanRepository(storage)
        self.lifecycle = lifecycle or LoanLifecycle.from_config(self.config)
        if audit_trail is None and self.config.enable_audit_logging:
            audit_trail = AuditTrail(storage)
        self.audit_trail = audit_trail
        self.logger = get_logger("loans.servicer")

    @classmethod
    def from_config(cls, config: Optional[LoanServicingConfig] = None) -> 'LoanServicer':
        """Servicer over the configured database, with logging set up from config"""
        config = config or get_config()
        setup_logging(config.log_level, log_format=config.log_format)
        return cls(SQLiteStorage.from_url(config.database_url), config=config)

    def originate_loan(
        self,
        client_id: str,
        principal: Amount,
        rate: Union[Decimal, int, str],
        rate_basis: RateBasis,
        start_date: date,
        term: Optional[int] = None,
        open_ended: bool = False,
        purpose: str = "",
        notes: str = "",
        status: LoanStatus = LoanStatus.ACTIVE
    ) -> Loan:
        """
        Create and store a new loan.

        Args:
            client_id: Borrower
            principal: Amount lent; bare numbers use the configured currency
            rate: Nominal rate in percent for the given basis
            rate_basis: quincenal, mensual, anual or indefinido
            start_date: Disbursement date
            term: Number of periods (fixed-term loans)
            open_ended: Interest-only biweekly loan with no maturity

        Returns:
            The stored Loan

        Raises:
            InvalidInput: invalid principal, rate or term
        """
        loan = self.lifecycle.originate(
            client_id=client_id,
            principal=self._to_money(principal, Currency[self.config.default_currency]),
            rate=rate,
            rate_basis=rate_basis,
            start_date=start_date,
            term=term,
            open_ended=open_ended,
            purpose=purpose,
            notes=notes,
            status=status,
        )
        self._ensure_writable(loan, "originate")
        self.repository.insert_loan(loan)

        self._audit(AuditEventType.LOAN_ORIGINATED, loan, {
            'number': loan.number,
            'client_id': client_id,
            'principal': loan.principal,
            'rate': loan.rate,
            'rate_basis': loan.rate_basis,
            'open_ended': loan.is_open_ended,
            'periods': loan.terms.periods if isinstance(loan.terms, FixedTerm) else None,
            'next_due_date': loan.next_due_date,
            'next_due_amount': loan.next_due_amount,
        })
        log_action(
            self.logger, "info", f"Loan originated: {loan.number}",
            loan_id=loan.id, action="originate",
            extra={
                'client_id': client_id,
                'principal': str(loan.principal.amount),
                'open_ended': loan.is_open_ended,
            }
        )
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        return self.repository.load_loan(loan_id)

    def get_payments(self, loan_id: str) -> List[Payment]:
        self.repository.load_loan(loan_id)
        return self.repository.load_payments(loan_id)

    def get_client_loans(self, client_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        return self.repository.find_loans(client_id=client_id, status=status)

    def refresh_loan(self, loan_id: str, as_of: Optional[date] = None) -> Loan:
        """Recompute interest, penalty, status and next-due fields and store them"""
        as_of = as_of or date.today()

        def attempt() -> Loan:
            loan = self.repository.load_loan(loan_id)
            payments = self.repository.load_payments(loan_id)
            refreshed = self.lifecycle.refresh(loan, as_of, payments)
            if refreshed is loan:
                return loan
            self._ensure_writable(refreshed, "refresh")
            self.repository.commit(loan_id, refreshed, expected_version=loan.version)
            if refreshed.status != loan.status:
                self._status_changed(loan, refreshed, as_of)
            return refreshed

        return self._with_retries(loan_id, "refresh", attempt)

    def refresh_portfolio(self, as_of: Optional[date] = None) -> Dict[str, int]:
        """
        Refresh every non-terminal loan.

        Returns:
            Counts of loans per status after the refresh
        """
        as_of = as_of or date.today()
        counts: Dict[str, int] = {}
        for loan in self.repository.find_loans():
            if not loan.is_terminal:
                loan = self.refresh_loan(loan.id, as_of)
            counts[loan.status.value] = counts.get(loan.status.value, 0) + 1
        return counts

    def apply_payment(
        self,
        loan_id: str,
        amount: Amount,
        paid_on: Optional[date] = None,
        method: PaymentMethod = PaymentMethod.EFECTIVO,
        as_of: Optional[date] = None,
        reference: str = "",
        notes: str = "",
        recorded_on: Optional[date] = None
    ) -> PaymentReceipt:
        """
        Apply a payment: penalty first, then interest, then principal.

        Args:
            loan_id: Loan being paid
            amount: Amount received; bare numbers use the loan currency
            paid_on: Date the borrower paid (default today)
            method: Payment channel
            as_of: Date pending amounts are assessed at (default ``paid_on``)
            recorded_on: Date the payment was entered (default ``as_of``)

        Returns:
            PaymentReceipt with the stored payment, the new loan snapshot and
            the allocation

        Raises:
            LoanNotFound: unknown loan
            InvalidLoanState: loan is pending, settled or cancelled
            AllocationOverflow: payment exceeds the payoff amount and the
                overflow policy is 'reject'
            ConcurrentModification: still conflicting after the configured
                number of attempts
        """
        paid_on = paid_on or date.today()

        def attempt() -> PaymentReceipt:
            loan = self.repository.load_loan(loan_id)
            payments = self.repository.load_payments(loan_id)
            applied = self.lifecycle.apply_payment(
                loan,
                self._to_money(amount, loan.currency),
                paid_on,
                payments,
                as_of=as_of,
                method=method,
                reference=reference,
                notes=notes,
                recorded_on=recorded_on,
            )

            if applied.allocation.has_overflow and self.config.overflow_policy == "reject":
                log_action(
                    self.logger, "warning", "Payment rejected: exceeds payoff amount",
                    loan_id=loan_id, action="apply_payment",
                    extra={
                        'amount': str(applied.payment.amount.amount),
                        'overflow': str(applied.allocation.overflow.amount),
                    }
                )
                raise AllocationOverflow(applied.payment.amount.amount,
                                         applied.allocation.overflow.amount, loan_id)

            self._ensure_writable(applied.loan, "apply_payment")
            self.repository.commit(loan_id, applied.loan, applied.payment,
                                   expected_version=loan.version)
            self._payment_recorded(loan, applied.loan, applied.payment, applied.allocation)
            return PaymentReceipt(applied.payment, applied.loan, applied.allocation)

        return self._with_retries(loan_id, "apply_payment", attempt)

    def cancel_loan(self, loan_id: str, as_of: Optional[date] = None, reason: str = "") -> Loan:
        as_of = as_of or date.today()

        def attempt() -> Loan:
            loan = self.repository.load_loan(loan_id)
            cancelled = self.lifecycle.cancel(loan, as_of, reason)
            self.repository.commit(loan_id, cancelled, expected_version=loan.version)
            self._audit(AuditEventType.LOAN_CANCELLED, cancelled, {
                'previous_status': loan.status,
                'principal_balance': cancelled.principal_balance,
                'reason': reason,
            })
            log_action(self.logger, "info", f"Loan cancelled: {cancelled.number}",
                       loan_id=loan_id, action="cancel", extra={'reason': reason})
            return cancelled

        return self._with_retries(loan_id, "cancel", attempt)

    def activate_loan(self, loan_id: str) -> Loan:
        def attempt() -> Loan:
            loan = self.repository.load_loan(loan_id)
            active = self.lifecycle.activate(loan)
            self.repository.commit(loan_id, active, expected_version=loan.version)
            self._audit(AuditEventType.LOAN_ACTIVATED, active, {'number': active.number})
            log_action(self.logger, "info", f"Loan activated: {active.number}",
                       loan_id=loan_id, action="activate")
            return active

        return self._with_retries(loan_id, "activate", attempt)

    def quote_payoff(self, loan_id: str, as_of: Optional[date] = None) -> PayoffQuote:
        """Penalty + interest + principal that would settle the loan; nothing is written"""
        as_of = as_of or date.today()
        loan = self.repository.load_loan(loan_id)
        if loan.is_terminal:
            raise InvalidLoanState(f"Loan {loan.number} is {loan.status.value}")
        assessment = self.lifecycle.assess(loan, as_of, self.repository.load_payments(loan_id))
        pending = assessment.pending
        return PayoffQuote(
            loan_id=loan_id,
            as_of=as_of,
            penalty_due=pending.penalty_due,
            interest_due=pending.interest_due,
            principal_balance=pending.principal_balance,
            days_overdue=assessment.days_overdue,
            suggested_payment=suggested_payment(
                pending.principal_balance,
                pending.interest_due + pending.penalty_due,
                self.config.suggested_principal_share,
            ),
        )

    def payment_summary(self, loan_id: str) -> PaymentSummary:
        loan = self.repository.load_loan(loan_id)
        payments = self.repository.load_payments(loan_id)
        zero = Money.zero(loan.currency)

        def total(field: str) -> Money:
            result = zero
            for payment in payments:
                result = result + getattr(payment, field)
            return result

        return PaymentSummary(
            loan_id=loan_id,
            payment_count=len(payments),
            total_paid=total('amount'),
            principal_paid=total('principal_portion'),
            interest_paid=total('interest_portion'),
            penalty_paid=total('penalty_portion'),
            overflow=total('overflow'),
            last_payment=payments[-1] if payments else None,
        )

    def get_schedule(self, loan_id: str) -> List[AmortizationEntry]:
        """Amortization table of a fixed-term loan"""
        return self.lifecycle.schedule(self.repository.load_loan(loan_id))

    def _with_retries(self, loan_id: str, action: str, attempt: Callable[[], T]) -> T:
        attempts = self.config.max_commit_attempts
        number = 1
        while True:
            try:
                return attempt()
            except ConcurrentModification as e:
                log_action(
                    self.logger, "warning", f"Concurrent modification on {action}",
                    loan_id=loan_id, action=action,
                    extra={
                        'attempt': number,
                        'max_attempts': attempts,
                        'expected_version': e.expected_version,
                        'actual_version': e.actual_version,
                    }
                )
                if number >= attempts:
                    raise
                number += 1

    def _ensure_writable(self, loan: Loan, action: str) -> None:
        """A live loan with principal outstanding must have something due next"""
        if loan.status in (LoanStatus.CANCELLED, LoanStatus.SETTLED):
            return
        if loan.principal_balance.is_positive() and not loan.next_due_amount.is_positive():
            log_action(
                self.logger, "error", "Refusing to store loan with zero next-due amount",
                loan_id=loan.id, action=action,
                extra={
                    'principal_balance': str(loan.principal_balance.amount),
                    'rate': str(loan.rate),
                }
            )
            self._audit(AuditEventType.DATA_QUALITY_REJECTED, loan, {
                'action': action,
                'principal_balance': loan.principal_balance,
                'next_due_amount': loan.next_due_amount,
            })
            raise DataQualityError(
                f"Loan {loan.number} has balance {loan.principal_balance.to_string()} "
                f"but nothing due next"
            )

    def _payment_recorded(self, before: Loan, after: Loan, payment: Payment,
                          allocation: PaymentAllocation) -> None:
        self._audit(AuditEventType.LOAN_PAYMENT_APPLIED, after, {
            'payment_id': payment.id,
            'payment_number': payment.number,
            'amount': payment.amount,
            'penalty_portion': payment.penalty_portion,
            'interest_portion': payment.interest_portion,
            'principal_portion': payment.principal_portion,
            'overflow': payment.overflow,
            'settled_periods': payment.settled_periods,
            'principal_balance_after': after.principal_balance,
            'version': after.version,
        })
        log_action(
            self.logger, "info", f"Payment applied: {payment.number}",
            loan_id=after.id, action="apply_payment",
            extra={
                'amount': str(payment.amount.amount),
                'penalty': str(payment.penalty_portion.amount),
                'interest': str(payment.interest_portion.amount),
                'principal': str(payment.principal_portion.amount),
                'principal_balance': str(after.principal_balance.amount),
            }
        )

        if allocation.has_overflow:
            self._audit(AuditEventType.PAYMENT_OVERFLOW, after, {
                'payment_id': payment.id,
                'overflow': allocation.overflow,
            })
            log_action(self.logger, "warning", "Payment exceeds payoff amount",
                       loan_id=after.id, action="apply_payment",
                       extra={'overflow': str(allocation.overflow.amount)})

        if after.status == LoanStatus.SETTLED:
            self._audit(AuditEventType.LOAN_SETTLED, after, {
                'settled_on': after.settled_on,
                'payment_id': payment.id,
            })
            log_action(self.logger, "info", f"Loan settled: {after.number}",
                       loan_id=after.id, action="settle")
        elif after.status != before.status:
            self._status_changed(before, after, payment.paid_on)

    def _status_changed(self, before: Loan, after: Loan, as_of: date) -> None:
        self._audit(AuditEventType.LOAN_STATUS_CHANGED, after, {
            'old_status': before.status,
            'new_status': after.status,
            'as_of': as_of,
            'days_overdue': after.days_overdue,
        })
        log_action(self.logger, "info",
                   f"Loan {after.number} status {before.status.value} -> {after.status.value}",
                   loan_id=after.id, action="status_change")

    def _audit(self, event_type: AuditEventType, loan: Loan, metadata: Dict) -> None:
        if self.audit_trail is not None:
            self.audit_trail.log_event(event_type, "loan", loan.id, metadata)

    @staticmethod
    def _to_money(amount: Amount, currency: Currency) -> Money:
        if isinstance(amount, Money):
            return amount
        return Money(amount, currency)
