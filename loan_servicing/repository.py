"""
Loan Repository Module

Persists Loan snapshots and their payments over a StorageInterface. A payment
and the loan snapshot it produced are written together inside one atomic
block, guarded by a compare-and-swap on the loan version.
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from .currency import Money, Currency
from .exceptions import ConcurrentModification, InvalidInput, LoanNotFound
from .loans import (
    Loan, Payment, LoanStatus, RateBasis, PaymentMethod, FixedTerm, OpenEnded, LoanTerms
)
from .storage import StorageInterface


LOAN_MONEY_FIELDS = [
    'principal', 'principal_balance', 'interest_due', 'penalty_accrued',
    'interest_paid_to_date', 'interest_credit', 'next_due_amount',
]
LOAN_DATE_FIELDS = [
    'start_date', 'penalty_accrued_through', 'due_date', 'next_due_date',
    'settled_on', 'cancelled_on',
]
PAYMENT_MONEY_FIELDS = [
    'amount', 'penalty_portion', 'interest_portion', 'principal_portion', 'overflow',
    'principal_balance_before', 'principal_balance_after', 'interest_due_after',
    'penalty_accrued_after',
]


def _put_money(result: Dict[str, Any], field: str, amount: Optional[Money]) -> None:
    if amount is not None:
        result[f'{field}_amount'] = str(amount.amount)
        result[f'{field}_currency'] = amount.currency.code


def _get_money(data: Dict[str, Any], field: str) -> Optional[Money]:
    if data.get(f'{field}_amount') is None:
        return None
    return Money(Decimal(data[f'{field}_amount']), Currency[data[f'{field}_currency']])


def _get_date(data: Dict[str, Any], field: str) -> Optional[date]:
    if data.get(field):
        return date.fromisoformat(data[field])
    return None


def _terms_to_dict(terms: LoanTerms) -> Dict[str, Any]:
    if isinstance(terms, FixedTerm):
        return {
            'kind': 'fixed',
            'periods': terms.periods,
            'maturity_date': terms.maturity_date.isoformat(),
        }
    return {'kind': 'open_ended'}


def _terms_from_dict(data: Dict[str, Any]) -> LoanTerms:
    terms_data = data.get('terms')
    if terms_data is None:
        # Imported records only carry a bare term; absent or <= 0 means open-ended
        term = data.get('term')
        if term is None or int(term) <= 0:
            return OpenEnded()
        if not data.get('due_date'):
            raise InvalidInput(f"Loan {data.get('id')} has term {term} but no due_date")
        return FixedTerm(periods=int(term), maturity_date=date.fromisoformat(data['due_date']))
    if terms_data['kind'] == 'fixed':
        return FixedTerm(
            periods=terms_data['periods'],
            maturity_date=date.fromisoformat(terms_data['maturity_date']),
        )
    return OpenEnded()


def loan_to_dict(loan: Loan) -> Dict[str, Any]:
    """Convert loan to a JSON-ready dictionary"""
    result = loan.base_dict()
    result.update({
        'number': loan.number,
        'client_id': loan.client_id,
        'rate': str(loan.rate),
        'rate_basis': loan.rate_basis.value,
        'terms': _terms_to_dict(loan.terms),
        'days_overdue': loan.days_overdue,
        'status': loan.status.value,
        'version': loan.version,
        'purpose': loan.purpose,
        'notes': loan.notes,
    })
    for field in LOAN_MONEY_FIELDS:
        _put_money(result, field, getattr(loan, field))
    for field in LOAN_DATE_FIELDS:
        value = getattr(loan, field)
        result[field] = value.isoformat() if value else None
    return result


def loan_from_dict(data: Dict[str, Any]) -> Loan:
    """Convert dictionary to loan"""
    return Loan(
        id=data['id'],
        created_at=datetime.fromisoformat(data['created_at']),
        updated_at=datetime.fromisoformat(data['updated_at']),
        number=data['number'],
        client_id=data['client_id'],
        principal=_get_money(data, 'principal'),
        rate=Decimal(data['rate']),
        rate_basis=RateBasis(data['rate_basis']),
        terms=_terms_from_dict(data),
        start_date=_get_date(data, 'start_date'),
        principal_balance=_get_money(data, 'principal_balance'),
        interest_due=_get_money(data, 'interest_due'),
        penalty_accrued=_get_money(data, 'penalty_accrued'),
        interest_paid_to_date=_get_money(data, 'interest_paid_to_date'),
        interest_credit=_get_money(data, 'interest_credit'),
        days_overdue=data.get('days_overdue', 0),
        penalty_accrued_through=_get_date(data, 'penalty_accrued_through'),
        due_date=_get_date(data, 'due_date'),
        next_due_date=_get_date(data, 'next_due_date'),
        next_due_amount=_get_money(data, 'next_due_amount'),
        status=LoanStatus(data['status']),
        version=data.get('version', 1),
        purpose=data.get('purpose', ""),
        notes=data.get('notes', ""),
        settled_on=_get_date(data, 'settled_on'),
        cancelled_on=_get_date(data, 'cancelled_on'),
    )


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    """Convert payment to a JSON-ready dictionary"""
    result = payment.base_dict()
    result.update({
        'number': payment.number,
        'loan_id': payment.loan_id,
        'client_id': payment.client_id,
        'paid_on': payment.paid_on.isoformat(),
        'recorded_on': payment.recorded_on.isoformat(),
        'method': payment.method.value,
        'reference': payment.reference,
        'notes': payment.notes,
        'days_overdue_before': payment.days_overdue_before,
        'days_overdue_after': payment.days_overdue_after,
    })
    if payment.settled_periods is not None:
        result['settled_periods'] = [due.isoformat() for due in payment.settled_periods]
    else:
        result['settled_periods'] = None
    for field in PAYMENT_MONEY_FIELDS:
        _put_money(result, field, getattr(payment, field))
    return result


def payment_from_dict(data: Dict[str, Any]) -> Payment:
    """Convert dictionary to payment"""
    settled_periods = data.get('settled_periods')
    if settled_periods is not None:
        settled_periods = tuple(date.fromisoformat(due) for due in settled_periods)

    return Payment(
        id=data['id'],
        created_at=datetime.fromisoformat(data['created_at']),
        updated_at=datetime.fromisoformat(data['updated_at']),
        number=data['number'],
        loan_id=data['loan_id'],
        client_id=data['client_id'],
        amount=_get_money(data, 'amount'),
        penalty_portion=_get_money(data, 'penalty_portion'),
        interest_portion=_get_money(data, 'interest_portion'),
        principal_portion=_get_money(data, 'principal_portion'),
        overflow=_get_money(data, 'overflow'),
        paid_on=_get_date(data, 'paid_on'),
        recorded_on=_get_date(data, 'recorded_on'),
        method=PaymentMethod(data.get('method', PaymentMethod.EFECTIVO.value)),
        reference=data.get('reference', ""),
        notes=data.get('notes', ""),
        settled_periods=settled_periods,
        principal_balance_before=_get_money(data, 'principal_balance_before'),
        principal_balance_after=_get_money(data, 'principal_balance_after'),
        interest_due_after=_get_money(data, 'interest_due_after'),
        penalty_accrued_after=_get_money(data, 'penalty_accrued_after'),
        days_overdue_before=data.get('days_overdue_before', 0),
        days_overdue_after=data.get('days_overdue_after', 0),
    )


class LoanRepository:
    """
    Loan and payment persistence.

    Writes go through ``commit``, which only succeeds when the stored loan
    still has the version the caller computed from.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.payments_table = "loan_payments"

    def load_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if data is None:
            raise LoanNotFound(loan_id)
        return loan_from_dict(data)

    def load_payments(self, loan_id: str) -> List[Payment]:
        """Payments of a loan, oldest first by payment date"""
        payments = [payment_from_dict(data)
                    for data in self.storage.find(self.payments_table, {'loan_id': loan_id})]
        payments.sort(key=lambda p: (p.paid_on, p.created_at))
        return payments

    def insert_loan(self, loan: Loan) -> Loan:
        """Store a newly originated loan"""
        with self.storage.atomic():
            if self.storage.exists(self.loans_table, loan.id):
                raise ConcurrentModification(loan.id, 0, self._stored_version(loan.id))
            self.storage.save(self.loans_table, loan.id, loan_to_dict(loan))
        return loan

    def commit(self, loan_id: str, new_loan: Loan, new_payment: Optional[Payment] = None,
               *, expected_version: int) -> Loan:
        """
        Write a new loan snapshot (and the payment that caused it) atomically.

        Raises:
            LoanNotFound: no stored loan with ``loan_id``
            ConcurrentModification: stored version is not ``expected_version``
        """
        if new_loan.id != loan_id:
            raise ValueError(f"Snapshot {new_loan.id} does not belong to loan {loan_id}")
        if new_loan.version != expected_version + 1:
            raise ValueError(f"Snapshot version {new_loan.version} must follow {expected_version}")
        if new_payment is not None and new_payment.loan_id != loan_id:
            raise ValueError(f"Payment {new_payment.id} does not belong to loan {loan_id}")

        with self.storage.atomic():
            actual_version = self._stored_version(loan_id)
            if actual_version is None:
                raise LoanNotFound(loan_id)
            if actual_version != expected_version:
                raise ConcurrentModification(loan_id, expected_version, actual_version)

            self.storage.save(self.loans_table, loan_id, loan_to_dict(new_loan))
            if new_payment is not None:
                self.storage.save(self.payments_table, new_payment.id, payment_to_dict(new_payment))

        return new_loan

    def find_loans(self, client_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        filters: Dict[str, Any] = {}
        if client_id is not None:
            filters['client_id'] = client_id
        if status is not None:
            filters['status'] = status.value
        loans = [loan_from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def _stored_version(self, loan_id: str) -> Optional[int]:
        data = self.storage.load(self.loans_table, loan_id)
        if data is None:
            return None
        return data.get('version', 1)
