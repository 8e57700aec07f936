"""Exception hierarchy for the loan servicing core."""

from decimal import Decimal
from typing import Optional


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors."""


class InvalidInput(LoanServicingError, ValueError):
    """Raised for non-positive principal, rate or term, or contradictory terms."""


class InvalidLoanState(LoanServicingError):
    """Raised when an operation is not allowed in the loan's current status."""


class LoanNotFound(LoanServicingError, KeyError):
    """Raised when a loan id is not present in storage."""

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found")
        self.loan_id = loan_id

    def __str__(self) -> str:
        return self.args[0]


class AllocationOverflow(LoanServicingError):
    """
    A payment left an unallocated remainder.

    Not a failure of the calculation: the caller decides whether to reject,
    refund or hold the overflow as credit.
    """

    def __init__(self, amount: Decimal, overflow: Decimal, loan_id: Optional[str] = None):
        super().__init__(
            f"Payment of {amount} leaves {overflow} unallocated"
            + (f" on loan {loan_id}" if loan_id else "")
        )
        self.amount = amount
        self.overflow = overflow
        self.loan_id = loan_id


class ConcurrentModification(LoanServicingError):
    """The stored loan snapshot changed between load and commit."""

    def __init__(self, loan_id: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            f"Loan {loan_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.loan_id = loan_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class DataQualityError(LoanServicingError):
    """A computed snapshot is internally inconsistent and must not be written."""
