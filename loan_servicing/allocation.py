"""
Payment Allocation Module

Splits one payment across penalty, interest and principal in strict priority
order. Principal is only reduced once accrued interest is fully covered;
whatever cannot be applied is returned as overflow for the caller to refund,
reject or hold as credit. The four parts always add up to the payment.
"""

from dataclasses import dataclass

from .currency import Money, min_money
from .exceptions import InvalidInput


@dataclass(frozen=True)
class PendingAmounts:
    """What the borrower owes at the moment a payment is applied"""
    penalty_due: Money
    interest_due: Money
    principal_balance: Money

    def __post_init__(self):
        for name in ('penalty_due', 'interest_due', 'principal_balance'):
            if getattr(self, name).is_negative():
                raise InvalidInput(f"{name} cannot be negative")

    @property
    def total(self) -> Money:
        return self.penalty_due + self.interest_due + self.principal_balance


@dataclass(frozen=True)
class PaymentAllocation:
    """Result of one allocation; transient, never persisted on its own"""
    penalty_paid: Money
    interest_paid: Money
    principal_paid: Money
    overflow: Money
    gate_open: bool

    @property
    def total(self) -> Money:
        return self.penalty_paid + self.interest_paid + self.principal_paid + self.overflow

    @property
    def applied(self) -> Money:
        return self.penalty_paid + self.interest_paid + self.principal_paid

    @property
    def has_overflow(self) -> bool:
        return self.overflow.is_positive()


def allocate(amount: Money, pending: PendingAmounts, gated: bool = True) -> PaymentAllocation:
    """
    Waterfall a payment: penalty, interest, principal, then overflow.

    Args:
        amount: Payment received (>= 0)
        pending: Penalty, interest and principal owed as of the payment
        gated: When True, principal is untouched unless interest is fully paid

    Returns:
        PaymentAllocation whose parts sum exactly to ``amount``
    """
    if amount.is_negative():
        raise InvalidInput("Payment amount cannot be negative")

    remaining = amount

    penalty_paid = min_money(remaining, pending.penalty_due)
    remaining = remaining - penalty_paid

    interest_paid = min_money(remaining, pending.interest_due)
    remaining = remaining - interest_paid

    gate_open = not gated or (pending.interest_due - interest_paid).amount <= 0
    if gate_open:
        principal_paid = min_money(remaining, pending.principal_balance)
        remaining = remaining - principal_paid
    else:
        principal_paid = Money.zero(amount.currency)

    return PaymentAllocation(
        penalty_paid=penalty_paid,
        interest_paid=interest_paid,
        principal_paid=principal_paid,
        overflow=remaining,
        gate_open=gate_open,
    )


def allocate_amounts(amount: Money, penalty_due: Money, interest_due: Money,
                     principal_balance: Money, gated: bool = True) -> PaymentAllocation:
    """Convenience wrapper taking the pending amounts as separate arguments"""
    return allocate(amount, PendingAmounts(penalty_due, interest_due, principal_balance), gated)
