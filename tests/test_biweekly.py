"""
Test suite for biweekly accrual module

Tests the quincena calendar (15th and last day of month), arrears detection
against recorded payments, and settlement of quincenas by interest paid.
"""

from decimal import Decimal
from datetime import date, datetime, timezone, timedelta

from loan_servicing.currency import Money
from loan_servicing.loans import Payment
from loan_servicing.biweekly import (
    month_end, next_quincena, quincena_dates, quincena_interest, accrue,
    settle_periods, suggested_payment
)


def make_payment(payment_id: str, paid_on: date, interest: str, settled_periods=None) -> Payment:
    now = datetime.now(timezone.utc)
    zero = Money.zero()
    return Payment(
        id=payment_id,
        created_at=now,
        updated_at=now,
        number=f"PAG2401{payment_id}",
        loan_id="LOAN001",
        client_id="CLIENT001",
        amount=Money(Decimal(interest)),
        penalty_portion=zero,
        interest_portion=Money(Decimal(interest)),
        principal_portion=zero,
        overflow=zero,
        paid_on=paid_on,
        recorded_on=paid_on,
        settled_periods=settled_periods,
    )


PRINCIPAL = Money(Decimal('1000.00'))
RATE = Decimal('15')
START = date(2024, 1, 1)


class TestQuincenaCalendar:
    """Test due date generation"""

    def test_next_quincena(self):
        """Test days up to the 15th fall due on the 15th, later days at month end"""
        assert next_quincena(date(2024, 1, 1)) == date(2024, 1, 15)
        assert next_quincena(date(2024, 1, 15)) == date(2024, 1, 15)
        assert next_quincena(date(2024, 1, 16)) == date(2024, 1, 31)
        assert next_quincena(date(2024, 2, 20)) == date(2024, 2, 29)
        assert next_quincena(date(2023, 2, 20)) == date(2023, 2, 28)
        assert next_quincena(date(2024, 4, 30)) == date(2024, 4, 30)

    def test_quincena_dates(self):
        """Test enumeration from loan start through as_of inclusive"""
        assert quincena_dates(START, date(2024, 2, 29)) == [
            date(2024, 1, 15), date(2024, 1, 31), date(2024, 2, 15), date(2024, 2, 29)
        ]
        assert quincena_dates(date(2024, 1, 20), date(2024, 1, 25)) == []

    def test_dates_strictly_increasing_on_15th_or_month_end(self):
        """Test two years of quincenas are monotonic and well-placed"""
        dates = quincena_dates(date(2023, 11, 7), date(2025, 11, 7))

        assert len(dates) == 48
        for earlier, later in zip(dates, dates[1:]):
            assert earlier < later
        for due in dates:
            assert due.day == 15 or due == month_end(due)

    def test_quincena_interest(self):
        """Test interest is balance times the per-quincena rate"""
        assert quincena_interest(PRINCIPAL, RATE) == Money(Decimal('150.00'))
        assert quincena_interest(Money.zero(), RATE) == Money.zero()
        assert quincena_interest(PRINCIPAL, Decimal('0')) == Money.zero()


class TestAccrual:
    """Test arrears and current interest"""

    def test_unpaid_loan_accrues_arrears_plus_current(self):
        """Test three missed quincenas plus the current one"""
        accrual = accrue(PRINCIPAL, RATE, START, date(2024, 2, 20))

        assert accrual.arrears_interest == Money(Decimal('450.00'))
        assert accrual.current_period_interest == Money(Decimal('150.00'))
        assert accrual.total_interest_due == Money(Decimal('600.00'))
        assert accrual.next_due_date == date(2024, 2, 29)
        assert accrual.next_due_amount == Money(Decimal('600.00'))
        assert [p.due_date for p in accrual.overdue_periods] == [
            date(2024, 1, 15), date(2024, 1, 31), date(2024, 2, 15)
        ]
        assert accrual.oldest_unpaid_due_date == date(2024, 1, 15)
        assert accrual.overdue_periods[0].days_overdue == 36
        assert accrual.is_behind

    def test_due_date_itself_is_not_arrears(self):
        """Test a quincena is only overdue after its due date has passed"""
        accrual = accrue(PRINCIPAL, RATE, START, date(2024, 1, 15))

        assert accrual.arrears_interest == Money.zero()
        assert accrual.total_interest_due == Money(Decimal('150.00'))
        assert accrual.next_due_date == date(2024, 1, 15)
        assert not accrual.is_behind

    def test_explicitly_settled_periods(self):
        """Test payments that name their quincenas clear exactly those"""
        payment = make_payment("P1", date(2024, 2, 1), "300.00",
                               settled_periods=(date(2024, 1, 15), date(2024, 1, 31)))
        accrual = accrue(PRINCIPAL, RATE, START, date(2024, 2, 20), [payment])

        assert accrual.arrears_interest == Money(Decimal('150.00'))
        assert accrual.total_interest_due == Money(Decimal('300.00'))

    def test_settled_in_advance_moves_current_period(self):
        """Test prepaying the current quincena hands the slot to the next one"""
        payment = make_payment("P1", date(2024, 2, 20), "600.00", settled_periods=(
            date(2024, 1, 15), date(2024, 1, 31), date(2024, 2, 15), date(2024, 2, 29)
        ))
        accrual = accrue(PRINCIPAL, RATE, START, date(2024, 2, 20), [payment])

        assert accrual.arrears_interest == Money.zero()
        assert accrual.next_due_date == date(2024, 3, 15)
        assert accrual.total_interest_due == Money(Decimal('150.00'))
        assert accrual.outstanding_due_dates() == [date(2024, 3, 15)]

    def test_legacy_payment_within_window(self):
        """Test a legacy payment near a due date covers that quincena"""
        payment = make_payment("P1", date(2024, 1, 20), "150.00")
        accrual = accrue(PRINCIPAL, RATE, START, date(2024, 2, 20), [payment])

        assert [p.due_date for p in accrual.overdue_periods] == [date(2024, 1, 31), date(2024, 2, 15)]
        assert accrual.total_interest_due == Money(Decimal('450.00'))

    def test_legacy_payment_outside_window(self):
        """Test a payment more than seven days away matches nothing"""
        payment = make_payment("P1", date(2024, 1, 23), "150.00")
        accrual = accrue(PRINCIPAL, RATE, START, date(2024, 2, 20), [payment])

        assert accrual.total_interest_due == Money(Decimal('600.00'))

    def test_legacy_payment_too_small(self):
        """Test a payment whose interest portion is below one quincena matches nothing"""
        payment = make_payment("P1", date(2024, 1, 15), "100.00")
        accrual = accrue(PRINCIPAL, RATE, START, date(2024, 2, 20), [payment])

        assert accrual.total_interest_due == Money(Decimal('600.00'))

    def test_legacy_payment_matches_one_due_date(self):
        """Test a payment equidistant from two due dates only clears one"""
        payment = make_payment("P1", date(2024, 2, 22), "300.00")
        accrual = accrue(PRINCIPAL, RATE, START, date(2024, 3, 10), [payment])

        assert [p.due_date for p in accrual.overdue_periods] == [
            date(2024, 1, 15), date(2024, 1, 31), date(2024, 2, 29)
        ]
        assert accrual.total_interest_due == Money(Decimal('600.00'))

    def test_custom_window(self):
        """Test the matching window is configurable"""
        payment = make_payment("P1", date(2024, 1, 23), "150.00")
        accrual = accrue(PRINCIPAL, RATE, START, date(2024, 2, 20), [payment], window_days=10)

        assert accrual.total_interest_due == Money(Decimal('450.00'))

    def test_degenerate_loan(self):
        """Test a zero balance accrues nothing but still has a next due date"""
        accrual = accrue(Money.zero(), RATE, START, date(2024, 2, 20))

        assert accrual.total_interest_due == Money.zero()
        assert accrual.next_due_amount == Money.zero()
        assert accrual.next_due_date == date(2024, 2, 29)
        assert accrual.outstanding_due_dates() == []

    def test_accrual_never_decreases_over_time_without_payments(self):
        """Test arrears only grow as days pass"""
        previous = Money.zero()
        day = START
        while day < date(2024, 6, 1):
            accrual = accrue(PRINCIPAL, RATE, START, day)
            assert accrual.total_interest_due >= previous
            previous = accrual.total_interest_due
            day += timedelta(days=3)


class TestSettlePeriods:
    """Test allocating interest paid to whole quincenas"""

    def test_settles_oldest_first_with_credit(self):
        """Test carried credit plus payment settles whole periods only"""
        outstanding = [date(2024, 1, 15), date(2024, 1, 31), date(2024, 2, 15)]
        settled, credit = settle_periods(outstanding, Money(Decimal('150.00')),
                                         Money(Decimal('100.00')), Money(Decimal('200.00')))

        assert settled == (date(2024, 1, 15), date(2024, 1, 31))
        assert credit == Money.zero()

    def test_partial_period_becomes_credit(self):
        """Test interest short of one quincena is carried forward"""
        settled, credit = settle_periods([date(2024, 1, 15)], Money(Decimal('150.00')),
                                         Money.zero(), Money(Decimal('100.00')))

        assert settled == ()
        assert credit == Money(Decimal('100.00'))


class TestSuggestedPayment:
    """Test the suggested payment for open-ended loans"""

    def test_interest_plus_principal_share(self):
        """Test default share of ten percent"""
        assert suggested_payment(PRINCIPAL, Money(Decimal('150.00'))) == Money(Decimal('250.00'))

    def test_custom_share(self):
        """Test a configured share"""
        assert suggested_payment(PRINCIPAL, Money(Decimal('150.00')), Decimal('0.25')) == Money(Decimal('400.00'))

    def test_settled_balance(self):
        """Test nothing but interest is suggested once principal is gone"""
        assert suggested_payment(Money.zero(), Money(Decimal('20.00'))) == Money(Decimal('20.00'))
