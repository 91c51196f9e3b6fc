"""
Tests for repayment schedules and collections arithmetic
"""

import pytest
import uuid
from decimal import Decimal
from datetime import datetime, date, timezone

from fincore.errors import InvalidState
from fincore.loans import Loan, LoanStatus, ApprovalStatus
from fincore.schedule import RepaymentScheduleGenerator, RepaymentStatus, add_months
from fincore.storage import InMemoryStorage


def make_loan(total_amount, tenor_months, requested_at=None, principal=None):
    """Build an approved loan record without going through the loan engine"""
    requested_at = requested_at or datetime.now(timezone.utc)
    return Loan(
        id=str(uuid.uuid4()),
        created_at=requested_at,
        updated_at=requested_at,
        user_id="user-1",
        credit_account_id="credit-1",
        savings_account_id="savings-1",
        loan_number="LN-2024-00001",
        principal_amount=Decimal(principal or total_amount),
        interest_rate=Decimal("8.0"),
        tenor_months=tenor_months,
        total_amount=Decimal(total_amount),
        outstanding_amount=Decimal(total_amount),
        status=LoanStatus.APPROVED,
        approval_status=ApprovalStatus.AUTO_APPROVED,
        requested_at=requested_at,
        due_date=add_months(requested_at.date(), tenor_months),
    )


class TestAddMonths:
    """Test calendar month arithmetic"""

    def test_simple(self):
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 8, 31), 1) == date(2024, 9, 30)

    def test_negative_months(self):
        assert add_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
        assert add_months(date(2024, 1, 10), -3) == date(2023, 10, 10)

    def test_preserves_datetime(self):
        start = datetime(2024, 5, 31, 12, 30, tzinfo=timezone.utc)
        assert add_months(start, 1) == datetime(2024, 6, 30, 12, 30, tzinfo=timezone.utc)


class TestScheduleGeneration:
    """Test installment plan creation"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.schedule = RepaymentScheduleGenerator(self.storage)

    def test_even_installments(self):
        """108000 over 6 months gives six installments of 18000"""
        requested_at = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
        loan = make_loan("108000.00", 6, requested_at, principal="100000.00")

        repayments = self.schedule.generate_schedule(loan)

        assert len(repayments) == 6
        assert [r.schedule_number for r in repayments] == [1, 2, 3, 4, 5, 6]
        assert all(r.due_amount == Decimal("18000.00") for r in repayments)
        assert all(r.status == RepaymentStatus.SCHEDULED for r in repayments)
        assert [r.due_date for r in repayments] == [
            date(2024, 2, 15), date(2024, 3, 15), date(2024, 4, 15),
            date(2024, 5, 15), date(2024, 6, 15), date(2024, 7, 15),
        ]

    def test_last_installment_absorbs_rounding(self):
        loan = make_loan("11200.00", 12)

        repayments = self.schedule.generate_schedule(loan)

        assert all(r.due_amount == Decimal("933.33") for r in repayments[:11])
        assert repayments[-1].due_amount == Decimal("933.37")
        assert sum(r.due_amount for r in repayments) == Decimal("11200.00")

    def test_schedule_is_persisted_in_order(self):
        loan = make_loan("3000.00", 3)
        self.schedule.generate_schedule(loan)

        stored = self.schedule.get_schedule(loan.id)
        assert [r.schedule_number for r in stored] == [1, 2, 3]
        assert self.schedule.has_schedule(loan.id)
        assert self.schedule.get_repayment(stored[0].id).loan_id == loan.id

    def test_generating_twice_fails(self):
        loan = make_loan("3000.00", 3)
        self.schedule.generate_schedule(loan)

        with pytest.raises(InvalidState) as excinfo:
            self.schedule.generate_schedule(loan)
        assert excinfo.value.code == "SCHEDULE_ALREADY_EXISTS"
        assert len(self.schedule.get_schedule(loan.id)) == 3


class TestInstallmentProgress:
    """Test payment application and payable installment selection"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.schedule = RepaymentScheduleGenerator(self.storage)
        self.loan = make_loan("3000.00", 3, datetime(2024, 1, 10, tzinfo=timezone.utc))
        self.schedule.generate_schedule(self.loan)

    def test_next_payable_is_lowest_scheduled(self):
        assert self.schedule.next_payable_installment(self.loan.id).schedule_number == 1

    def test_partial_then_full_payment(self):
        first = self.schedule.next_payable_installment(self.loan.id)

        partial = self.schedule.apply_payment(first, Decimal("400.00"), "txn-1", "savings-1")
        assert partial.status == RepaymentStatus.PARTIALLY_PAID
        assert partial.remaining == Decimal("600.00")

        paid = self.schedule.apply_payment(partial, Decimal("600.00"), "txn-2", "savings-1")
        assert paid.status == RepaymentStatus.PAID
        assert paid.transaction_id == "txn-2"
        assert paid.paid_at is not None

    def test_overdue_before_partially_paid(self):
        """Once nothing is SCHEDULED, OVERDUE rows come before partial ones"""
        self.schedule.mark_overdue_repayments(date(2024, 6, 1))
        first = self.schedule.next_payable_installment(self.loan.id)
        assert first.schedule_number == 1
        assert first.status == RepaymentStatus.OVERDUE

        self.schedule.apply_payment(first, Decimal("100.00"), "txn-1")
        assert self.schedule.next_payable_installment(self.loan.id).schedule_number == 2

    def test_partially_paid_is_last_resort(self):
        for repayment in self.schedule.get_schedule(self.loan.id):
            self.schedule.apply_payment(repayment, Decimal("1.00"), "txn")

        remaining = self.schedule.next_payable_installment(self.loan.id)
        assert remaining.schedule_number == 1
        assert remaining.status == RepaymentStatus.PARTIALLY_PAID

    def test_nothing_payable_once_all_paid(self):
        for repayment in self.schedule.get_schedule(self.loan.id):
            self.schedule.apply_payment(repayment, repayment.due_amount, "txn")
        assert self.schedule.next_payable_installment(self.loan.id) is None

    def test_late_fee_raises_total_due(self):
        first = self.schedule.get_schedule(self.loan.id)[0]
        self.schedule.set_late_fee(first, Decimal("1000"))

        paid = self.schedule.apply_payment(first, Decimal("1000.00"), "txn")
        assert paid.status == RepaymentStatus.PARTIALLY_PAID
        assert paid.remaining == Decimal("1000.00")


class TestCollections:
    """Test overdue detection and late fees"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.schedule = RepaymentScheduleGenerator(self.storage)
        self.loan = make_loan("3000.00", 3, datetime(2024, 1, 15, tzinfo=timezone.utc))
        self.schedule.generate_schedule(self.loan)

    def test_mark_overdue(self):
        marked = self.schedule.mark_overdue_repayments(date(2024, 3, 20))

        assert sorted(r.schedule_number for r in marked) == [1, 2]
        statuses = [r.status for r in self.schedule.get_schedule(self.loan.id)]
        assert statuses == [RepaymentStatus.OVERDUE, RepaymentStatus.OVERDUE, RepaymentStatus.SCHEDULED]
        assert len(self.schedule.find_overdue_repayments()) == 2

    def test_due_today_is_not_overdue(self):
        assert self.schedule.mark_overdue_repayments(date(2024, 2, 15)) == []

    def test_upcoming_repayments(self):
        upcoming = self.schedule.find_upcoming_repayments(date(2024, 3, 15))
        assert [r.schedule_number for r in upcoming] == [2]

    def test_days_overdue(self):
        first = self.schedule.get_schedule(self.loan.id)[0]
        assert first.days_overdue(date(2024, 2, 25)) == 10
        assert first.days_overdue(date(2024, 2, 1)) == 0

    @pytest.mark.parametrize("days,due,principal,expected", [
        (0, "18000", "100000", "0.00"),
        (7, "18000", "100000", "0.00"),        # inside grace period
        (8, "18000", "100000", "1000.00"),     # fixed fee beats 2%
        (15, "100000", "1000000", "2000.00"),  # 2% beats fixed fee
        (10, "18000", "10000", "500.00"),      # capped at 5% of principal
        (30, "18000", "100000", "1000.00"),
        (31, "18000", "100000", "0.00"),       # default territory
    ])
    def test_calculate_late_fee(self, days, due, principal, expected):
        fee = self.schedule.calculate_late_fee(days, Decimal(due), Decimal(principal))
        assert fee == Decimal(expected)
