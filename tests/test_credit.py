"""
Tests for the credit facility engine
"""

import pytest
import re
from decimal import Decimal
from datetime import datetime, timezone

from fincore.errors import InvalidState, NotFound, ValidationError
from fincore.credit import CreditFacilityManager
from fincore.storage import InMemoryStorage
from fincore.system import FincoreSystem
from fincore.unit_of_work import UnitOfWork


class TestCreditLimitCalculation:
    """Test the savings and activity based limit formula"""

    def setup_method(self):
        self.system = FincoreSystem(storage=InMemoryStorage())
        self.credit = self.system.credit

    def test_formula(self):
        limit = self.credit.calculate_credit_limit(Decimal("500000"), Decimal("100000"))
        assert limit == Decimal("1300000.00")

    def test_clamped_to_minimum(self):
        assert self.credit.calculate_credit_limit(Decimal("10000"), Decimal("5000")) == Decimal("50000.00")

    def test_clamped_to_maximum(self):
        limit = self.credit.calculate_credit_limit(Decimal("10000000"), Decimal("5000000"))
        assert limit == Decimal("10000000.00")


class TestCreditAccounts:
    """Test facility bookkeeping"""

    def setup_method(self):
        self.system = FincoreSystem(storage=InMemoryStorage())
        self.credit = self.system.credit
        self.user, self.savings_account, self.account = self.system.onboard_customer(
            "ada@example.com", "Ada", "Lovelace"
        )

    def _assert_invariant(self, account):
        assert account.available_credit == account.credit_limit - (account.total_borrowed - account.total_repaid)
        assert account.outstanding_balance == account.total_borrowed - account.total_repaid

    def test_new_account_starts_at_minimum_limit(self):
        year = datetime.now(timezone.utc).year
        assert self.account.credit_limit == Decimal("50000.00")
        assert self.account.available_credit == Decimal("50000.00")
        assert self.account.outstanding_balance == Decimal("0.00")
        assert re.match(rf"^CRD-\d{{3}}-{year}$", self.account.account_number)

    def test_one_account_per_customer(self):
        with pytest.raises(InvalidState) as excinfo:
            self.credit.create_credit_account(self.user.id)
        assert excinfo.value.code == "CREDIT_ACCOUNT_EXISTS"

    def test_initial_limit_is_clamped(self):
        user = self.system.users.create_customer("grace@example.com", "Grace", "Hopper")
        account = self.credit.create_credit_account(user.id, initial_limit=Decimal("99999999"))
        assert account.credit_limit == Decimal("10000000.00")

    def test_draw_and_restore_keep_invariant(self):
        account = self.credit.update_available_credit(self.account.id, Decimal("20000"), is_loan=True)
        assert account.available_credit == Decimal("30000.00")
        assert account.outstanding_balance == Decimal("20000.00")
        self._assert_invariant(account)

        account = self.credit.update_available_credit(self.account.id, Decimal("5000"), is_loan=False)
        assert account.available_credit == Decimal("35000.00")
        assert account.total_repaid == Decimal("5000.00")
        self._assert_invariant(account)

    def test_update_unknown_account(self):
        with pytest.raises(NotFound):
            self.credit.update_available_credit("missing", Decimal("1"), is_loan=True)

    def test_update_credit_limit_keeps_borrowed(self):
        self.credit.update_available_credit(self.account.id, Decimal("20000"), is_loan=True)

        account = self.credit.update_credit_limit(self.user.id, Decimal("200000"))

        assert account.credit_limit == Decimal("200000.00")
        assert account.available_credit == Decimal("180000.00")
        self._assert_invariant(account)

    def test_update_credit_limit_is_clamped(self):
        account = self.credit.update_credit_limit(self.user.id, Decimal("20000000"))
        assert account.credit_limit == Decimal("10000000.00")

    def test_limit_below_borrowed_rejected(self):
        self.credit.update_credit_limit(self.user.id, Decimal("200000"))
        self.credit.update_available_credit(self.account.id, Decimal("150000"), is_loan=True)

        with pytest.raises(ValidationError) as excinfo:
            self.credit.update_credit_limit(self.user.id, Decimal("100000"))
        assert excinfo.value.code == "INVALID_CREDIT_LIMIT"
        assert self.credit.get_credit_account(self.user.id).credit_limit == Decimal("200000.00")

    def test_credit_availability(self):
        self.credit.update_available_credit(self.account.id, Decimal("12500"), is_loan=True)

        availability = self.credit.get_credit_availability(self.user.id)

        assert availability.credit_limit == Decimal("50000.00")
        assert availability.available_credit == Decimal("37500.00")
        assert availability.outstanding_balance == Decimal("12500.00")
        assert availability.utilization_rate == Decimal("25.00")

    def test_missing_credit_account(self):
        user = self.system.users.create_customer("no.credit@example.com", "No", "Credit")
        with pytest.raises(NotFound) as excinfo:
            self.credit.get_credit_account(user.id)
        assert excinfo.value.code == "CREDIT_ACCOUNT_NOT_FOUND"

    def test_recalculate_from_savings(self):
        self.system.savings.deposit(self.user.id, self.savings_account.id, Decimal("100000"))

        account = self.credit.recalculate_credit_limit(self.user.id)

        # 100000 x 2 + average 100000 x 3
        assert account.credit_limit == Decimal("500000.00")
        self._assert_invariant(account)

    def test_recalculate_never_drops_below_borrowed(self):
        self.credit.update_credit_limit(self.user.id, Decimal("400000"))
        self.credit.update_available_credit(self.account.id, Decimal("300000"), is_loan=True)

        account = self.credit.recalculate_credit_limit(self.user.id)

        assert account.credit_limit == Decimal("300000.00")
        assert account.available_credit == Decimal("0.00")

    def test_recalculate_needs_collaborators(self):
        manager = CreditFacilityManager(
            self.system.storage, UnitOfWork(self.system.storage), self.system.users
        )
        with pytest.raises(InvalidState, match="NOT_CONFIGURED"):
            manager.recalculate_credit_limit(self.user.id)
