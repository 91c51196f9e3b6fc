"""
Credit Facility Engine

One revolving credit facility per customer. Every loan draws on it and every
repayment restores it, keeping

    available_credit   == credit_limit - (total_borrowed - total_repaid)
    outstanding_balance == total_borrowed - total_repaid
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Optional
import uuid

from .amounts import ZERO, positive_amount, to_amount
from .config import FincoreConfig, get_config
from .errors import InvalidState, NotFound, ValidationError
from .identity import UserDirectory
from .ledger import TransactionLedger
from .savings import AccountStatus, SavingsManager
from .storage import StorageInterface, StorageRecord
from .unit_of_work import UnitOfWork
from .logging_config import get_logger, log_action


@dataclass
class CreditAccount(StorageRecord):
    """Revolving credit facility"""
    user_id: str
    account_number: str
    credit_limit: Decimal
    available_credit: Decimal
    total_borrowed: Decimal
    total_repaid: Decimal
    outstanding_balance: Decimal
    status: AccountStatus = AccountStatus.ACTIVE

    @property
    def borrowed(self) -> Decimal:
        return self.total_borrowed - self.total_repaid


@dataclass
class CreditAvailability:
    """Credit position of a customer"""
    credit_limit: Decimal
    available_credit: Decimal
    outstanding_balance: Decimal
    utilization_rate: Decimal  # percent, 2 places


class CreditFacilityManager:
    """Credit limit and availability bookkeeping"""

    def __init__(
        self,
        storage: StorageInterface,
        unit_of_work: UnitOfWork,
        users: UserDirectory,
        savings: Optional[SavingsManager] = None,
        ledger: Optional[TransactionLedger] = None,
        config: Optional[FincoreConfig] = None
    ):
        self.storage = storage
        self.unit_of_work = unit_of_work
        self.users = users
        self.savings = savings
        self.ledger = ledger
        self.config = config or get_config()
        self.table_name = "credit_accounts"
        self.logger = get_logger("fincore.credit")

    def create_credit_account(self, user_id: str, initial_limit: Optional[Decimal] = None) -> CreditAccount:
        """Open the customer's facility at onboarding"""
        self.users.get_customer(user_id)
        if self.find_by_user_id(user_id) is not None:
            raise InvalidState(f"User {user_id} already has a credit account", "CREDIT_ACCOUNT_EXISTS")

        limit = self._clamp(to_amount(initial_limit) if initial_limit is not None else self.config.min_credit_limit)
        now = datetime.now(timezone.utc)
        account = CreditAccount(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_number=self._generate_account_number(now),
            credit_limit=limit,
            available_credit=limit,
            total_borrowed=ZERO,
            total_repaid=ZERO,
            outstanding_balance=ZERO,
        )
        self._save_account(account)

        log_action(
            self.logger, "info", f"Credit account {account.account_number} opened",
            user_id=user_id, action="credit_account_created", resource=f"credit_account:{account.id}",
            extra={"credit_limit": str(limit)}
        )
        return account

    def update_available_credit(self, account_id: str, amount: Decimal, is_loan: bool) -> CreditAccount:
        """
        Draw (``is_loan``) or restore credit.

        No bound checks here: the loan engine has already compared the
        principal with available credit and the repayment with what is owed.
        """
        amount = positive_amount(amount)
        with self.unit_of_work.atomic():
            account = self.load_for_update(account_id)

            if is_loan:
                account.available_credit -= amount
                account.total_borrowed += amount
                account.outstanding_balance += amount
            else:
                account.available_credit += amount
                account.total_repaid += amount
                account.outstanding_balance -= amount

            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)
        return account

    def update_credit_limit(self, user_id: str, new_limit: Decimal) -> CreditAccount:
        """
        Set a new limit, clamped to the configured bounds.

        Raises:
            ValidationError: new limit below what is currently borrowed
        """
        new_limit = to_amount(new_limit)
        with self.unit_of_work.atomic():
            account = self.load_for_update(self.get_credit_account(user_id).id)

            borrowed = account.borrowed
            if new_limit < borrowed:
                raise ValidationError(
                    f"Credit limit {new_limit} is below the borrowed amount {borrowed}", "INVALID_CREDIT_LIMIT"
                )

            old_limit = account.credit_limit
            account.credit_limit = self._clamp(new_limit)
            account.available_credit = account.credit_limit - borrowed
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)

        log_action(
            self.logger, "info", f"Credit limit changed on {account.account_number}",
            user_id=user_id, action="credit_limit_updated", resource=f"credit_account:{account.id}",
            extra={"old_limit": str(old_limit), "new_limit": str(account.credit_limit)}
        )
        return account

    def calculate_credit_limit(self, savings_balance: Decimal, avg_monthly_transactions: Decimal) -> Decimal:
        """savings x 2 + average monthly transactions x 3, clamped to the configured bounds"""
        raw = (Decimal(savings_balance) * self.config.savings_multiplier
               + Decimal(avg_monthly_transactions) * self.config.transaction_multiplier)
        return self._clamp(to_amount(raw))

    def recalculate_credit_limit(self, user_id: str) -> CreditAccount:
        """Apply calculate_credit_limit to the customer's current savings and activity"""
        if self.savings is None or self.ledger is None:
            raise InvalidState("Credit recalculation needs savings and ledger collaborators", "NOT_CONFIGURED")

        account = self.get_credit_account(user_id)
        new_limit = self.calculate_credit_limit(
            self.savings.get_total_savings_balance(user_id),
            self.ledger.get_average_monthly_transactions(user_id),
        )
        # Never cut the limit below what is already owed
        return self.update_credit_limit(user_id, max(new_limit, account.borrowed))

    def get_credit_availability(self, user_id: str) -> CreditAvailability:
        account = self.get_credit_account(user_id)
        utilization = ZERO
        if account.credit_limit > ZERO:
            utilization = to_amount((account.credit_limit - account.available_credit) / account.credit_limit * 100)
        return CreditAvailability(
            credit_limit=account.credit_limit,
            available_credit=account.available_credit,
            outstanding_balance=account.outstanding_balance,
            utilization_rate=utilization,
        )

    def get_credit_account(self, user_id: str) -> CreditAccount:
        """The customer's facility, else NotFound"""
        account = self.find_by_user_id(user_id)
        if account is None:
            raise NotFound(f"Credit account for user {user_id} not found", "CREDIT_ACCOUNT_NOT_FOUND")
        return account

    def find_by_user_id(self, user_id: str) -> Optional[CreditAccount]:
        rows = self.storage.find(self.table_name, {"user_id": user_id})
        if rows:
            return CreditAccount.from_dict(rows[0])
        return None

    def find_by_id(self, account_id: str) -> Optional[CreditAccount]:
        data = self.storage.load(self.table_name, account_id)
        if data:
            return CreditAccount.from_dict(data)
        return None

    def load_for_update(self, account_id: str) -> CreditAccount:
        """Facility row locked until the surrounding unit ends, else NotFound"""
        data = self.storage.load_for_update(self.table_name, account_id)
        if data is None:
            raise NotFound(f"Credit account {account_id} not found", "CREDIT_ACCOUNT_NOT_FOUND")
        return CreditAccount.from_dict(data)

    def _clamp(self, limit: Decimal) -> Decimal:
        return to_amount(min(max(limit, self.config.min_credit_limit), self.config.max_credit_limit))

    def _generate_account_number(self, now: datetime) -> str:
        sequence = self.storage.next_sequence(f"credit_account_number:{now.year}")
        return f"CRD-{sequence:03d}-{now.year}"

    def _save_account(self, account: CreditAccount) -> None:
        self.storage.save(self.table_name, account.id, account.to_dict())
