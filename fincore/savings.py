"""
Savings Balance Engine

Owns savings account balances. Customer deposits and withdrawals are checked
against the account's tier ceilings and applied together with their ledger
entry in one unit of work; loan flows move money through ``update_balance``
which skips tier checks but never lets a balance go negative.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .amounts import ZERO, format_amount, positive_amount, to_amount
from .config import FincoreConfig, get_config
from .errors import InvalidState, InsufficientFunds, LimitExceeded, NotFound
from .identity import UserDirectory
from .ledger import Transaction, TransactionLedger, TransactionType
from .notifications import NotificationDispatcher, NotificationTemplate, dispatch_safely
from .storage import StorageInterface, StorageRecord
from .tiers import AccountTier, TierLimits, DEFAULT_TIER_LIMITS
from .unit_of_work import UnitOfWork
from .logging_config import get_logger, log_action


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"      # Normal operation
    FROZEN = "frozen"      # Temporarily suspended
    CLOSED = "closed"      # Permanently closed


class AccountType(Enum):
    """Savings products"""
    REGULAR = "regular"
    FIXED = "fixed"


# Loan statuses that tie a savings account to an open loan
OPEN_LOAN_STATUSES = ("pending", "approved", "disbursed", "active")


@dataclass
class SavingsAccount(StorageRecord):
    """Customer savings account"""
    user_id: str
    account_number: str
    account_type: AccountType
    tier: AccountTier
    balance: Decimal
    interest_rate: Decimal
    currency: str
    status: AccountStatus = AccountStatus.ACTIVE
    closed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass
class SavingsMovement:
    """Result of a deposit or withdrawal"""
    account: SavingsAccount
    transaction: Transaction


@dataclass
class BalanceInquiry:
    """Point-in-time balance view of one account"""
    account_id: str
    account_number: str
    balance: Decimal
    currency: str
    tier: AccountTier
    status: AccountStatus
    interest_rate: Decimal
    daily_deposit_remaining: Decimal
    daily_withdrawal_remaining: Decimal
    monthly_withdrawal_remaining: Decimal


class SavingsManager:
    """Savings account lifecycle and balance mutation"""

    def __init__(
        self,
        storage: StorageInterface,
        unit_of_work: UnitOfWork,
        ledger: TransactionLedger,
        users: UserDirectory,
        tier_limits: Optional[Dict[AccountTier, TierLimits]] = None,
        notifications: Optional[NotificationDispatcher] = None,
        config: Optional[FincoreConfig] = None
    ):
        self.storage = storage
        self.unit_of_work = unit_of_work
        self.ledger = ledger
        self.users = users
        self.tier_limits = tier_limits or DEFAULT_TIER_LIMITS
        self.notifications = notifications
        self.config = config or get_config()
        self.table_name = "savings_accounts"
        self.loans_table = "loans"
        self.logger = get_logger("fincore.savings")

    def create_savings_account(self, user_id: str, account_type: AccountType = AccountType.REGULAR) -> SavingsAccount:
        """Open a BASIC tier account with zero balance"""
        self.users.get_customer(user_id)

        now = datetime.now(timezone.utc)
        tier = AccountTier.BASIC
        account = SavingsAccount(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_number=self._generate_account_number(now),
            account_type=account_type,
            tier=tier,
            balance=ZERO,
            interest_rate=self.tier_limits[tier].interest_rate,
            currency=self.config.currency,
        )
        self._save_account(account)

        log_action(
            self.logger, "info", f"Savings account {account.account_number} opened",
            user_id=user_id, action="savings_account_created", resource=f"savings_account:{account.id}",
            extra={"account_type": account_type.value, "tier": tier.value}
        )
        return account

    def deposit(self, user_id: str, account_id: str, amount: Decimal,
                description: Optional[str] = None) -> SavingsMovement:
        """
        Customer deposit.

        Raises:
            NotFound: account missing or not owned by the user
            InvalidState: account not ACTIVE
            LimitExceeded: tier daily deposit ceiling would be exceeded
        """
        amount = positive_amount(amount)

        def unit(ctx) -> SavingsMovement:
            account = self._load_owned(user_id, account_id, for_update=True)
            self._require_active(account)
            limits = self.tier_limits[account.tier]

            daily_total = self.ledger.get_daily_transaction_total(account.id, TransactionType.DEPOSIT)
            if daily_total + amount > limits.daily_deposit:
                raise LimitExceeded(
                    f"Daily deposit limit of {limits.daily_deposit} exceeded", "DAILY_DEPOSIT_LIMIT_EXCEEDED"
                )

            transaction = self.ledger.create_transaction(
                user_id, account.id, TransactionType.DEPOSIT, amount, description or "Deposit"
            )
            account = self._apply_balance_change(account, amount, is_debit=False)
            transaction = self.ledger.complete_transaction(transaction.id)

            self.unit_of_work.after_commit(lambda: self._notify(
                NotificationTemplate.DEPOSIT_SUCCESS, account, transaction
            ))
            return SavingsMovement(account=account, transaction=transaction)

        movement = self.unit_of_work.run(unit)
        log_action(
            self.logger, "info", f"Deposit of {amount} to {movement.account.account_number}",
            user_id=user_id, action="deposit", resource=f"savings_account:{account_id}",
            extra={"reference": movement.transaction.transaction_reference, "balance": str(movement.account.balance)}
        )
        return movement

    def withdraw(self, user_id: str, account_id: str, amount: Decimal,
                 description: Optional[str] = None) -> SavingsMovement:
        """
        Customer withdrawal.

        The balance and limit checks run against the locked account row
        inside the unit, so two concurrent withdrawals cannot both pass.

        Raises:
            NotFound: account missing or not owned by the user
            InvalidState: account not ACTIVE
            InsufficientFunds: balance below the amount
            LimitExceeded: tier daily or monthly withdrawal ceiling would be exceeded
        """
        amount = positive_amount(amount)

        def unit(ctx) -> SavingsMovement:
            account = self._load_owned(user_id, account_id, for_update=True)
            self._require_active(account)

            if account.balance < amount:
                raise InsufficientFunds(
                    f"Insufficient balance: {account.balance} available, {amount} requested",
                    "INSUFFICIENT_BALANCE"
                )

            limits = self.tier_limits[account.tier]
            daily_total = self.ledger.get_daily_transaction_total(account.id, TransactionType.WITHDRAWAL)
            if daily_total + amount > limits.daily_withdrawal:
                raise LimitExceeded(
                    f"Daily withdrawal limit of {limits.daily_withdrawal} exceeded",
                    "DAILY_WITHDRAWAL_LIMIT_EXCEEDED"
                )
            monthly_total = self.ledger.get_monthly_transaction_total(account.id, TransactionType.WITHDRAWAL)
            if monthly_total + amount > limits.monthly_withdrawal:
                raise LimitExceeded(
                    f"Monthly withdrawal limit of {limits.monthly_withdrawal} exceeded",
                    "MONTHLY_WITHDRAWAL_LIMIT_EXCEEDED"
                )

            transaction = self.ledger.create_transaction(
                user_id, account.id, TransactionType.WITHDRAWAL, amount, description or "Withdrawal"
            )
            account = self._apply_balance_change(account, amount, is_debit=True)
            transaction = self.ledger.complete_transaction(transaction.id)

            self.unit_of_work.after_commit(lambda: self._notify(
                NotificationTemplate.WITHDRAWAL_SUCCESS, account, transaction
            ))
            return SavingsMovement(account=account, transaction=transaction)

        movement = self.unit_of_work.run(unit)
        log_action(
            self.logger, "info", f"Withdrawal of {amount} from {movement.account.account_number}",
            user_id=user_id, action="withdraw", resource=f"savings_account:{account_id}",
            extra={"reference": movement.transaction.transaction_reference, "balance": str(movement.account.balance)}
        )
        return movement

    def update_balance(self, account_id: str, amount: Decimal, is_debit: bool) -> SavingsAccount:
        """Loan-driven balance movement; no tier checks"""
        amount = positive_amount(amount)
        with self.unit_of_work.atomic():
            data = self.storage.load_for_update(self.table_name, account_id)
            if data is None:
                raise NotFound(f"Savings account {account_id} not found", "SAVINGS_ACCOUNT_NOT_FOUND")
            account = SavingsAccount.from_dict(data)
            if is_debit and account.balance < amount:
                raise InsufficientFunds(
                    f"Insufficient balance: {account.balance} available, {amount} requested",
                    "INSUFFICIENT_BALANCE"
                )
            return self._apply_balance_change(account, amount, is_debit)

    def close_savings_account(self, user_id: str, account_id: str) -> SavingsAccount:
        """
        Close an account.

        Refused while it is the customer's only active account, while an
        open loan uses it, or while it still holds money.
        """
        with self.unit_of_work.atomic():
            account = self._load_owned(user_id, account_id, for_update=True)
            if account.status == AccountStatus.CLOSED:
                raise InvalidState(f"Account {account.account_number} is already closed", "ACCOUNT_ALREADY_CLOSED")

            other_active = [a for a in self.get_active_accounts(user_id) if a.id != account.id]
            if not other_active:
                raise InvalidState("Cannot close the last active savings account", "CANNOT_CLOSE_LAST_ACCOUNT")

            open_loans = [
                loan for loan in self.storage.find(self.loans_table, {"savings_account_id": account.id})
                if loan['status'] in OPEN_LOAN_STATUSES
            ]
            if open_loans:
                raise InvalidState(
                    f"Account {account.account_number} has {len(open_loans)} active loans",
                    "ACCOUNT_HAS_ACTIVE_LOANS"
                )

            if account.balance > ZERO:
                raise InvalidState(
                    f"Account {account.account_number} still holds {account.balance}", "ACCOUNT_HAS_BALANCE"
                )

            now = datetime.now(timezone.utc)
            account.status = AccountStatus.CLOSED
            account.closed_at = now
            account.updated_at = now
            self._save_account(account)

        log_action(
            self.logger, "info", f"Savings account {account.account_number} closed",
            user_id=user_id, action="savings_account_closed", resource=f"savings_account:{account.id}"
        )
        return account

    def get_balance(self, user_id: str, account_id: str) -> BalanceInquiry:
        """Balance plus what is left of today's and this month's tier allowances"""
        account = self.get_account(user_id, account_id)
        limits = self.tier_limits[account.tier]

        daily_deposits = self.ledger.get_daily_transaction_total(account.id, TransactionType.DEPOSIT)
        daily_withdrawals = self.ledger.get_daily_transaction_total(account.id, TransactionType.WITHDRAWAL)
        monthly_withdrawals = self.ledger.get_monthly_transaction_total(account.id, TransactionType.WITHDRAWAL)

        return BalanceInquiry(
            account_id=account.id,
            account_number=account.account_number,
            balance=account.balance,
            currency=account.currency,
            tier=account.tier,
            status=account.status,
            interest_rate=account.interest_rate,
            daily_deposit_remaining=max(ZERO, limits.daily_deposit - daily_deposits),
            daily_withdrawal_remaining=max(ZERO, limits.daily_withdrawal - daily_withdrawals),
            monthly_withdrawal_remaining=max(ZERO, limits.monthly_withdrawal - monthly_withdrawals),
        )

    def get_account(self, user_id: str, account_id: str) -> SavingsAccount:
        """Account owned by the user, else NotFound"""
        return self._load_owned(user_id, account_id)

    def find_account_by_id(self, account_id: str) -> Optional[SavingsAccount]:
        data = self.storage.load(self.table_name, account_id)
        if data:
            return SavingsAccount.from_dict(data)
        return None

    def get_customer_accounts(self, user_id: str) -> List[SavingsAccount]:
        """All of a customer's accounts, oldest first"""
        accounts = [SavingsAccount.from_dict(data) for data in self.storage.find(self.table_name, {"user_id": user_id})]
        return sorted(accounts, key=lambda a: a.created_at)

    def get_active_accounts(self, user_id: str) -> List[SavingsAccount]:
        return [a for a in self.get_customer_accounts(user_id) if a.is_active]

    def get_total_savings_balance(self, user_id: str) -> Decimal:
        return sum((a.balance for a in self.get_active_accounts(user_id)), ZERO)

    def resolve_destination_account(self, user_id: str, requested_id: Optional[str] = None,
                                    previous_id: Optional[str] = None) -> SavingsAccount:
        """
        Pick the savings account a loan pays into.

        An explicitly requested account must be owned and ACTIVE. Otherwise
        the previously used account wins if still ACTIVE, then the oldest
        ACTIVE account.
        """
        if requested_id:
            account = self.find_account_by_id(requested_id)
            if account is None or account.user_id != user_id:
                raise NotFound(f"Savings account {requested_id} not found", "INVALID_SAVINGS_ACCOUNT")
            if not account.is_active:
                raise InvalidState(f"Savings account {account.account_number} is not active", "SAVINGS_ACCOUNT_INACTIVE")
            return account

        if previous_id:
            account = self.find_account_by_id(previous_id)
            if account is not None and account.user_id == user_id and account.is_active:
                return account

        active = self.get_active_accounts(user_id)
        if not active:
            raise NotFound(f"No active savings account for user {user_id}", "SAVINGS_ACCOUNT_NOT_FOUND")
        return active[0]

    def _load_owned(self, user_id: str, account_id: str, for_update: bool = False) -> SavingsAccount:
        if for_update:
            data = self.storage.load_for_update(self.table_name, account_id)
        else:
            data = self.storage.load(self.table_name, account_id)
        if data is None or data.get('deleted_at') or data['user_id'] != user_id:
            raise NotFound(f"Savings account {account_id} not found", "SAVINGS_ACCOUNT_NOT_FOUND")
        return SavingsAccount.from_dict(data)

    def _require_active(self, account: SavingsAccount) -> None:
        if not account.is_active:
            raise InvalidState(
                f"Account {account.account_number} is {account.status.value}", "ACCOUNT_NOT_ACTIVE"
            )

    def _apply_balance_change(self, account: SavingsAccount, amount: Decimal, is_debit: bool) -> SavingsAccount:
        new_balance = account.balance - amount if is_debit else account.balance + amount
        if new_balance < ZERO:
            raise InsufficientFunds(f"Balance of {account.account_number} cannot go negative", "INSUFFICIENT_BALANCE")
        account.balance = to_amount(new_balance)
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(account)
        return account

    def _notify(self, template: NotificationTemplate, account: SavingsAccount, transaction: Transaction) -> None:
        user = self.users.get_user(account.user_id)
        if user is None:
            return
        dispatch_safely(self.notifications, self.logger, template, [user.email], {
            "customerName": user.full_name,
            "accountNumber": account.account_number,
            "amount": format_amount(transaction.amount, account.currency),
            "newBalance": format_amount(account.balance, account.currency),
            "transactionReference": transaction.transaction_reference,
        })

    def _generate_account_number(self, now: datetime) -> str:
        sequence = self.storage.next_sequence(f"savings_account_number:{now.year}")
        return f"SAV-{sequence:03d}-{now.year}"

    def _save_account(self, account: SavingsAccount) -> None:
        self.storage.save(self.table_name, account.id, account.to_dict())
