"""
Transaction Ledger Module

Append-only journal of every money movement. Each entry snapshots the
balance of the affected savings account before and after the movement, is
created PENDING and reaches COMPLETED or FAILED exactly once. Aggregates
(daily and monthly totals, averages) only ever count COMPLETED entries, so a
movement that is still in flight or was rolled back never counts towards a
limit.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import math
import uuid

from .amounts import ZERO, positive_amount, to_amount
from .errors import InvalidState, NotFound
from .identity import UserDirectory
from .schedule import add_months
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


class TransactionType(Enum):
    """Types of ledger entries"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    LOAN_DISBURSEMENT = "loan_disbursement"
    LOAN_REPAYMENT = "loan_repayment"
    INTEREST_CREDIT = "interest_credit"
    FEE_CHARGE = "fee_charge"


CREDIT_TYPES = frozenset({
    TransactionType.DEPOSIT,
    TransactionType.LOAN_DISBURSEMENT,
    TransactionType.INTEREST_CREDIT,
})


class TransactionStatus(Enum):
    """States of a ledger entry"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Transaction(StorageRecord):
    """A single ledger entry"""
    user_id: str
    savings_account_id: Optional[str]
    transaction_reference: str
    transaction_type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    status: TransactionStatus = TransactionStatus.PENDING
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    processed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def is_credit(self) -> bool:
        return self.transaction_type in CREDIT_TYPES


@dataclass
class Page:
    """One page of a newest-first listing"""
    items: List[Any]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _as_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to be UTC already"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _day_bounds(as_of: datetime):
    start = as_of.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def _month_bounds(as_of: datetime):
    start = as_of.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, add_months(start, 1)


class TransactionLedger:
    """Creates, terminates and aggregates ledger entries"""

    def __init__(self, storage: StorageInterface, users: UserDirectory):
        self.storage = storage
        self.users = users
        self.table_name = "transactions"
        self.accounts_table = "savings_accounts"
        self.logger = get_logger("fincore.ledger")

    def create_transaction(
        self,
        user_id: str,
        savings_account_id: Optional[str],
        transaction_type: TransactionType,
        amount: Decimal,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """
        Record a PENDING ledger entry.

        ``balance_before`` is read from the savings account (zero when no
        account is involved); ``balance_after`` adds the amount for credit
        types and subtracts it for debit types.

        Raises:
            NotFound: unknown user or savings account
            ValidationError: non-positive amount
        """
        amount = positive_amount(amount)
        if self.users.get_user(user_id) is None:
            raise NotFound(f"User {user_id} not found", "USER_NOT_FOUND")

        balance_before = ZERO
        if savings_account_id is not None:
            account_data = self.storage.load(self.accounts_table, savings_account_id)
            if account_data is None:
                raise NotFound(f"Savings account {savings_account_id} not found", "SAVINGS_ACCOUNT_NOT_FOUND")
            balance_before = to_amount(account_data['balance'])

        if transaction_type in CREDIT_TYPES:
            balance_after = balance_before + amount
        else:
            balance_after = balance_before - amount

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            savings_account_id=savings_account_id,
            transaction_reference=self._generate_reference(now),
            transaction_type=transaction_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            metadata=metadata or {}
        )
        self._save_transaction(transaction)

        log_action(
            self.logger, "info", f"Transaction created: {transaction_type.value}",
            user_id=user_id, action="create_transaction", resource=f"transaction:{transaction.id}",
            extra={
                "reference": transaction.transaction_reference,
                "amount": str(amount),
                "savings_account_id": savings_account_id,
            }
        )
        return transaction

    def complete_transaction(self, transaction_id: str) -> Transaction:
        """PENDING -> COMPLETED"""
        return self._terminate(transaction_id, TransactionStatus.COMPLETED)

    def fail_transaction(self, transaction_id: str, reason: Optional[str] = None) -> Transaction:
        """PENDING -> FAILED"""
        return self._terminate(transaction_id, TransactionStatus.FAILED, reason)

    def _terminate(self, transaction_id: str, status: TransactionStatus,
                   reason: Optional[str] = None) -> Transaction:
        data = self.storage.load_for_update(self.table_name, transaction_id)
        if data is None:
            raise NotFound(f"Transaction {transaction_id} not found", "TRANSACTION_NOT_FOUND")
        transaction = Transaction.from_dict(data)
        if not transaction.is_pending:
            raise InvalidState(
                f"Transaction {transaction_id} is already {transaction.status.value}",
                "TRANSACTION_ALREADY_PROCESSED"
            )

        now = datetime.now(timezone.utc)
        transaction.status = status
        transaction.processed_at = now
        transaction.updated_at = now
        transaction.failure_reason = reason
        self._save_transaction(transaction)

        log_action(
            self.logger, "info" if status == TransactionStatus.COMPLETED else "warning",
            f"Transaction {transaction.transaction_reference} {status.value}",
            user_id=transaction.user_id, action=f"transaction_{status.value}",
            resource=f"transaction:{transaction.id}",
            extra={"reason": reason} if reason else None
        )
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def get_transaction_by_reference(self, user_id: str, reference: str) -> Transaction:
        """Get a user's transaction by its TXN reference"""
        matches = self.storage.find(self.table_name, {
            "user_id": user_id,
            "transaction_reference": reference,
        })
        if not matches:
            raise NotFound(f"Transaction {reference} not found", "TRANSACTION_NOT_FOUND")
        return Transaction.from_dict(matches[0])

    def get_daily_transaction_total(self, savings_account_id: str, transaction_type: TransactionType,
                                    as_of: Optional[datetime] = None) -> Decimal:
        """Sum of COMPLETED amounts of one type on the account during the UTC day of ``as_of``"""
        start, end = _day_bounds(as_of or datetime.now(timezone.utc))
        return self._completed_total(savings_account_id, transaction_type, start, end)

    def get_monthly_transaction_total(self, savings_account_id: str, transaction_type: TransactionType,
                                      as_of: Optional[datetime] = None) -> Decimal:
        """Sum of COMPLETED amounts of one type on the account during the calendar month of ``as_of``"""
        start, end = _month_bounds(as_of or datetime.now(timezone.utc))
        return self._completed_total(savings_account_id, transaction_type, start, end)

    def _completed_total(self, savings_account_id: str, transaction_type: TransactionType,
                         start: datetime, end: datetime) -> Decimal:
        rows = self.storage.find(self.table_name, {
            "savings_account_id": savings_account_id,
            "transaction_type": transaction_type,
            "status": TransactionStatus.COMPLETED,
        })
        total = ZERO
        for row in rows:
            created_at = datetime.fromisoformat(row['created_at'])
            if start <= created_at < end:
                total += Decimal(row['amount'])
        return total

    def get_average_monthly_transactions(self, user_id: str, as_of: Optional[datetime] = None) -> Decimal:
        """Average COMPLETED transaction amount over the last three months"""
        as_of = as_of or datetime.now(timezone.utc)
        since = add_months(as_of, -3)
        amounts = [
            Decimal(row['amount'])
            for row in self.storage.find(self.table_name, {
                "user_id": user_id,
                "status": TransactionStatus.COMPLETED,
            })
            if since <= datetime.fromisoformat(row['created_at']) <= as_of
        ]
        if not amounts:
            return ZERO
        return to_amount(sum(amounts) / len(amounts))

    def get_transaction_history(
        self,
        user_id: str,
        transaction_type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        savings_account_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> Page:
        """
        Paginated transaction history for a user, newest first.

        Args:
            user_id: Owner of the transactions
            transaction_type: Optional type filter
            status: Optional status filter
            start_date: Optional inclusive lower bound on created_at (naive values are UTC)
            end_date: Optional inclusive upper bound on created_at
            savings_account_id: Optional account filter
            page: 1-based page number
            limit: Page size

        Returns:
            Page of Transaction objects
        """
        filters: Dict[str, Any] = {"user_id": user_id}
        if transaction_type:
            filters["transaction_type"] = transaction_type
        if status:
            filters["status"] = status
        if savings_account_id:
            filters["savings_account_id"] = savings_account_id

        transactions = [Transaction.from_dict(data) for data in self.storage.find(self.table_name, filters)]

        if start_date:
            start_date = _as_utc(start_date)
            transactions = [t for t in transactions if t.created_at >= start_date]
        if end_date:
            end_date = _as_utc(end_date)
            transactions = [t for t in transactions if t.created_at <= end_date]

        transactions.sort(key=lambda t: (t.created_at, t.transaction_reference), reverse=True)

        page = max(page, 1)
        offset = (page - 1) * limit
        return Page(items=transactions[offset:offset + limit], total=len(transactions), page=page, limit=limit)

    def _generate_reference(self, now: datetime) -> str:
        day = now.strftime("%Y%m%d")
        sequence = self.storage.next_sequence(f"transaction_reference:{day}")
        return f"TXN-{day}-{sequence:05d}"

    def _save_transaction(self, transaction: Transaction) -> None:
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
