"""
Financial Ledger & Loan Lifecycle Engine

Savings balances, a revolving credit facility and flat-rate loans kept
consistent by atomic units of work, with Decimal money throughout.
"""

__version__ = "1.0.0"

from .errors import (
    FincoreError, NotFound, InvalidState, LimitExceeded, InsufficientFunds, ValidationError
)
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage, create_storage
from .unit_of_work import UnitOfWork
from .identity import User, Role, KYCStatus, CustomerProfile, AdminProfile, StorageUserDirectory
from .ledger import TransactionLedger, Transaction, TransactionType, TransactionStatus
from .savings import SavingsManager, SavingsAccount, AccountStatus, AccountType
from .tiers import AccountTier, TierLimits, DEFAULT_TIER_LIMITS
from .credit import CreditFacilityManager, CreditAccount
from .schedule import RepaymentScheduleGenerator, Repayment, RepaymentStatus
from .loans import LoanManager, Loan, LoanStatus, ApprovalStatus, LOAN_INTEREST_RATES
from .system import FincoreSystem

__all__ = [
    "FincoreError", "NotFound", "InvalidState", "LimitExceeded", "InsufficientFunds", "ValidationError",
    "StorageInterface", "InMemoryStorage", "SQLiteStorage", "create_storage",
    "UnitOfWork",
    "User", "Role", "KYCStatus", "CustomerProfile", "AdminProfile", "StorageUserDirectory",
    "TransactionLedger", "Transaction", "TransactionType", "TransactionStatus",
    "SavingsManager", "SavingsAccount", "AccountStatus", "AccountType",
    "AccountTier", "TierLimits", "DEFAULT_TIER_LIMITS",
    "CreditFacilityManager", "CreditAccount",
    "RepaymentScheduleGenerator", "Repayment", "RepaymentStatus",
    "LoanManager", "Loan", "LoanStatus", "ApprovalStatus", "LOAN_INTEREST_RATES",
    "FincoreSystem",
]
