"""
System wiring

Builds every engine component over one shared storage and unit of work.
"""

from decimal import Decimal
from typing import Dict, Optional

from .config import FincoreConfig, get_config
from .credit import CreditFacilityManager
from .identity import StorageUserDirectory, UserDirectory
from .ledger import TransactionLedger
from .loans import LoanManager
from .notifications import (
    LogNotificationDispatcher, NotificationDispatcher, WebhookNotificationDispatcher
)
from .savings import SavingsManager
from .schedule import RepaymentScheduleGenerator
from .storage import StorageInterface, create_storage
from .tiers import AccountTier, TierLimits
from .unit_of_work import UnitOfWork


class FincoreSystem:
    """Ledger and loan engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[FincoreConfig] = None,
        users: Optional[UserDirectory] = None,
        notifications: Optional[NotificationDispatcher] = None,
        tier_limits: Optional[Dict[AccountTier, TierLimits]] = None,
        interest_rates: Optional[Dict[int, Decimal]] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.unit_of_work = UnitOfWork(self.storage)
        self.users = users or StorageUserDirectory(self.storage)
        self.notifications = notifications or self._create_dispatcher()

        self.ledger = TransactionLedger(self.storage, self.users)
        self.savings = SavingsManager(
            self.storage, self.unit_of_work, self.ledger, self.users,
            tier_limits=tier_limits, notifications=self.notifications, config=self.config
        )
        self.credit = CreditFacilityManager(
            self.storage, self.unit_of_work, self.users,
            savings=self.savings, ledger=self.ledger, config=self.config
        )
        self.schedule = RepaymentScheduleGenerator(self.storage, config=self.config)
        self.loans = LoanManager(
            self.storage, self.unit_of_work, self.users, self.ledger,
            self.savings, self.credit, self.schedule,
            notifications=self.notifications, interest_rates=interest_rates, config=self.config
        )

    def _create_dispatcher(self) -> NotificationDispatcher:
        """Webhook delivery when a URL is configured, log-only otherwise"""
        if self.config.notification_webhook_url:
            return WebhookNotificationDispatcher(
                self.config.notification_webhook_url, timeout=self.config.notification_timeout
            )
        return LogNotificationDispatcher()

    def onboard_customer(self, email: str, first_name: str, last_name: str, **profile):
        """
        Register a customer with a savings account and a credit facility.

        Returns (user, savings_account, credit_account).
        """
        if not isinstance(self.users, StorageUserDirectory):
            raise TypeError("onboard_customer needs the storage-backed user directory")
        with self.unit_of_work.atomic():
            user = self.users.create_customer(email, first_name, last_name, **profile)
            savings_account = self.savings.create_savings_account(user.id)
            credit_account = self.credit.create_credit_account(user.id)
        return user, savings_account, credit_account

    def close(self) -> None:
        self.storage.close()
