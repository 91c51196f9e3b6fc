"""
Tests for system wiring, configuration and structured logging
"""

import json
import logging
import pytest
from decimal import Decimal
from unittest.mock import patch

from fincore.config import FincoreConfig
from fincore.errors import ValidationError
from fincore.identity import KYCStatus
from fincore.logging_config import JSONFormatter, log_action
from fincore.notifications import LogNotificationDispatcher, WebhookNotificationDispatcher
from fincore.storage import InMemoryStorage
from fincore.system import FincoreSystem


class TestFincoreSystem:
    """Test component wiring"""

    def test_defaults(self):
        system = FincoreSystem(config=FincoreConfig(database_url="memory://"))

        assert isinstance(system.storage, InMemoryStorage)
        assert isinstance(system.notifications, LogNotificationDispatcher)
        assert system.loans.savings is system.savings
        assert system.savings.ledger is system.ledger
        system.close()

    def test_webhook_dispatcher_when_url_configured(self):
        config = FincoreConfig(notification_webhook_url="https://hooks.example.com/fincore", notification_timeout=1.5)

        system = FincoreSystem(storage=InMemoryStorage(), config=config)

        assert isinstance(system.notifications, WebhookNotificationDispatcher)
        assert system.notifications.timeout == 1.5

    def test_config_from_environment(self, monkeypatch):
        monkeypatch.setenv("FINCORE_AUTO_APPROVAL_THRESHOLD", "75000")
        monkeypatch.setenv("FINCORE_CURRENCY", "KES")

        config = FincoreConfig()

        assert config.auto_approval_threshold == Decimal("75000")
        assert config.currency == "KES"

    def test_onboard_customer(self):
        system = FincoreSystem(storage=InMemoryStorage())

        user, savings_account, credit_account = system.onboard_customer(
            "ada@example.com", "Ada", "Lovelace", credit_score=500, kyc_status=KYCStatus.VERIFIED
        )

        assert savings_account.user_id == user.id
        assert credit_account.user_id == user.id
        assert user.customer_profile.credit_score == 500

    def test_onboarding_is_atomic(self):
        """A failure opening the credit facility leaves no user or savings account behind"""
        system = FincoreSystem(storage=InMemoryStorage())

        with patch.object(system.credit, "create_credit_account", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                system.onboard_customer("ada@example.com", "Ada", "Lovelace")

        assert system.users.list_users() == []
        assert system.storage.count("savings_accounts") == 0

    def test_duplicate_email_rejected(self):
        system = FincoreSystem(storage=InMemoryStorage())
        system.onboard_customer("ada@example.com", "Ada", "Lovelace")

        with pytest.raises(ValidationError):
            system.onboard_customer("ada@example.com", "Ada", "Again")
        assert len(system.users.list_users()) == 1


class TestStructuredLogging:
    """Test JSON log output"""

    def test_json_formatter_includes_action_fields(self):
        logger = logging.getLogger("tests.structured")
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Capture()
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            log_action(
                logger, "info", "Loan LN-2024-00001 disbursed",
                user_id="u1", action="loan_disbursed", resource="loan:l1",
                extra={"principal": "100000.00"}
            )
        finally:
            logger.removeHandler(handler)

        entry = json.loads(JSONFormatter().format(records[0]))
        assert entry["message"] == "Loan LN-2024-00001 disbursed"
        assert entry["action"] == "loan_disbursed"
        assert entry["resource"] == "loan:l1"
        assert entry["extra"] == {"principal": "100000.00"}
        assert "correlation_id" not in entry
