"""
Tests for notification dispatchers
"""

import logging
import pytest
import requests
from unittest.mock import Mock

from fincore.notifications import (
    LogNotificationDispatcher, NotificationDispatcher, NotificationTemplate,
    WebhookNotificationDispatcher, dispatch_safely
)


class TestWebhookNotificationDispatcher:
    """Test HTTP delivery"""

    def setup_method(self):
        self.session = Mock(spec=requests.Session)
        self.dispatcher = WebhookNotificationDispatcher(
            "https://hooks.example.com/notify", timeout=2.5, session=self.session
        )

    def test_posts_json_payload(self):
        self.dispatcher.send_template(
            NotificationTemplate.DEPOSIT_SUCCESS, ["ada@example.com"], {"amount": "RWF 100.00"}
        )

        self.session.post.assert_called_once()
        args, kwargs = self.session.post.call_args
        assert args[0] == "https://hooks.example.com/notify"
        assert kwargs["timeout"] == 2.5
        payload = kwargs["json"]
        assert payload["template"] == "DEPOSIT_SUCCESS"
        assert payload["recipients"] == ["ada@example.com"]
        assert payload["data"] == {"amount": "RWF 100.00"}
        assert "timestamp" in payload
        self.session.post.return_value.raise_for_status.assert_called_once()

    def test_http_error_propagates(self):
        self.session.post.return_value.raise_for_status.side_effect = requests.HTTPError("502")

        with pytest.raises(requests.HTTPError):
            self.dispatcher.send_template(NotificationTemplate.LOAN_DISBURSED, ["ada@example.com"], {})


class TestLogNotificationDispatcher:
    """Test log-only delivery"""

    def test_logs_each_recipient(self, caplog):
        logger = logging.getLogger("tests.notifications")
        dispatcher = LogNotificationDispatcher(logger)

        with caplog.at_level(logging.INFO, logger="tests.notifications"):
            dispatcher.send_template(NotificationTemplate.REPAYMENT_REMINDER, ["a@example.com", "b@example.com"], {})

        messages = [r.getMessage() for r in caplog.records]
        assert messages.count("Notification REPAYMENT_REMINDER") == 2

    def test_recipient_logged_as_address_not_user_id(self, caplog):
        logger = logging.getLogger("tests.notifications")
        dispatcher = LogNotificationDispatcher(logger)

        with caplog.at_level(logging.INFO, logger="tests.notifications"):
            dispatcher.send_template(NotificationTemplate.LOAN_APPROVED, ["ada@example.com"], {"loan_number": "LN-2024-00001"})

        record = caplog.records[0]
        assert record.extra == {"recipient": "ada@example.com", "data": {"loan_number": "LN-2024-00001"}}
        assert not hasattr(record, "user_id")


class TestDispatchSafely:
    """Test that delivery failures never escape"""

    def setup_method(self):
        self.logger = logging.getLogger("tests.dispatch")

    def test_success(self):
        dispatcher = Mock(spec=NotificationDispatcher)
        assert dispatch_safely(dispatcher, self.logger, NotificationTemplate.LOAN_APPROVED, ["x@example.com"], {})
        dispatcher.send_template.assert_called_once_with(
            NotificationTemplate.LOAN_APPROVED, ["x@example.com"], {}
        )

    def test_failure_is_logged_and_swallowed(self, caplog):
        dispatcher = Mock(spec=NotificationDispatcher)
        dispatcher.send_template.side_effect = ConnectionError("unreachable")

        with caplog.at_level(logging.ERROR, logger="tests.dispatch"):
            result = dispatch_safely(dispatcher, self.logger, NotificationTemplate.LOAN_APPROVED, ["x@example.com"], {})

        assert result is False
        assert "Failed to send LOAN_APPROVED notification" in caplog.text

    def test_no_dispatcher(self):
        assert dispatch_safely(None, self.logger, NotificationTemplate.LOAN_APPROVED, [], {}) is False
