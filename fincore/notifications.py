"""
Notification Dispatch Module

The engine emits template-keyed notifications after money has moved. Delivery
is somebody else's job: a dispatcher either logs the event or hands it to an
HTTP webhook. Dispatch errors never reach the caller of a financial
operation; see ``dispatch_safely``.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

import requests

from .logging_config import get_logger, log_action


class NotificationTemplate(Enum):
    """Templates emitted by the engine"""
    DEPOSIT_SUCCESS = "DEPOSIT_SUCCESS"
    WITHDRAWAL_SUCCESS = "WITHDRAWAL_SUCCESS"
    LOAN_APPROVED = "LOAN_APPROVED"
    LOAN_REJECTED = "LOAN_REJECTED"
    LOAN_DISBURSED = "LOAN_DISBURSED"
    REPAYMENT_RECEIVED = "REPAYMENT_RECEIVED"
    REPAYMENT_REMINDER = "REPAYMENT_REMINDER"
    PAYMENT_OVERDUE = "PAYMENT_OVERDUE"
    LATE_FEE_APPLIED = "LATE_FEE_APPLIED"
    LOAN_DEFAULTED = "LOAN_DEFAULTED"


class NotificationDispatcher(ABC):
    """Sends a template with data to a list of recipient email addresses"""

    @abstractmethod
    def send_template(self, template: NotificationTemplate, recipients: List[str],
                      data: Dict[str, Any]) -> None:
        pass


class LogNotificationDispatcher(NotificationDispatcher):
    """Writes every notification to the log"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger("fincore.notifications")

    def send_template(self, template: NotificationTemplate, recipients: List[str],
                      data: Dict[str, Any]) -> None:
        for recipient in recipients:
            log_action(
                self.logger, "info", f"Notification {template.value}",
                action="notification_sent", resource=f"template:{template.value}",
                extra={"recipient": recipient, "data": data}
            )


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POSTs each notification as JSON to an external endpoint"""

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send_template(self, template: NotificationTemplate, recipients: List[str],
                      data: Dict[str, Any]) -> None:
        payload = {
            "template": template.value,
            "recipients": recipients,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        response = self.session.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()


def dispatch_safely(dispatcher: Optional[NotificationDispatcher], logger: logging.Logger,
                    template: NotificationTemplate, recipients: List[str],
                    data: Dict[str, Any]) -> bool:
    """Send a notification, logging and swallowing any failure. Returns True on success."""
    if dispatcher is None:
        return False
    try:
        dispatcher.send_template(template, recipients, data)
        return True
    except Exception:
        logger.error(f"Failed to send {template.value} notification", exc_info=True)
        return False
