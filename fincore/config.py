"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Optional


class FincoreConfig(BaseSettings):
    """Ledger and loan engine configuration"""

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db or postgresql://...

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Currency (single currency system)
    currency: str = "RWF"

    # Credit facility bounds
    min_credit_limit: Decimal = Decimal("50000")
    max_credit_limit: Decimal = Decimal("10000000")
    savings_multiplier: Decimal = Decimal("2")
    transaction_multiplier: Decimal = Decimal("3")

    # Loan approval rules
    auto_approval_threshold: Decimal = Decimal("50000")
    min_credit_score_auto: int = 300
    min_credit_score_reject: int = 200

    # Collections
    late_fee_grace_period_days: int = 7
    late_fee_fixed: Decimal = Decimal("1000")
    late_fee_percentage: Decimal = Decimal("0.02")
    late_fee_max_percentage: Decimal = Decimal("0.05")
    default_threshold_days: int = 31
    default_credit_score_penalty: int = 50
    min_credit_score: int = 0
    repayment_reminder_days: int = 3

    # Notification configuration
    notification_webhook_url: str = ""  # Empty = log only
    notification_timeout: float = 5.0

    class Config:
        env_prefix = "FINCORE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = FincoreConfig()


def get_config() -> FincoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FincoreConfig:
    """Reload configuration from environment"""
    global config
    config = FincoreConfig()
    return config
