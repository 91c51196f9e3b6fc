"""
Savings account tiers and their limits.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict


class AccountTier(Enum):
    """Savings account tiers"""
    BASIC = "basic"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


@dataclass(frozen=True)
class TierLimits:
    """Per-tier transaction ceilings and interest rate (percent)"""
    daily_deposit: Decimal
    daily_withdrawal: Decimal
    monthly_withdrawal: Decimal
    interest_rate: Decimal


DEFAULT_TIER_LIMITS: Dict[AccountTier, TierLimits] = {
    AccountTier.BASIC: TierLimits(
        daily_deposit=Decimal('100000'),
        daily_withdrawal=Decimal('50000'),
        monthly_withdrawal=Decimal('500000'),
        interest_rate=Decimal('5.0'),
    ),
    AccountTier.SILVER: TierLimits(
        daily_deposit=Decimal('500000'),
        daily_withdrawal=Decimal('200000'),
        monthly_withdrawal=Decimal('2000000'),
        interest_rate=Decimal('5.5'),
    ),
    AccountTier.GOLD: TierLimits(
        daily_deposit=Decimal('2000000'),
        daily_withdrawal=Decimal('1000000'),
        monthly_withdrawal=Decimal('10000000'),
        interest_rate=Decimal('6.0'),
    ),
    AccountTier.PLATINUM: TierLimits(
        daily_deposit=Decimal('10000000'),
        daily_withdrawal=Decimal('5000000'),
        monthly_withdrawal=Decimal('50000000'),
        interest_rate=Decimal('7.0'),
    ),
}
