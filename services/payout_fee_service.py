"""
Payout Fee Policies
Pluggable fee calculation for center payouts: flat (default) or percentage with limits
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any

from config import Config
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)


class PayoutFeePolicy(ABC):
    """Fee deducted from a payout's gross amount; never exceeds the gross"""

    name = "base"

    @abstractmethod
    def _raw_fee(self, amount: int) -> int:
        ...

    def fee(self, amount: int) -> int:
        if amount < 0:
            raise ValidationError(f"Payout amount cannot be negative: {amount}")
        return min(self._raw_fee(amount), amount)

    def breakdown(self, amount: int) -> Dict[str, Any]:
        fee_amount = self.fee(amount)
        return {
            "policy": self.name,
            "amount": amount,
            "fee_amount": fee_amount,
            "net_amount": amount - fee_amount,
        }


class FlatFeePolicy(PayoutFeePolicy):
    """Fixed transfer fee per payout"""

    name = "flat"

    def __init__(self, flat_fee: int = None):
        self.flat_fee = Config.PAYOUT_FLAT_FEE if flat_fee is None else flat_fee
        if self.flat_fee < 0:
            raise ValidationError(f"Flat fee cannot be negative: {self.flat_fee}")

    def _raw_fee(self, amount: int) -> int:
        return self.flat_fee


class PercentageFeePolicy(PayoutFeePolicy):
    """Percentage of the gross, clamped to [min_fee, max_fee]"""

    name = "percentage"

    def __init__(self, percentage: Decimal = None, min_fee: int = None, max_fee: int = None):
        self.percentage = Decimal(str(Config.PAYOUT_PERCENTAGE_FEE if percentage is None else percentage))
        self.min_fee = Config.PAYOUT_MIN_FEE if min_fee is None else min_fee
        self.max_fee = Config.PAYOUT_MAX_FEE if max_fee is None else max_fee

        if self.percentage < 0 or self.min_fee < 0 or self.max_fee < self.min_fee:
            raise ValidationError(
                f"Invalid percentage fee settings: {self.percentage}% "
                f"min={self.min_fee} max={self.max_fee}"
            )
        logger.debug(f"PercentageFeePolicy: {self.percentage}% fee, {self.min_fee}-{self.max_fee} limits")

    def _raw_fee(self, amount: int) -> int:
        percentage_fee = (Decimal(amount) * self.percentage / Decimal("100")).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return int(max(Decimal(self.min_fee), min(percentage_fee, Decimal(self.max_fee))))


def get_fee_policy(policy_name: str = None) -> PayoutFeePolicy:
    """Fee policy selected by PAYOUT_FEE_POLICY"""
    policy_name = (policy_name or Config.PAYOUT_FEE_POLICY).lower()
    if policy_name == FlatFeePolicy.name:
        return FlatFeePolicy()
    if policy_name == PercentageFeePolicy.name:
        return PercentageFeePolicy()
    raise ValidationError(f"Unknown payout fee policy: {policy_name}")
