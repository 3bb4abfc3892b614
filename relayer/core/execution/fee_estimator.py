"""
Fee estimation for relay submissions.

Turns the network's reported fee conditions into the price the relay bids,
with floors for networks whose snapshots under-report the inclusion price
and linear escalation across retries.
"""

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from relayer.config import GWEI, Settings

from .errors import RelayError
from .models import FeeSettings, FeeSnapshot

if TYPE_CHECKING:
    from relayer.providers.base import LedgerClient


logger = logging.getLogger(__name__)


# Bid used when the network cannot be asked for its conditions
FALLBACK_GAS_PRICE_WEI = 100 * GWEI


class FeeEstimator:
    """
    Computes FeeSettings for one submission attempt.

    Policy:
    - Two-part networks: max(gas price, base fee) x reliability factor for the
      max fee, reported tip for the priority fee, both floored.
    - Single-price networks: gas price x reliability factor, floored.
    - Attempt k > 1 multiplies every price by k so a retry outbids the
      attempt already broadcast.
    - No conditions at all: FALLBACK_GAS_PRICE_WEI, escalated the same way.
    """

    def __init__(
        self,
        reliability_factor: float = 1.5,
        min_gas_price_wei: int = 30 * GWEI,
        min_max_fee_wei: int = 30 * GWEI,
        min_priority_fee_wei: int = 30 * GWEI,
        fallback_gas_price_wei: int = FALLBACK_GAS_PRICE_WEI,
    ):
        if reliability_factor < 1:
            raise ValueError("reliability_factor must be at least 1")
        self.reliability_factor = Decimal(str(reliability_factor))
        self.min_gas_price_wei = min_gas_price_wei
        self.min_max_fee_wei = min_max_fee_wei
        self.min_priority_fee_wei = min_priority_fee_wei
        self.fallback_gas_price_wei = fallback_gas_price_wei

    @classmethod
    def from_settings(cls, settings: Settings) -> "FeeEstimator":
        return cls(
            reliability_factor=settings.fee_reliability_factor,
            min_gas_price_wei=settings.min_gas_price_wei,
            min_max_fee_wei=settings.min_max_fee_wei,
            min_priority_fee_wei=settings.min_priority_fee_wei,
        )

    def _scale(self, value: int) -> int:
        return int(Decimal(value) * self.reliability_factor)

    def estimate(
        self,
        conditions: Optional[FeeSnapshot],
        attempt: int = 1,
        gas_limit: int = 0,
    ) -> FeeSettings:
        """
        Compute fee settings for an attempt.

        Args:
            conditions: Current network fee snapshot, or None when unavailable
            attempt: 1-based attempt number
            gas_limit: Gas limit to carry on the settings

        Returns:
            FeeSettings for this attempt
        """
        escalation = max(attempt, 1)

        if conditions is None or (conditions.gas_price is None and conditions.base_fee is None):
            return FeeSettings(
                limit=gas_limit,
                unit_price=self.fallback_gas_price_wei * escalation,
                fallback=True,
            )

        if conditions.is_two_part:
            foundation = max(conditions.gas_price or 0, conditions.base_fee or 0)
            max_fee = max(self._scale(foundation), self.min_max_fee_wei)
            priority_fee = max(conditions.max_priority_fee or 0, self.min_priority_fee_wei)
            max_fee = max(max_fee, priority_fee)
            return FeeSettings(
                limit=gas_limit,
                max_fee=max_fee * escalation,
                max_priority_fee=priority_fee * escalation,
            )

        unit_price = max(self._scale(conditions.gas_price or 0), self.min_gas_price_wei)
        return FeeSettings(limit=gas_limit, unit_price=unit_price * escalation)

    async def resolve(
        self,
        ledger: "LedgerClient",
        attempt: int = 1,
        gas_limit: int = 0,
    ) -> FeeSettings:
        """Read the ledger's fee conditions and estimate; never raises on a failed read."""
        conditions: Optional[FeeSnapshot]
        try:
            conditions = await ledger.fee_conditions()
        except RelayError as e:
            logger.warning(f"Fee conditions unavailable, using fallback price: {e}")
            conditions = None
        return self.estimate(conditions, attempt=attempt, gas_limit=gas_limit)
