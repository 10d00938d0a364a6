"""Per-trade performance fee on profitable follower closes."""
from decimal import Decimal
from typing import Optional

from copytrader.domain.models import Fee
from copytrader.monitoring.logger import get_logger
from copytrader.storage import repository

logger = get_logger(__name__)

DEFAULT_FEE_PERCENT = Decimal("2")


def compute_fee(profit: Decimal, fee_percent: Decimal = DEFAULT_FEE_PERCENT) -> Decimal:
    return profit * fee_percent / Decimal("100")


class FeeCalculator:

    def __init__(self, fee_percent: Decimal = DEFAULT_FEE_PERCENT):
        self.fee_percent = fee_percent

    def calculate_fee(self, follower_id: int, position_id: int, profit: Decimal) -> Optional[Fee]:
        """Record a Fee row; nothing is written for zero or negative profit."""
        if profit <= 0:
            logger.debug("No fee, position not profitable", position_id=position_id)
            return None

        fee = repository.insert_fee(
            follower_id=follower_id,
            position_id=position_id,
            profit_amount=profit,
            fee_percent=self.fee_percent,
            fee_amount=compute_fee(profit, self.fee_percent),
        )
        logger.info(
            "FEE_RECORDED",
            follower_id=follower_id,
            position_id=position_id,
            profit=str(profit),
            fee=str(fee.fee_amount),
        )
        return fee
