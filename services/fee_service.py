"""
Fee Service Module

Computes the escrow fee shown in the deal summary. The vault contract deducts
it on-chain; the engine only records it on the trade.
"""

import logging
from decimal import Decimal, ROUND_DOWN

import config

logger = logging.getLogger(__name__)


def is_fees_enabled() -> bool:
    """Check if fee deduction is enabled."""
    return config.ESCROW_FEE_PERCENT > 0


def get_fee_percentage() -> Decimal:
    return config.ESCROW_FEE_PERCENT


def calculate_fee(amount, decimals: int = config.DEFAULT_DECIMALS) -> tuple:
    """
    Calculate the fee amount and remaining amount after fee deduction.

    Args:
        amount: The total amount in token units
        decimals: Token precision; the fee is truncated to it

    Returns:
        tuple: (fee_amount, remaining_amount) as Decimal.
               If fees are disabled, returns (0, amount)
    """
    amount = Decimal(str(amount))
    if not is_fees_enabled():
        return (Decimal("0"), amount)

    fee_percentage = get_fee_percentage()
    quantum = Decimal(1).scaleb(-decimals)
    fee_amount = (amount * fee_percentage / Decimal(100)).quantize(quantum, rounding=ROUND_DOWN)
    remaining_amount = amount - fee_amount

    logger.info(f"[FEE] Calculated {fee_percentage}% fee on {amount}: {fee_amount}")
    return (fee_amount, remaining_amount)
