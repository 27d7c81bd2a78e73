"""
Fixed-Point Sale Arithmetic

All amounts are integers in the smallest unit of their ledger and every division floors.
The sale price is the number of base-currency units one whole sale token costs, so a
payment of `value` base units buys

    value * 10**token_decimals // price_in_base_units

token units. The service fee is a basis-point cut of the raised base currency; the fee
is floored and the owner receives the exact remainder, so fee + owner == raised.
"""
from typing import Tuple

from mcp_sale_escrow.config import BASIS_POINTS
from mcp_sale_escrow.errors import ValidationError
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


def calculate_tokens_bought(value: int, price_in_base_units: int, token_decimals: int) -> int:
    """
    Converts a base-currency payment into sale token units.

    Args:
        value: Payment in base-currency units.
        price_in_base_units: Cost of one whole sale token in base-currency units.
        token_decimals: Decimals of the sale token ledger.

    Returns:
        Token units bought, floored.

    Raises:
        ValidationError: If the value is negative or the price is not positive.
    """
    if value < 0:
        raise ValidationError("Payment value can not be negative")
    if price_in_base_units <= 0:
        raise ValidationError("Token price must be positive")
    tokens = value * 10 ** token_decimals // price_in_base_units
    logger.debug(f"Payment of {value} base units at price {price_in_base_units} buys {tokens} token units")
    return tokens


def split_earnings(raised: int, fee_rate_bps: int) -> Tuple[int, int]:
    """Returns (fee_amount, owner_amount) for the raised base currency."""
    if raised < 0:
        raise ValidationError("Raised amount can not be negative")
    if fee_rate_bps < 0 or fee_rate_bps > BASIS_POINTS:
        raise ValidationError(f"Fee rate must be between 0 and {BASIS_POINTS} basis points")
    fee_amount = raised * fee_rate_bps // BASIS_POINTS
    return fee_amount, raised - fee_amount


def calculate_leftover(deposited: int, sold: int) -> int:
    """Deposited tokens that were never sold."""
    return max(0, deposited - sold)
