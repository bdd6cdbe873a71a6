"""
Decimal Precision Utilities for Token Amounts
Enforces Decimal-only arithmetic between human amounts and on-chain base units
"""

import logging
from decimal import Decimal, ROUND_CEILING, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Tuple, Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 50

Numeric = Union[str, int, float, Decimal]

WEI_PER_ETH = Decimal(10) ** 18


class TokenAmount:
    """Conversions between Decimal amounts and integer base units"""

    LEDGER_PRECISION = Decimal("0.000000000000000001")  # matches Numeric(38, 18)

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "amount") -> Decimal:
        """Convert any numeric value to Decimal; invalid input raises ValueError"""
        if isinstance(value, Decimal):
            result = value
        else:
            try:
                # str() first to avoid float artefacts
                result = Decimal(str(value))
            except (InvalidOperation, TypeError, ValueError) as e:
                logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
                raise ValueError(f"Invalid {context}: {value!r}") from e

        if not result.is_finite():
            raise ValueError(f"Invalid {context}: {value!r}")
        return result

    @classmethod
    def quantize(cls, amount: Numeric, decimals: int, rounding=ROUND_HALF_UP) -> Decimal:
        exponent = Decimal(1).scaleb(-decimals)
        return cls.to_decimal(amount).quantize(exponent, rounding=rounding)

    @classmethod
    def to_base_units(cls, amount: Numeric, decimals: int) -> int:
        """Human amount -> integer base units, truncating sub-unit dust"""
        scaled = cls.to_decimal(amount) * (Decimal(10) ** decimals)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))

    @classmethod
    def from_base_units(cls, raw: int, decimals: int) -> Decimal:
        return Decimal(int(raw)) / (Decimal(10) ** decimals)

    @classmethod
    def eth_to_wei(cls, amount: Numeric) -> int:
        return cls.to_base_units(amount, 18)

    @classmethod
    def wei_to_eth(cls, wei: int) -> Decimal:
        return cls.from_base_units(wei, 18)


def split_deposit_fee(gross: Numeric, fee_percentage: Numeric, decimals: int = 6) -> Tuple[Decimal, Decimal]:
    """
    Split a gross allocation into (net, fee).

    The fee is rounded to the token's precision and the net is the remainder,
    so net + fee always equals gross.
    """
    gross_amount = TokenAmount.to_decimal(gross, "gross amount")
    pct = TokenAmount.to_decimal(fee_percentage, "fee percentage")
    if gross_amount <= 0:
        raise ValueError(f"Gross amount must be positive, got {gross_amount}")
    if pct < 0 or pct >= 100:
        raise ValueError(f"Fee percentage must be in [0, 100), got {pct}")

    fee = TokenAmount.quantize(gross_amount * pct / Decimal(100), decimals)
    net = gross_amount - fee
    return net, fee


def with_buffer(value: int, buffer_percent: Numeric) -> int:
    """Inflate an integer quantity (gas, wei) by a percentage, rounding up"""
    pct = TokenAmount.to_decimal(buffer_percent, "buffer percent")
    inflated = Decimal(int(value)) * (Decimal(100) + pct) / Decimal(100)
    return int(inflated.to_integral_value(rounding=ROUND_CEILING))
