"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from config import Config
from utils.exceptions import InvalidAmount

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    MONEY_PRECISION = Decimal(1).scaleb(-Config.MONEY_DECIMAL_PLACES)
    # Numeric(38, 8) ledger columns leave 30 integer digits
    MAX_AMOUNT = Decimal(10) ** (38 - Config.MONEY_DECIMAL_PLACES)
    ZERO = Decimal("0")

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Convert a numeric value to Decimal; garbage input is an error, never zero"""
        if value is None or isinstance(value, bool):
            raise InvalidAmount(f"Missing or non-numeric amount for {context}")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value))
            except (InvalidOperation, ValueError) as e:
                logger.warning(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
                raise InvalidAmount(f"Invalid amount {value!r} for {context}")

        if not decimal_value.is_finite():
            raise InvalidAmount(f"Non-finite amount {value!r} for {context}")
        return decimal_value

    @classmethod
    def quantize(cls, amount: Numeric, context: str = "monetary") -> Decimal:
        """Quantize to ledger precision; amounts the ledger columns cannot hold are rejected"""
        value = cls.to_decimal(amount, context)
        if abs(value) >= cls.MAX_AMOUNT:
            raise InvalidAmount(f"Amount {value} out of range for {context}")
        try:
            return value.quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            logger.warning(f"Amount {value} cannot be represented at ledger precision in context {context}")
            raise InvalidAmount(f"Amount {value} out of range for {context}")

    @classmethod
    def positive(cls, amount: Numeric, context: str = "monetary") -> Decimal:
        """Quantize and require a strictly positive amount"""
        value = cls.quantize(amount, context)
        if value <= cls.ZERO:
            raise InvalidAmount(f"Amount must be positive for {context}, got {value}")
        return value

    @classmethod
    def percentage_of(cls, amount: Numeric, percentage: Numeric) -> Decimal:
        """Compute percentage of amount at ledger precision"""
        value = cls.to_decimal(amount) * cls.to_decimal(percentage) / Decimal("100")
        return value.quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def round_half_up(cls, value: Numeric) -> int:
        """Round to the nearest integer, halves away from zero"""
        return int(cls.to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
