"""
Monetary decimal tests
"""

from decimal import Decimal

import pytest

from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import InvalidAmount


class TestQuantize:

    def test_rounds_half_up_to_ledger_precision(self):
        assert MonetaryDecimal.quantize("0.123456785") == Decimal("0.12345679")
        assert MonetaryDecimal.quantize(10) == Decimal("10.00000000")

    def test_largest_representable_amount(self):
        amount = "9" * 20 + ".12345678"
        assert MonetaryDecimal.quantize(amount) == Decimal(amount)

    @pytest.mark.parametrize("amount", ["1e25", "-1e25", "1" + "0" * 29, "1e30", "1e100"])
    def test_out_of_range_is_invalid_amount(self, amount):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.quantize(amount, "agreed amount")

    @pytest.mark.parametrize("amount", [None, True, "abc", "NaN", "Infinity"])
    def test_garbage_is_invalid_amount(self, amount):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.quantize(amount)

    def test_positive_rejects_zero_and_negative(self):
        for amount in ("0", "-5"):
            with pytest.raises(InvalidAmount):
                MonetaryDecimal.positive(amount)
