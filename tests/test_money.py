"""Tests for fixed-point money helpers."""

from decimal import Decimal

import pytest

from yield_ledger.exceptions import InvalidAmountError
from yield_ledger.money import ZERO, apply_rate, parse_amount, round_money, sum_money, to_decimal


class TestRoundMoney:
    """Tests for banker's rounding to the cent."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2.345", "2.34"),
            ("2.355", "2.36"),
            ("2.3450001", "2.35"),
            ("-1.005", "-1.00"),
            ("10", "10.00"),
        ],
    )
    def test_half_even(self, value: str, expected: str) -> None:
        """Test ties go to the even cent."""
        assert round_money(Decimal(value)) == Decimal(expected)

    def test_keeps_two_places(self) -> None:
        """Test result always has two decimal places."""
        assert str(round_money(Decimal("5"))) == "5.00"


class TestParseAmount:
    """Tests for raw amount parsing."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            (5000, "5000.00"),
            (0.1, "0.10"),
            ("1,250.50", "1250.50"),
            ("$ 99.999", "100.00"),
            (Decimal("12.345"), "12.34"),
            ("€10", "10.00"),
        ],
    )
    def test_valid(self, raw: object, expected: str) -> None:
        """Test accepted amount formats."""
        assert parse_amount(raw) == Decimal(expected)

    def test_float_has_no_binary_artefacts(self) -> None:
        """Test floats are converted through their string form."""
        assert to_decimal(0.1) + to_decimal(0.2) == Decimal("0.3")

    @pytest.mark.parametrize("raw", [0, -5, "0.001", "-10.00"])
    def test_non_positive_rejected(self, raw: object) -> None:
        """Test zero and negative amounts fail."""
        with pytest.raises(InvalidAmountError, match="positive"):
            parse_amount(raw)

    @pytest.mark.parametrize("raw", ["abc", "", "   ", None, True, "NaN", "Infinity", [1]])
    def test_non_numeric_rejected(self, raw: object) -> None:
        """Test non-numeric input fails with the amount field set."""
        with pytest.raises(InvalidAmountError) as exc_info:
            parse_amount(raw)

        assert exc_info.value.field == "amount"
        assert exc_info.value.code == "invalid_amount"

    @pytest.mark.parametrize("raw", ["1e30", Decimal("1E+30"), 10**16, "10,000,000,000,000.00"])
    def test_oversized_rejected(self, raw: object) -> None:
        """Test amounts beyond the storable range fail as invalid amounts."""
        with pytest.raises(InvalidAmountError, match="must not exceed"):
            parse_amount(raw)

    def test_round_money_out_of_range(self) -> None:
        """Test quantizing a value with too many digits raises InvalidAmountError."""
        with pytest.raises(InvalidAmountError, match="out of range"):
            round_money(Decimal("1e30"))


class TestArithmetic:
    """Tests for summing and rate application."""

    def test_sum_money_empty(self) -> None:
        """Test empty sum is a two-place zero."""
        assert sum_money([]) == ZERO
        assert str(sum_money([])) == "0.00"

    def test_sum_money(self) -> None:
        """Test summing amounts."""
        assert sum_money([Decimal("1.10"), Decimal("2.20")]) == Decimal("3.30")

    def test_apply_rate_rounds_product_only(self) -> None:
        """Test rate keeps precision and only the product is rounded."""
        monthly = Decimal("0.12") / 12
        assert apply_rate(Decimal("10000.00"), monthly) == Decimal("100.00")
        assert apply_rate(Decimal("333.33"), Decimal("0.015")) == Decimal("5.00")
