"""
Tests for money helpers and the injectable clock
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from loan_ledger.clock import FixedClock, SystemClock, parse_date
from loan_ledger.errors import ValidationError
from loan_ledger.money import format_amount, quantize, round_money, to_decimal


class TestToDecimal:
    """Test caller input conversion"""

    @pytest.mark.parametrize("value,expected", [
        ("1000.50", Decimal('1000.50')),
        (" 12 ", Decimal('12')),
        (7, Decimal('7')),
        (0.1, Decimal('0.1')),
        (Decimal('3.3333'), Decimal('3.3333')),
    ])
    def test_valid(self, value, expected):
        assert to_decimal(value) == expected

    @pytest.mark.parametrize("value", [None, True, "abc", "", "NaN", "-Infinity"])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            to_decimal(value, "amount")

    def test_error_names_field(self):
        with pytest.raises(ValidationError) as exc:
            to_decimal("abc", "principal")
        assert "principal" in exc.value.message


class TestRounding:
    """Half-up rounding"""

    def test_round_money_half_up(self):
        assert round_money(Decimal('0.005')) == Decimal('0.01')
        assert round_money(Decimal('2.675')) == Decimal('2.68')
        assert round_money(Decimal('-0.005')) == Decimal('-0.01')

    def test_quantize(self):
        assert quantize(Decimal('88.84878867'), 4) == Decimal('88.8488')
        assert quantize(Decimal('88.84878867'), 0) == Decimal('89')

    def test_format_amount(self):
        assert format_amount(Decimal('1016.1856')) == "1016.19"
        assert format_amount(Decimal('0')) == "0.00"
        assert format_amount(Decimal('150')) == "150.00"


class TestClock:
    """Test the time sources"""

    def test_system_clock_is_utc(self):
        assert SystemClock().now().tzinfo == timezone.utc

    def test_fixed_clock(self):
        clock = FixedClock(datetime(2024, 1, 31, 23, 0, tzinfo=timezone.utc))
        assert clock.today() == date(2024, 1, 31)
        assert clock.advance(hours=2).date() == date(2024, 2, 1)
        assert clock.today() == date(2024, 2, 1)

    def test_naive_datetimes_become_utc(self):
        clock = FixedClock(datetime(2024, 1, 1))
        assert clock.now().tzinfo == timezone.utc
        clock.set(datetime(2024, 6, 1))
        assert clock.now() == datetime(2024, 6, 1, tzinfo=timezone.utc)


class TestParseDate:
    """Test date inputs"""

    @pytest.mark.parametrize("value,expected", [
        ("2024-03-02", date(2024, 3, 2)),
        ("2024-03-02T10:00:00Z", date(2024, 3, 2)),
        (date(2024, 3, 2), date(2024, 3, 2)),
        (datetime(2024, 3, 2, 8, 0), date(2024, 3, 2)),
        (None, None),
        ("  ", None),
    ])
    def test_valid(self, value, expected):
        assert parse_date(value) == expected

    @pytest.mark.parametrize("value", ["02/03/2024", "2024-13-01", 20240302])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            parse_date(value, "paid_on")
