"""Tests for display formatting. Percentages are stored as fractions."""

import pytest

from pacurhoja.formats import format_number
from pacurhoja.models import FormatTag


@pytest.mark.parametrize(
    ("value", "expected"),
    [(14.0, "14"), (2.5, "2.5"), (1 / 3, "0.33"), (-0.001, "0"), (1234567.891, "1234567.89"), (-7.25, "-7.25")],
)
def test_general(value: float, expected: str) -> None:
    assert format_number(value) == expected
    assert format_number(value, FormatTag.GENERAL) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [(5, "$5.00"), (1234.5, "$1,234.50"), (-3, "-$3.00"), (0.004, "$0.00")],
)
def test_currency(value: float, expected: str) -> None:
    assert format_number(value, FormatTag.CURRENCY) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0.5, "50%"), (0.125, "12.5%"), (1, "100%"), (0.3333, "33.33%"), (-0.25, "-25%")],
)
def test_percentage(value: float, expected: str) -> None:
    assert format_number(value, FormatTag.PERCENTAGE) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [(1234567.891, "1,234,567.89"), (1000, "1,000"), (999.5, "999.5"), (-1500, "-1,500")],
)
def test_thousands(value: float, expected: str) -> None:
    assert format_number(value, FormatTag.THOUSANDS) == expected


def test_tag_accepts_plain_strings() -> None:
    assert format_number(0.5, FormatTag("Percentage")) == "50%"


def test_percentage_overflow_raises() -> None:
    with pytest.raises(OverflowError):
        format_number(1e307, FormatTag.PERCENTAGE)
