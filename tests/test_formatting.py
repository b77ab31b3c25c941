from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from utils.formatting import formatCurrency, formatRelativeTime

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("amount, expected", [
    (Decimal("12.5"), "$12.50"),
    (Decimal("-80"), "$80.00"),
    ("0", "$0.00"),
    (1234.567, "$1,234.57"),
])
def test_unsigned_currency(amount, expected):
    assert formatCurrency(amount) == expected


@pytest.mark.parametrize("amount, expected", [
    (Decimal("45"), "+$45.00"),
    (Decimal("-0.01"), "-$0.01"),
    (Decimal("0.00"), "$0.00"),
])
def test_signed_currency(amount, expected):
    assert formatCurrency(amount, signed=True) == expected


def test_currency_symbol():
    assert formatCurrency("-3", signed=True, symbol="€") == "-€3.00"


@pytest.mark.parametrize("delta, expected", [
    (timedelta(seconds=20), "just now"),
    (timedelta(minutes=1), "1 minute ago"),
    (timedelta(minutes=5), "5 minutes ago"),
    (timedelta(hours=3, minutes=10), "3 hours ago"),
    (timedelta(days=2), "2 days ago"),
    (timedelta(days=65), "2 months ago"),
    (timedelta(days=800), "2 years ago"),
    (-timedelta(days=2), "in 2 days"),
])
def test_relative_time(delta, expected):
    assert formatRelativeTime(NOW - delta, NOW) == expected


def test_relative_time_from_iso_string():
    assert formatRelativeTime("2024-05-01T10:05:00Z", NOW) == "1 hour ago"


def test_naive_timestamps_are_utc():
    assert formatRelativeTime(datetime(2024, 4, 30, 12, 0), NOW) == "1 day ago"


@pytest.mark.parametrize("value", ["not a date", None, 42])
def test_relative_time_fallback(value):
    assert formatRelativeTime(value, NOW) == "some time ago"
