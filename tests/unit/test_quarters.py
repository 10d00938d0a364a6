"""
Unit tests for calendar quarter helpers.
"""
import pytest
from datetime import date

from copytrader.billing.quarters import (
    is_quarter_end_day,
    is_quarter_start_day,
    parse_quarter_label,
    previous_quarter,
    quarter,
    quarter_for,
)


def test_quarter_bounds():
    q = quarter(2026, 1)
    assert q.label == "2026-Q1"
    assert q.start == date(2026, 1, 1)
    assert q.end == date(2026, 3, 31)
    assert q.total_days == 90


def test_fourth_quarter_ends_on_december_31():
    q = quarter(2026, 4)
    assert q.end == date(2026, 12, 31)
    assert q.total_days == 92


def test_leap_year_first_quarter():
    assert quarter(2028, 1).total_days == 91


def test_quarter_for_day():
    assert quarter_for(date(2026, 5, 14)).label == "2026-Q2"
    assert quarter_for(date(2026, 9, 30)).label == "2026-Q3"


def test_previous_quarter_wraps_year():
    assert previous_quarter(date(2026, 1, 1)).label == "2025-Q4"
    assert previous_quarter(date(2026, 7, 1)).label == "2026-Q2"


def test_parse_quarter_label():
    q = parse_quarter_label("2025-Q3")
    assert (q.year, q.number) == (2025, 3)
    assert q.start == date(2025, 7, 1)


@pytest.mark.parametrize("label", ["2025-Q5", "2025Q1", "Q1-2025", ""])
def test_parse_quarter_label_rejects_garbage(label):
    with pytest.raises(ValueError):
        parse_quarter_label(label)


def test_quarter_start_and_end_days():
    assert is_quarter_start_day(date(2026, 4, 1))
    assert not is_quarter_start_day(date(2026, 5, 1))
    assert is_quarter_end_day(date(2026, 6, 30))
    assert not is_quarter_end_day(date(2026, 6, 29))
