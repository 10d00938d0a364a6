"""Calendar quarter arithmetic (Jan-Mar, Apr-Jun, Jul-Sep, Oct-Dec)."""
import re
from dataclasses import dataclass
from datetime import date, timedelta

QUARTER_START_MONTHS = (1, 4, 7, 10)

_LABEL_RE = re.compile(r"^(\d{4})-Q([1-4])$")


@dataclass(frozen=True)
class QuarterInfo:
    label: str  # "2026-Q1"
    year: int
    number: int
    start: date
    end: date

    @property
    def total_days(self) -> int:
        return (self.end - self.start).days + 1


def quarter(year: int, number: int) -> QuarterInfo:
    if number not in (1, 2, 3, 4):
        raise ValueError(f"Quarter number must be 1-4, got {number}")
    start_month = QUARTER_START_MONTHS[number - 1]
    start = date(year, start_month, 1)
    if number == 4:
        end = date(year, 12, 31)
    else:
        end = date(year, start_month + 3, 1) - timedelta(days=1)
    return QuarterInfo(label=f"{year}-Q{number}", year=year, number=number, start=start, end=end)


def quarter_for(day: date) -> QuarterInfo:
    return quarter(day.year, (day.month - 1) // 3 + 1)


def previous_quarter(day: date) -> QuarterInfo:
    """The quarter that ended before the one containing `day`."""
    current = quarter_for(day)
    if current.number == 1:
        return quarter(current.year - 1, 4)
    return quarter(current.year, current.number - 1)


def parse_quarter_label(label: str) -> QuarterInfo:
    match = _LABEL_RE.match(label.strip())
    if not match:
        raise ValueError(f"Invalid quarter label {label!r}, expected e.g. 2026-Q1")
    return quarter(int(match.group(1)), int(match.group(2)))


def is_quarter_start_day(day: date) -> bool:
    return day.day == 1 and day.month in QUARTER_START_MONTHS


def is_quarter_end_day(day: date) -> bool:
    return quarter_for(day).end == day
