from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

# Fixed table so report labels never depend on the server locale.
MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

MILLISECOND = timedelta(milliseconds=1)


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


def month_name(month: int) -> str:
    return MONTH_NAMES[month - 1]


def utc_today(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    if now.tzinfo is not None:
        return now.astimezone(timezone.utc).replace(tzinfo=None)
    return now


def year_period(year: int) -> Period:
    """Jan 1 00:00:00.000 through Dec 31 23:59:59.999 UTC, both inclusive."""
    start = datetime(year, 1, 1)
    end = datetime(year, 12, 31, 23, 59, 59, 999000)
    return Period(f"{year:04d}", start, end)


def month_period(year: int, month: int) -> Period:
    """First instant of the month through its last millisecond, in UTC.

    The end is the first instant of the following month stepped back by one
    millisecond, which gives February 29 in leap years without a day table.
    December ends where its year ends.
    """
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    start = datetime(year, month, 1)
    if month == 12:
        end = year_period(year).end
    else:
        end = datetime(year, month + 1, 1) - MILLISECOND
    return Period(f"{year:04d}-{month:02d}", start, end)
