import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


_TIME_OF_DAY = re.compile(r"^(\d{1,2}):(\d{1,2})$")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def local_date(moment: datetime) -> date:
    """Calendar day of ``moment`` in the configured timezone.

    Naive values are stored timestamps and are read as UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(ZoneInfo(get_settings().timezone)).date()


def month_key(d: date) -> str:
    """Budget bucket key for the month containing ``d`` ("YYYY-MM")."""
    return f"{d.year:04d}-{d.month:02d}"


def month_bounds(d: date) -> tuple[date, date]:
    first = d.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return first, next_month - date.resolution


def previous_day(today: date) -> Period:
    yesterday = today - timedelta(days=1)
    return Period("previous_day", yesterday, yesterday)


def parse_time_of_day(value: Optional[str]) -> Optional[time]:
    """Parse an "HH:MM" string. Returns None for anything malformed."""
    if not isinstance(value, str):
        return None
    match = _TIME_OF_DAY.match(value.strip())
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return time(hour, minute)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "yesterday":
        return previous_day(today)
    if period == "last_month":
        last_month_start, last_month_end = month_bounds(
            today.replace(day=1) - date.resolution
        )
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    first, last = month_bounds(today)
    return Period("this_month", first, last)
