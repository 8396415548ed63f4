from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, value: Union[date, datetime]) -> bool:
        if isinstance(value, datetime):
            value = value.date()
        return self.start <= value <= self.end


def local_now() -> datetime:
    """Naive wall-clock time in the configured timezone."""
    return datetime.now(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def month_key(value: Union[date, datetime]) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def parse_month_key(key: str) -> date:
    try:
        year_raw, month_raw = key.split("-")
        return date(int(year_raw), int(month_raw), 1)
    except (ValueError, AttributeError) as exc:
        raise ValueError(f"Invalid month key: {key!r}") from exc


def days_in_month(key: str) -> int:
    first = parse_month_key(key)
    return monthrange(first.year, first.month)[1]


def month_period(key: str) -> Period:
    first = parse_month_key(key)
    last = first.replace(day=days_in_month(key))
    return Period(key, first, last)


def is_current_month(key: str, *, today: Optional[date] = None) -> bool:
    today = today or local_today()
    return month_key(today) == key


def is_past_month(key: str, *, today: Optional[date] = None) -> bool:
    today = today or local_today()
    return parse_month_key(key) < today.replace(day=1)


def elapsed_days(key: str, *, today: Optional[date] = None) -> int:
    """Days of `key` that count as observed: up to today for the running month."""
    total = days_in_month(key)
    if is_current_month(key, today=today):
        today = today or local_today()
        return max(1, min(today.day, total))
    return total
