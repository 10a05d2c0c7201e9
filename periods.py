from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def month_start(moment: datetime) -> datetime:
    return datetime.combine(moment.date().replace(day=1), time.min)


def month_end(moment: datetime) -> datetime:
    last_day = days_in_month(moment.year, moment.month)
    return datetime.combine(moment.date().replace(day=last_day), time.max)


def month_to_date(now: datetime) -> Period:
    return Period("this_month", month_start(now), now)


def previous_month(now: datetime) -> Period:
    first_this = now.date().replace(day=1)
    last_month_end = first_this - date.resolution
    start = datetime.combine(last_month_end.replace(day=1), time.min)
    return Period("last_month", start, month_end(start))


def same_calendar_month(a: datetime, b: datetime) -> bool:
    return a.year == b.year and a.month == b.month


def to_local(moment: datetime, tz: ZoneInfo) -> datetime:
    """Naive UTC -> naive wall-clock time in ``tz``."""
    return moment.replace(tzinfo=timezone.utc).astimezone(tz).replace(tzinfo=None)


def to_utc(moment: datetime, tz: ZoneInfo) -> datetime:
    return moment.replace(tzinfo=tz).astimezone(timezone.utc).replace(tzinfo=None)


def local_month_start(now: datetime, tz: ZoneInfo) -> datetime:
    return to_utc(month_start(to_local(now, tz)), tz)


def local_previous_month(now: datetime, tz: ZoneInfo) -> Period:
    # Bounds are taken in the local calendar and stored back as naive UTC.
    period = previous_month(to_local(now, tz))
    return Period(period.slug, to_utc(period.start, tz), to_utc(period.end, tz))
