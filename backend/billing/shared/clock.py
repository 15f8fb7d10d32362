import calendar
from datetime import date, datetime
from zoneinfo import ZoneInfo

from billing.settings import settings


def billing_now(time_zone: str | None = None) -> datetime:
    return datetime.now(ZoneInfo(time_zone or settings.billing_time_zone))


def billing_today(time_zone: str | None = None) -> date:
    return billing_now(time_zone).date()


def add_month(value: date) -> date:
    year = value.year + value.month // 12
    month = value.month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def parse_iso_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None
