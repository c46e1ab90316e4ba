from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional, Tuple
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_storage(value: datetime) -> datetime:
    """Columns hold naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_storage(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def local_date(value: datetime, tz: ZoneInfo) -> date:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz).date()


def local_midnight(day: date, tz: ZoneInfo) -> datetime:
    """Start of a calendar day in tz, as naive UTC."""
    return to_storage(datetime.combine(day, time.min, tzinfo=tz))


def day_bounds(day: date, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    return local_midnight(day, tz), local_midnight(day + timedelta(days=1), tz)
