"""
Time helpers. Timestamps are stored as naive UTC.
"""
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def gateway_timestamp(utc_offset_hours: int = 3, now: datetime = None) -> str:
    """Fixed-width YYYYMMDDHHMMSS timestamp in the gateway's local time"""
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    local = current.astimezone(timezone(timedelta(hours=utc_offset_hours)))
    return local.strftime("%Y%m%d%H%M%S")


def local_day_start(utc_now: datetime, utc_offset_hours: int = 3) -> datetime:
    """Naive-UTC instant at which the local calendar day containing utc_now began"""
    offset = timedelta(hours=utc_offset_hours)
    local = utc_now + offset
    return local.replace(hour=0, minute=0, second=0, microsecond=0) - offset
