"""Date manipulation utilities"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Floor of elapsed days; negative spans count as 0"""
    return max((as_utc(later) - as_utc(earlier)) // timedelta(days=1), 0)


def period_key(moment: datetime) -> str:
    """Usage period bucket, e.g. '2026-10'"""
    return as_utc(moment).strftime("%Y-%m")
