"""Timezone helpers shared by the cycle engine, triggers and quick control."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEZONE = 'Australia/Sydney'
MINUTES_PER_DAY = 24 * 60


@dataclass
class LocalTime:
    """Wall-clock components in a user's timezone."""
    hour: int
    minute: int
    second: int
    day: int
    month: int
    year: int
    day_of_week: int  # 0 = Sunday
    timezone: str

    @property
    def minutes(self) -> int:
        return self.hour * 60 + self.minute

    def date_key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"


def resolve_timezone(tz_name: Optional[str]) -> ZoneInfo:
    """Return a ZoneInfo for ``tz_name``, falling back to Australia/Sydney."""
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            _LOGGER.warning(f"Invalid timezone '{tz_name}', falling back to {DEFAULT_TIMEZONE}: {e}")
    return ZoneInfo(DEFAULT_TIMEZONE)


def get_user_time(tz_name: Optional[str], now: Optional[datetime] = None) -> LocalTime:
    """
    Get the current wall-clock time for a user.

    Args:
        tz_name: IANA timezone name (None or invalid falls back to Australia/Sydney)
        now: Aware datetime to convert (defaults to the current instant)
    """
    tz = resolve_timezone(tz_name)
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)

    # Some formatters report midnight as hour 24
    hour = local.hour % 24

    return LocalTime(
        hour=hour,
        minute=local.minute,
        second=local.second,
        day=local.day,
        month=local.month,
        year=local.year,
        day_of_week=(local.weekday() + 1) % 7,
        timezone=str(tz.key),
    )


def parse_hhmm(value: Optional[str], default: str = '00:00') -> int:
    """Convert an 'HH:MM' string into minutes since midnight."""
    text = (value or default).strip()
    try:
        hours, minutes = text.split(':')[:2]
        return (int(hours) % 24) * 60 + int(minutes)
    except ValueError:
        _LOGGER.warning(f"Invalid time '{value}', using {default}")
        hours, minutes = default.split(':')
        return int(hours) * 60 + int(minutes)


def format_hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def in_window(current_minutes: int, start_minutes: int, end_minutes: int) -> bool:
    """Check a [start, end) window in minutes since midnight, wrapping past midnight if start > end."""
    if start_minutes <= end_minutes:
        return start_minutes <= current_minutes < end_minutes
    return current_minutes >= start_minutes or current_minutes < end_minutes


def now_ms() -> int:
    return int(time.time() * 1000)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the models store datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
