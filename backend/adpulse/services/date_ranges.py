"""
Date range helpers for Meta insights requests.

Insights calls are made in small windows because Meta rejects requests whose
result set is too large; split_date_range produces those windows.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import NamedTuple, Optional, Union
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "America/Sao_Paulo"

METRICS_CHUNK_DAYS = 3
FALLBACK_CHUNK_DAYS = 1

DateLike = Union[date, str]


class DateChunk(NamedTuple):
    since: date
    until: date

    def as_time_range(self) -> dict:
        return {"since": self.since.isoformat(), "until": self.until.isoformat()}


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def split_date_range(start: DateLike, end: DateLike, max_days: int) -> list[DateChunk]:
    """
    Split the inclusive range [start, end] into contiguous chunks of at most
    ``max_days`` days. Returns [] when start is after end.
    """
    if max_days < 1:
        raise ValueError(f"max_days must be >= 1, got {max_days}")

    start_d, end_d = _as_date(start), _as_date(end)
    chunks: list[DateChunk] = []
    current = start_d
    while current <= end_d:
        chunk_end = min(current + timedelta(days=max_days - 1), end_d)
        chunks.append(DateChunk(current, chunk_end))
        current = chunk_end + timedelta(days=1)
    return chunks


def local_today(tz: str = DEFAULT_TIMEZONE, now: Optional[datetime] = None) -> date:
    """Calendar date in the reporting timezone."""
    zone = ZoneInfo(tz)
    current = now.astimezone(zone) if now else datetime.now(zone)
    return current.date()


def local_day_start_utc(day: date, tz: str = DEFAULT_TIMEZONE) -> datetime:
    """Local midnight of ``day`` as a naive UTC datetime, comparable with stored timestamps."""
    start = datetime.combine(day, time.min, ZoneInfo(tz))
    return start.astimezone(timezone.utc).replace(tzinfo=None)


def resolve_date_range(
    preset: Union[str, int], tz: str = DEFAULT_TIMEZONE, now: Optional[datetime] = None
) -> tuple[date, date]:
    """
    Resolve "today", "yesterday" or a number of days back into (start, end),
    evaluated in the reporting timezone. N days back ends today.
    """
    today = local_today(tz, now)
    if preset == "today":
        return today, today
    if preset == "yesterday":
        yesterday = today - timedelta(days=1)
        return yesterday, yesterday

    days = int(preset)
    return today - timedelta(days=days), today
