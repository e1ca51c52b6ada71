"""Calendar-day helpers. All day arithmetic is done in UTC."""

import math
from datetime import date, datetime, timedelta
from typing import List, Tuple

import pytz

MILLISECONDS_PER_DAY = 1000 * 60 * 60 * 24
DATE_FORMAT = "%Y-%m-%d"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(pytz.UTC)


def ensure_utc(value: datetime) -> datetime:
    """Localize naive datetimes to UTC, convert aware ones."""
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def to_epoch_ms(value: datetime) -> int:
    return int(ensure_utc(value).timestamp() * 1000)


def from_epoch_ms(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=pytz.UTC)


def day_key(value) -> str:
    """Format a datetime, date or epoch-ms value as ``YYYY-MM-DD`` (UTC)."""
    if isinstance(value, (int, float)):
        value = from_epoch_ms(int(value))
    if isinstance(value, datetime):
        value = ensure_utc(value).date()
    return value.strftime(DATE_FORMAT)


def parse_day(value: str) -> date:
    return datetime.strptime(value, DATE_FORMAT).date()


def start_of_day(day: date) -> datetime:
    return pytz.UTC.localize(datetime(day.year, day.month, day.day))


def end_of_day(day: date) -> datetime:
    return start_of_day(day) + timedelta(days=1) - timedelta(milliseconds=1)


def yesterday(now: datetime) -> str:
    return day_key(ensure_utc(now) - timedelta(days=1))


def expected_chunk_count(inception: date, now: datetime, max_days: int = 30) -> int:
    """Upstream calls needed for ``[inception, now]``: ``ceil(elapsed / max_days)``, at least one."""
    elapsed = ensure_utc(now) - start_of_day(inception)
    return max(1, math.ceil(elapsed / timedelta(days=max_days)))


def day_chunks(inception: date, now: datetime, max_days: int = 30) -> List[Tuple[datetime, datetime]]:
    """Split ``[inception, now]`` into day-aligned windows of at most ``max_days``.

    Windows are returned newest first. Each covers whole calendar days, except
    that the newest one ends at ``now``; consecutive windows share no day and
    leave no day uncovered. When ``now`` is exactly midnight the new day has no
    elapsed time yet, so the newest window closes the previous day at ``now``.
    """
    now = ensure_utc(now)
    today = now.date()
    if inception > today:
        raise ValueError(f"Inception date {inception} is after today ({today})")

    last_day = today if now > start_of_day(today) else today - timedelta(days=1)
    if last_day < inception:
        return [(start_of_day(inception), now)]

    chunks = []
    chunk_end_day = last_day
    while chunk_end_day >= inception:
        chunk_start_day = max(chunk_end_day - timedelta(days=max_days - 1), inception)
        chunk_end = now if chunk_end_day == last_day else end_of_day(chunk_end_day)
        chunks.append((start_of_day(chunk_start_day), chunk_end))
        chunk_end_day = chunk_start_day - timedelta(days=1)
    return chunks
