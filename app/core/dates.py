"""Reachline — UTC Day Helpers and Window Chunking."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, List, Optional, Tuple

DayWindow = Tuple[date, date]


def today_utc(now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).date()


def iter_days(start: date, end: date) -> Iterator[date]:
    """Every day in [start, end], inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def window_for(days: int, until: date) -> DayWindow:
    """The `days`-long window ending on `until` (inclusive)."""
    return until - timedelta(days=days - 1), until


def day_start_unix(day: date) -> int:
    return int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp())


def unix_bounds(window: DayWindow) -> Tuple[int, int]:
    """Graph `since`/`until` for an inclusive day window.

    `until` is exclusive upstream, so it points at midnight after the last day.
    """
    start, end = window
    return day_start_unix(start), day_start_unix(end + timedelta(days=1))


def chunk_day_range(start: date, end: date, max_days: int = 30) -> List[DayWindow]:
    """Split [start, end] into contiguous inclusive windows of at most max_days."""
    if max_days < 1:
        raise ValueError("max_days must be >= 1")
    chunks: List[DayWindow] = []
    cursor = start
    while cursor <= end:
        chunk_end = min(cursor + timedelta(days=max_days - 1), end)
        chunks.append((cursor, chunk_end))
        cursor = chunk_end + timedelta(days=1)
    return chunks


def window_days(window: DayWindow) -> int:
    return (window[1] - window[0]).days + 1


def parse_end_time_day(end_time: object) -> Optional[date]:
    """UTC calendar day of a Graph `end_time` value."""
    if not isinstance(end_time, str) or len(end_time) < 10:
        return None
    raw = end_time.strip()
    # Graph emits "+0000" offsets which fromisoformat only accepts on 3.11+
    if len(raw) > 5 and raw[-5] in "+-" and raw[-4:].isdigit():
        raw = f"{raw[:-2]}:{raw[-2:]}"
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        try:
            return date.fromisoformat(raw[:10])
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).date()
