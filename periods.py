import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}", re.ASCII)

# Stored instants may carry a wall-clock date one day off from their UTC date.
FETCH_PADDING = timedelta(days=1)

EARLIEST_DAY = date(1970, 1, 1)
LATEST_DAY = date(9999, 12, 30)


@dataclass(frozen=True)
class DateWindow:
    """Over-fetch bounds for the storage query plus the exact calendar range.

    ``fetch_start``/``fetch_end`` are naive UTC instants one day wider than
    ``exact_from``/``exact_to`` on each side. ``contains`` narrows a fetched
    instant back down to the requested days.
    """

    fetch_start: datetime
    fetch_end: datetime
    exact_from: str
    exact_to: str

    def contains(self, instant: datetime) -> bool:
        day = utc_day(instant)
        # Fixed-width zero-padded strings compare the same as dates.
        return self.exact_from <= day <= self.exact_to


def utc_day(instant: datetime) -> str:
    if instant.tzinfo is not None:
        instant = instant.astimezone(timezone.utc)
    return instant.date().isoformat()


def parse_day(value: Optional[str], field: str) -> date:
    if not value or not DATE_PATTERN.fullmatch(value):
        raise ValueError(f"Invalid {field} date. Expected format: YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Invalid {field} date: {value}") from exc


def _shift(instant: datetime, delta: timedelta) -> datetime:
    # Padding stops at the edges of the representable range.
    try:
        return instant + delta
    except OverflowError:
        return datetime.max if delta > timedelta(0) else datetime.min


def _window(start_day: date, end_day: date) -> DateWindow:
    if start_day > end_day:
        raise ValueError("From date must not be after to date")
    return DateWindow(
        fetch_start=_shift(datetime.combine(start_day, time.min), -FETCH_PADDING),
        fetch_end=_shift(datetime.combine(end_day, time.max), FETCH_PADDING),
        exact_from=start_day.isoformat(),
        exact_to=end_day.isoformat(),
    )


def normalize_date_range(start: Optional[str], end: Optional[str]) -> DateWindow:
    return _window(parse_day(start, "from"), parse_day(end, "to"))


def open_date_range(
    start: Optional[str], end: Optional[str]
) -> Optional[DateWindow]:
    """Like ``normalize_date_range`` but either bound may be omitted.

    Returns ``None`` when neither bound is given.
    """
    if not start and not end:
        return None
    start_day = parse_day(start, "from") if start else EARLIEST_DAY
    end_day = parse_day(end, "to") if end else LATEST_DAY
    return _window(start_day, end_day)
