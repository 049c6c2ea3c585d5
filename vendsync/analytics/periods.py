"""Named reporting periods, bucketed by UTC calendar day."""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

PERIOD_TOKENS = ("today", "yesterday", "7days", "30days", "custom")


def as_utc(ts: datetime) -> datetime:
    """Naive timestamps are taken as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of UTC calendar days."""

    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.start, time.min, tzinfo=timezone.utc)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.end, time.max, tzinfo=timezone.utc)

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, ts: datetime) -> bool:
        return self.start_at <= as_utc(ts) <= self.end_at


def _to_date(value: str | date | None) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


def resolve_period(
    token: str,
    today: Optional[date] = None,
    custom_start: str | date | None = None,
    custom_end: str | date | None = None,
) -> DateRange:
    """Date range for a period token, relative to ``today`` (UTC) by default."""
    today = today or datetime.now(timezone.utc).date()
    if token == "today":
        return DateRange(today, today)
    if token == "yesterday":
        day = today - timedelta(days=1)
        return DateRange(day, day)
    if token == "7days":
        return DateRange(today - timedelta(days=6), today)
    if token == "30days":
        return DateRange(today - timedelta(days=29), today)
    if token == "custom":
        start, end = _to_date(custom_start), _to_date(custom_end)
        if start is None or end is None:
            raise ValueError("custom period requires both start and end dates")
        return DateRange(start, end)
    raise ValueError(f"Unknown period: {token!r} (expected one of {', '.join(PERIOD_TOKENS)})")


def previous_period(current: DateRange) -> DateRange:
    """Range of the same length ending the day before ``current`` starts."""
    end = current.start - timedelta(days=1)
    return DateRange(end - timedelta(days=current.days - 1), end)
