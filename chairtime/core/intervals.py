"""Half-open time intervals, slot grid arithmetic and timezone boundaries.

Everything here works on aware UTC datetimes. A naive datetime is taken to be
UTC, which is how the database hands timestamps back. Shop-local wall-clock
time only appears in ``local_window`` and ``to_local``.
"""
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def as_utc(dt: datetime) -> datetime:
    """Aware UTC datetime; naive input is treated as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_naive_utc(dt: datetime) -> datetime:
    """Convert to naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    if dt.tzinfo is not None:
        return dt.astimezone(UTC).replace(tzinfo=None)
    return dt


@dataclass(frozen=True, order=True)
class Interval:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", as_utc(self.start))
        object.__setattr__(self, "end", as_utc(self.end))
        if self.start >= self.end:
            raise ValueError(f"interval start {self.start} must be before end {self.end}")

    @classmethod
    def of(cls, start: datetime, minutes: int) -> "Interval":
        return cls(start, as_utc(start) + timedelta(minutes=minutes))

    @property
    def minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end


def overlaps(a: Interval, b: Interval) -> bool:
    # Touching endpoints do not overlap: [10:00, 10:30) and [10:30, 11:00) are compatible.
    return a.start < b.end and b.start < a.end


def _grid_step(granularity_minutes: int) -> timedelta:
    if granularity_minutes <= 0:
        raise ValueError("granularity_minutes must be positive")
    return timedelta(minutes=granularity_minutes)


def floor_to_grid(instant: datetime, granularity_minutes: int) -> datetime:
    instant = as_utc(instant)
    return instant - (instant - EPOCH) % _grid_step(granularity_minutes)


def round_up_to_grid(instant: datetime, granularity_minutes: int) -> datetime:
    """Next grid boundary at or after ``instant``; the grid is anchored at the epoch in UTC."""
    instant = as_utc(instant)
    step = _grid_step(granularity_minutes)
    remainder = (instant - EPOCH) % step
    if not remainder:
        return instant
    return instant + (step - remainder)


def is_on_grid(instant: datetime, granularity_minutes: int) -> bool:
    return round_up_to_grid(instant, granularity_minutes) == as_utc(instant)


def grid_cells(interval: Interval, granularity_minutes: int) -> list[datetime]:
    """Start instants of every grid cell the interval touches."""
    step = _grid_step(granularity_minutes)
    cells = []
    cursor = floor_to_grid(interval.start, granularity_minutes)
    while cursor < interval.end:
        cells.append(cursor)
        cursor += step
    return cells


def merge(intervals: list[Interval]) -> list[Interval]:
    """Sorted union; overlapping or touching intervals are joined."""
    merged: list[Interval] = []
    for iv in sorted(intervals):
        if merged and iv.start <= merged[-1].end:
            last = merged[-1]
            if iv.end > last.end:
                merged[-1] = Interval(last.start, iv.end)
        else:
            merged.append(iv)
    return merged


def subtract(window: Interval, busy: list[Interval]) -> list[Interval]:
    """Free sub-intervals of ``window`` once every busy interval is removed."""
    free: list[Interval] = []
    cursor = window.start
    for b in merge(busy):
        if b.end <= cursor:
            continue
        if b.start >= window.end:
            break
        if b.start > cursor:
            free.append(Interval(cursor, b.start))
        cursor = max(cursor, b.end)
        if cursor >= window.end:
            break
    if cursor < window.end:
        free.append(Interval(cursor, window.end))
    return free


def local_window(day: date, opens_at: time, closes_at: time, tz: ZoneInfo) -> Interval:
    """UTC interval for wall-clock bounds on ``day`` using the zone's rule for that date.

    Non-existent wall times (spring-forward gap) resolve with the offset in force
    before the transition; ambiguous ones (fall-back) take the first occurrence.
    A ``closes_at`` of midnight means the end of ``day``.
    """
    start = datetime.combine(day, opens_at, tzinfo=tz)
    end_day = day + timedelta(days=1) if closes_at == time(0) else day
    end = datetime.combine(end_day, closes_at, tzinfo=tz)
    return Interval(start.astimezone(UTC), end.astimezone(UTC))


def to_local(instant: datetime, tz: ZoneInfo) -> datetime:
    return as_utc(instant).astimezone(tz)


def local_day_bounds(day: date, tz: ZoneInfo) -> Interval:
    """The whole shop-local calendar day as a UTC interval (23 or 25 hours across DST)."""
    start = datetime.combine(day, time(0), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time(0), tzinfo=tz)
    return Interval(start.astimezone(UTC), end.astimezone(UTC))
