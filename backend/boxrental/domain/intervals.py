"""Half-open time intervals and the merge algebra used for availability.

An ``Interval`` covers ``[start, end)``: a rental ending at 10:00 and another
starting at 10:00 on the same box do not overlap. All instants are aware UTC
datetimes; naive input is interpreted as UTC.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from boxrental.domain.errors import ValidationError
from boxrental.shared.clock import ensure_utc

DAY = timedelta(days=1)
ZERO = timedelta(0)


@dataclass(frozen=True, order=True)
class Interval:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        start = ensure_utc(self.start)
        end = ensure_utc(self.end)
        if start >= end:
            raise ValidationError(
                detail="Interval end must be after its start",
                errors=[{"field": "end", "message": "must be after start"}],
            )
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, instant: datetime) -> bool:
        instant = ensure_utc(instant)
        return self.start <= instant < self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def overlaps(a: Interval, b: Interval) -> bool:
    return a.start < b.end and b.start < a.end


def gap_between(a: Interval, b: Interval) -> timedelta:
    """Distance between the nearer edges; zero when the intervals touch or overlap."""
    if overlaps(a, b):
        return ZERO
    return max(ZERO, max(a.start, b.start) - min(a.end, b.end))


def is_adjacent_or_overlapping(a: Interval, b: Interval, grace: timedelta = ZERO) -> bool:
    if grace < ZERO:
        raise ValidationError(detail="Merge grace must not be negative")
    if overlaps(a, b):
        return True
    return gap_between(a, b) <= grace


def merge(a: Interval, b: Interval) -> Interval:
    return Interval(start=min(a.start, b.start), end=max(a.end, b.end))


def merge_all(intervals: Iterable[Interval], grace: timedelta = ZERO) -> list[Interval]:
    if grace < ZERO:
        raise ValidationError(detail="Merge grace must not be negative")
    ordered = sorted(intervals, key=lambda interval: (interval.start, interval.end))
    merged: list[Interval] = []
    for interval in ordered:
        if merged and interval.start - merged[-1].end <= grace:
            if interval.end > merged[-1].end:
                merged[-1] = Interval(start=merged[-1].start, end=interval.end)
            continue
        merged.append(interval)
    return merged


def days_between(start: datetime, end: datetime) -> int:
    """Whole days needed to cover ``end - start``, rounding partial days up."""
    delta = ensure_utc(end) - ensure_utc(start)
    if delta <= ZERO:
        return 0
    return math.ceil(delta / DAY)


def rental_days(start: datetime, end: datetime) -> int:
    return max(1, days_between(start, end))
