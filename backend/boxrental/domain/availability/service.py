"""Blocked ranges, free checks and earliest-start search over existing bookings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxrental.domain.bookings import statuses
from boxrental.domain.bookings.db_models import Booking, Box, Location, Stand
from boxrental.domain.errors import NotFoundError, ValidationError
from boxrental.domain.intervals import DAY, ZERO, Interval, merge_all, overlaps
from boxrental.settings import settings
from boxrental.shared.clock import ensure_utc

logger = logging.getLogger(__name__)


async def lock_box(session: AsyncSession, box_id: str) -> Box | None:
    """Row-lock a box; every writer that changes a box's blocked time holds this lock."""
    return await session.scalar(select(Box).where(Box.box_id == box_id).with_for_update())


@dataclass(frozen=True)
class BookingSpan:
    booking_id: str
    box_id: str
    start: datetime
    end: datetime
    status: str

    @property
    def interval(self) -> Interval:
        return Interval(self.start, self.end)


@dataclass(frozen=True)
class ModelAvailability:
    location_id: str
    model: str
    ranges: list[Interval]
    total_bookings: int
    total_boxes: int
    available_boxes: int
    fully_booked_until: datetime | None = None
    box_ids: list[str] = field(default_factory=list)

    @property
    def merged_ranges_count(self) -> int:
        return len(self.ranges)


class BookingLookup(Protocol):
    async def bookings_for_boxes(self, box_ids: Sequence[str], blocking: Iterable[str]) -> list[BookingSpan]: ...

    async def active_boxes_for_model(self, location_id: str, model: str) -> list[str]: ...


class SqlBookingLookup:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def bookings_for_boxes(self, box_ids: Sequence[str], blocking: Iterable[str]) -> list[BookingSpan]:
        if not box_ids:
            return []
        stmt = (
            select(Booking.booking_id, Booking.box_id, Booking.start_at, Booking.end_at, Booking.status)
            .where(Booking.box_id.in_(list(box_ids)), Booking.status.in_(list(blocking)))
            .order_by(Booking.start_at)
        )
        result = await self.session.execute(stmt)
        return [
            BookingSpan(
                booking_id=row.booking_id,
                box_id=row.box_id,
                start=ensure_utc(row.start_at),
                end=ensure_utc(row.end_at),
                status=row.status,
            )
            for row in result
        ]

    async def active_boxes_for_model(self, location_id: str, model: str) -> list[str]:
        location = await self.session.get(Location, location_id)
        if location is None:
            raise NotFoundError(detail=f"Location {location_id} not found")
        stmt = (
            select(Box.box_id)
            .join(Stand, Stand.stand_id == Box.stand_id)
            .where(
                Stand.location_id == location_id,
                Box.model == model,
                Box.status == statuses.BOX_ACTIVE,
            )
            .order_by(Box.box_id)
        )
        return list((await self.session.scalars(stmt)).all())


def earliest_start_in(ranges: Sequence[Interval], from_date: datetime, duration: timedelta) -> datetime:
    """First instant at or after ``from_date`` with ``duration`` clear of ``ranges``.

    ``ranges`` must be sorted and non-overlapping (the output of ``merge_all``).
    The tail after the last range is unbounded, so a start always exists.
    """
    candidate = ensure_utc(from_date)
    for blocked in ranges:
        if blocked.end <= candidate:
            continue
        if blocked.start > candidate and blocked.start - candidate >= duration:
            return candidate
        candidate = max(candidate, blocked.end)
    return candidate


class AvailabilityIndex:
    def __init__(self, lookup: BookingLookup, *, overdue_blocks: bool | None = None) -> None:
        self.lookup = lookup
        self.overdue_blocks = settings.overdue_blocks_availability if overdue_blocks is None else overdue_blocks

    @property
    def blocking(self) -> frozenset[str]:
        return statuses.blocking_statuses(overdue_blocks=self.overdue_blocks)

    async def _spans(self, box_ids: Sequence[str], exclude_booking_id: str | None = None) -> list[BookingSpan]:
        spans = await self.lookup.bookings_for_boxes(box_ids, self.blocking)
        return [span for span in spans if span.booking_id != exclude_booking_id]

    async def blocked_ranges(self, box_id: str, *, exclude_booking_id: str | None = None) -> list[Interval]:
        spans = await self._spans([box_id], exclude_booking_id)
        return merge_all(span.interval for span in spans)

    async def display_ranges(self, box_id: str, *, grace: timedelta | None = None) -> list[Interval]:
        if grace is None:
            grace = timedelta(hours=settings.display_merge_grace_hours)
        spans = await self._spans([box_id])
        return merge_all((span.interval for span in spans), grace=grace)

    async def conflicts(
        self, box_id: str, candidate: Interval, *, exclude_booking_id: str | None = None
    ) -> list[BookingSpan]:
        spans = await self._spans([box_id], exclude_booking_id)
        return [span for span in spans if overlaps(span.interval, candidate)]

    async def is_free(self, box_id: str, candidate: Interval, *, exclude_booking_id: str | None = None) -> bool:
        ranges = await self.blocked_ranges(box_id, exclude_booking_id=exclude_booking_id)
        return not any(overlaps(blocked, candidate) for blocked in ranges)

    async def earliest_available_start(
        self,
        box_id: str,
        from_date: datetime,
        duration_days: int,
        *,
        search_until: datetime | None = None,
    ) -> datetime | None:
        if duration_days <= 0:
            raise ValidationError(
                detail="duration_days must be positive",
                errors=[{"field": "duration_days", "message": "must be greater than 0"}],
            )
        ranges = await self.blocked_ranges(box_id)
        start = earliest_start_in(ranges, from_date, duration_days * DAY)
        if search_until is not None and start > ensure_utc(search_until):
            return None
        return start

    async def model_blocked_ranges(
        self,
        location_id: str,
        model: str,
        *,
        grace: timedelta = ZERO,
        now: datetime | None = None,
    ) -> ModelAvailability:
        model = model.upper()
        if model not in statuses.BOX_MODELS:
            raise ValidationError(
                detail=f"Unknown box model {model}",
                errors=[{"field": "model", "message": "must be one of CLASSIC, PRO"}],
            )
        box_ids = await self.lookup.active_boxes_for_model(location_id, model)
        spans = await self._spans(box_ids)
        merged = merge_all((span.interval for span in spans), grace=grace)

        available_boxes = len(box_ids)
        fully_booked_until: datetime | None = None
        if now is not None and box_ids:
            now = ensure_utc(now)
            per_box: dict[str, list[Interval]] = {box_id: [] for box_id in box_ids}
            for span in spans:
                per_box[span.box_id].append(span.interval)
            first_free = [earliest_start_in(merge_all(ranges), now, ZERO) for ranges in per_box.values()]
            available_boxes = sum(1 for instant in first_free if instant == now)
            if available_boxes == 0:
                fully_booked_until = min(first_free)

        logger.info(
            "model_blocked_ranges",
            extra={
                "extra": {
                    "location_id": location_id,
                    "model": model,
                    "total_boxes": len(box_ids),
                    "total_bookings": len(spans),
                    "merged_ranges": len(merged),
                }
            },
        )
        return ModelAvailability(
            location_id=location_id,
            model=model,
            ranges=merged,
            total_bookings=len(spans),
            total_boxes=len(box_ids),
            available_boxes=available_boxes,
            fully_booked_until=fully_booked_until,
            box_ids=box_ids,
        )
