from __future__ import annotations

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from boxrental.api.serializers import interval_responses
from boxrental.dependencies import get_clock
from boxrental.domain.availability.service import AvailabilityIndex, SqlBookingLookup
from boxrental.domain.bookings import schemas, statuses
from boxrental.domain.bookings.db_models import Box
from boxrental.domain.errors import NotFoundError
from boxrental.domain.intervals import Interval
from boxrental.infra.db import get_db_session
from boxrental.settings import settings
from boxrental.shared.clock import Clock

router = APIRouter()


async def _require_box(session: AsyncSession, box_id: str) -> Box:
    box = await session.get(Box, box_id)
    if box is None:
        raise NotFoundError(detail=f"Box {box_id} not found")
    return box


@router.get("/v1/boxes/{box_id}/availability", response_model=schemas.AvailabilityResponse)
async def box_availability(
    box_id: str,
    start_at: datetime,
    end_at: datetime,
    session: AsyncSession = Depends(get_db_session),
) -> schemas.AvailabilityResponse:
    candidate = Interval(start_at, end_at)
    box = await _require_box(session, box_id)
    conflicts = await AvailabilityIndex(SqlBookingLookup(session)).conflicts(box_id, candidate)
    return schemas.AvailabilityResponse(
        box_id=box_id,
        start_at=candidate.start,
        end_at=candidate.end,
        available=box.status == statuses.BOX_ACTIVE and not conflicts,
        conflicting_booking_ids=[span.booking_id for span in conflicts],
    )


@router.get("/v1/boxes/{box_id}/blocked-ranges", response_model=schemas.BlockedRangesResponse)
async def box_blocked_ranges(
    box_id: str,
    display: bool = Query(True),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.BlockedRangesResponse:
    await _require_box(session, box_id)
    index = AvailabilityIndex(SqlBookingLookup(session))
    if display:
        grace_hours = float(settings.display_merge_grace_hours)
        ranges = await index.display_ranges(box_id, grace=timedelta(hours=grace_hours))
    else:
        grace_hours = 0.0
        ranges = await index.blocked_ranges(box_id)
    return schemas.BlockedRangesResponse(
        box_id=box_id,
        ranges=interval_responses(ranges),
        merge_grace_hours=grace_hours,
    )


@router.get("/v1/boxes/{box_id}/earliest-start", response_model=schemas.EarliestStartResponse)
async def box_earliest_start(
    box_id: str,
    duration_days: int,
    from_date: datetime | None = None,
    search_until: datetime | None = None,
    session: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
) -> schemas.EarliestStartResponse:
    box = await _require_box(session, box_id)
    if box.status != statuses.BOX_ACTIVE:
        return schemas.EarliestStartResponse(box_id=box_id, duration_days=duration_days, earliest_start=None)
    earliest = await AvailabilityIndex(SqlBookingLookup(session)).earliest_available_start(
        box_id,
        from_date or clock.now(),
        duration_days,
        search_until=search_until,
    )
    return schemas.EarliestStartResponse(box_id=box_id, duration_days=duration_days, earliest_start=earliest)


@router.get(
    "/v1/locations/{location_id}/model-blocked-ranges",
    response_model=schemas.ModelBlockedRangesResponse,
)
async def location_model_blocked_ranges(
    location_id: str,
    model: str,
    grace_hours: float = Query(0, ge=0),
    session: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
) -> schemas.ModelBlockedRangesResponse:
    result = await AvailabilityIndex(SqlBookingLookup(session)).model_blocked_ranges(
        location_id,
        model,
        grace=timedelta(hours=grace_hours),
        now=clock.now(),
    )
    return schemas.ModelBlockedRangesResponse(
        location_id=result.location_id,
        model=result.model,
        ranges=interval_responses(result.ranges),
        total_bookings=result.total_bookings,
        merged_ranges_count=result.merged_ranges_count,
        total_boxes=result.total_boxes,
        available_boxes=result.available_boxes,
        fully_booked_until=result.fully_booked_until,
    )
