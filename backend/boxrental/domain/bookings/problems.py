from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxrental.domain.bookings import statuses
from boxrental.domain.bookings.db_models import Booking
from boxrental.domain.errors import ConflictError, NotFoundError, ValidationError
from boxrental.infra.db import begin_unit
from boxrental.infra.metrics import metrics

logger = logging.getLogger(__name__)

PROBLEM_OTHER = "other"
PROBLEM_TYPES = frozenset(
    {
        "interior_lights",
        "exterior_lights",
        "mounting_fixture",
        "lid_damage",
        "box_scratch",
        "box_dent_major_damage",
        "defect_rubber_sealing",
        "stolen",
        PROBLEM_OTHER,
    }
)


def normalize_problems(problems: Iterable[Mapping[str, Any]]) -> list[dict[str, str]]:
    """Validate reported problems; a description is kept only for ``other``."""
    normalized: list[dict[str, str]] = []
    for index, problem in enumerate(problems):
        problem_type = problem.get("type")
        if not isinstance(problem_type, str) or problem_type not in PROBLEM_TYPES:
            raise ValidationError(
                detail=f"Invalid problem type: {problem_type}",
                errors=[{"field": f"problems[{index}].type", "message": "unknown problem type"}],
            )
        entry = {"type": problem_type}
        description = problem.get("description")
        if problem_type == PROBLEM_OTHER and description and str(description).strip():
            entry["description"] = str(description).strip()
        normalized.append(entry)
    if not normalized:
        raise ValidationError(
            detail="At least one problem must be reported",
            errors=[{"field": "problems", "message": "must not be empty"}],
        )
    return normalized


async def report_problems(
    session: AsyncSession, booking_id: str, problems: Iterable[Mapping[str, Any]]
) -> Booking:
    """Replace the problem list recorded on ``booking_id``."""
    normalized = normalize_problems(problems)
    async with begin_unit(session):
        booking = await session.scalar(
            select(Booking).where(Booking.booking_id == booking_id).with_for_update()
        )
        if booking is None:
            raise NotFoundError(detail=f"Booking {booking_id} not found")
        if booking.status == statuses.CANCELLED:
            raise ConflictError(detail="Problems cannot be reported on a cancelled booking")
        booking.problems = normalized
    metrics.record_booking("problems_reported")
    logger.info(
        "booking_problems_reported",
        extra={"extra": {"booking_id": booking_id, "count": len(normalized)}},
    )
    return booking
