from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Sequence

import anyio
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxrental.domain.bookings import statuses
from boxrental.domain.bookings.db_models import Booking
from boxrental.domain.errors import ConflictError, NotFoundError, ValidationError
from boxrental.infra.db import begin_unit
from boxrental.infra.metrics import metrics
from boxrental.settings import settings
from boxrental.shared.clock import Clock, ensure_utc, system_clock

logger = logging.getLogger(__name__)


def next_status(booking: Any, now: datetime) -> str:
    """Status ``booking`` should have at ``now``; pure and idempotent."""
    current = booking.status
    if current in statuses.TERMINAL_STATUSES:
        return current

    now = ensure_utc(now)
    start = ensure_utc(booking.start_at)
    end = ensure_utc(booking.end_at)
    returned = booking.returned_at is not None

    if returned and now >= start:
        return statuses.COMPLETED
    if current in statuses.RESERVED_STATUSES:
        if now < start:
            return current
        if now < end:
            return statuses.ACTIVE
        return statuses.OVERDUE
    if current == statuses.ACTIVE and now >= end:
        return statuses.OVERDUE
    return current


@dataclass
class SyncFailure:
    booking_id: str
    error: str


@dataclass
class SyncResult:
    updated: int = 0
    unchanged: int = 0
    failed: list[SyncFailure] = field(default_factory=list)
    transitions: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": [{"booking_id": failure.booking_id, "error": failure.error} for failure in self.failed],
        }


class StatusSyncer:
    """Advances booking statuses in bulk, one short transaction per booking.

    Bookings are processed concurrently up to ``concurrency``; a failure on one
    booking is recorded in the result and never aborts the rest of the batch.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = system_clock,
        concurrency: int | None = None,
        batch_limit: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.concurrency = max(1, concurrency or settings.status_sync_concurrency)
        self.batch_limit = batch_limit or settings.status_sync_batch_limit

    async def _candidate_pages(
        self, booking_ids: Sequence[str] | None, owner_email: str | None
    ) -> AsyncIterator[list[str]]:
        """Yield open booking ids in ``(start_at, booking_id)`` keyset pages of ``batch_limit``."""
        base = select(Booking.booking_id, Booking.start_at).where(
            Booking.status.not_in(list(statuses.TERMINAL_STATUSES))
        )
        if booking_ids is not None:
            if not booking_ids:
                return
            base = base.where(Booking.booking_id.in_(list(booking_ids)))
        if owner_email is not None:
            base = base.where(Booking.contact_email == owner_email)

        cursor: tuple[datetime, str] | None = None
        while True:
            stmt = base
            if cursor is not None:
                last_start, last_id = cursor
                stmt = stmt.where(
                    or_(
                        Booking.start_at > last_start,
                        and_(Booking.start_at == last_start, Booking.booking_id > last_id),
                    )
                )
            stmt = stmt.order_by(Booking.start_at, Booking.booking_id).limit(self.batch_limit)
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
            if not rows:
                return
            yield [row.booking_id for row in rows]
            if len(rows) < self.batch_limit:
                return
            cursor = (rows[-1].start_at, rows[-1].booking_id)

    async def _sync_one(self, booking_id: str, now: datetime) -> tuple[str, str] | None:
        async with self.session_factory() as session:
            async with session.begin():
                booking = await session.scalar(
                    select(Booking).where(Booking.booking_id == booking_id).with_for_update()
                )
                if booking is None:
                    return None
                target = next_status(booking, now)
                if target == booking.status:
                    return None
                previous = booking.status
                booking.status = target
        return previous, target

    async def sync_many(
        self,
        booking_ids: Sequence[str] | None = None,
        *,
        owner_email: str | None = None,
    ) -> SyncResult:
        now = self.clock.now()
        candidates = 0
        result = SyncResult()
        limiter = anyio.CapacityLimiter(self.concurrency)

        async def _worker(booking_id: str) -> None:
            async with limiter:
                try:
                    change = await self._sync_one(booking_id, now)
                except Exception as exc:  # noqa: BLE001
                    result.failed.append(SyncFailure(booking_id=booking_id, error=type(exc).__name__))
                    logger.warning(
                        "status_sync_failed",
                        extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
                    )
                    return
            if change is None:
                result.unchanged += 1
                return
            previous, target = change
            result.updated += 1
            result.transitions[booking_id] = target
            metrics.record_status_transition(previous, target)

        async for page in self._candidate_pages(booking_ids, owner_email):
            candidates += len(page)
            async with anyio.create_task_group() as task_group:
                for booking_id in page:
                    task_group.start_soon(_worker, booking_id)

        metrics.record_status_sync_failure(len(result.failed))
        logger.info(
            "status_sync_complete",
            extra={
                "extra": {
                    "candidates": candidates,
                    "updated": result.updated,
                    "unchanged": result.unchanged,
                    "failed": len(result.failed),
                }
            },
        )
        return result

    async def sync_all(self) -> SyncResult:
        return await self.sync_many()


async def record_return(
    session: AsyncSession,
    booking_id: str,
    *,
    clock: Clock = system_clock,
    returned_at: datetime | None = None,
) -> Booking:
    """Mark the box of ``booking_id`` as physically returned and settle its status."""
    now = clock.now()
    returned_at = ensure_utc(returned_at) if returned_at is not None else now
    async with begin_unit(session):
        booking = await session.scalar(
            select(Booking).where(Booking.booking_id == booking_id).with_for_update()
        )
        if booking is None:
            raise NotFoundError(detail=f"Booking {booking_id} not found")
        if booking.status == statuses.CANCELLED:
            raise ConflictError(detail="Cancelled bookings cannot be returned")
        if returned_at < ensure_utc(booking.start_at):
            raise ValidationError(
                detail="Return cannot be recorded before the rental starts",
                errors=[{"field": "returned_at", "message": "before booking start"}],
            )
        if booking.returned_at is None:
            booking.returned_at = returned_at
        booking.status = next_status(booking, max(now, returned_at))
    metrics.record_booking("returned")
    logger.info("booking_returned", extra={"extra": {"booking_id": booking_id, "status": booking.status}})
    return booking
