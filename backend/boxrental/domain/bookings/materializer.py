"""Turns a settled payment into exactly one booking.

``materialize`` may be invoked for the same payment intent by the Stripe
webhook, by the client's success poll and by an operator replay, possibly at the
same time. The unique constraints on ``payments(provider, charge_ref)``,
``payments(provider, payment_intent_id)`` and ``bookings(payment_id)`` are the
guard: the loser of a race hits an ``IntegrityError`` inside its savepoint and
re-reads the winner's rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from boxrental.domain.availability.service import AvailabilityIndex, SqlBookingLookup, lock_box
from boxrental.domain.bookings import statuses
from boxrental.domain.bookings.db_models import Booking, Payment
from boxrental.domain.bookings.metadata import KIND_BOOKING, BookingPaymentMetadata, parse_payment_metadata
from boxrental.domain.errors import BoxNoLongerAvailable, ConflictError, NotFoundError
from boxrental.domain.intervals import Interval
from boxrental.domain.payments import settlement
from boxrental.domain.payments.provider import PaymentProvider, ProviderPaymentIntent
from boxrental.domain.reconciliation import BOX_DOUBLE_BOOKED, ReconciliationWarning, report_reconciliation_warning
from boxrental.infra.db import begin_unit
from boxrental.infra.metrics import metrics
from boxrental.infra.notifications import BOOKING_MATERIALIZED, Notifier, dispatch_notification
from boxrental.shared.clock import Clock, ensure_utc, system_clock

logger = logging.getLogger(__name__)

AvailabilityFactory = Callable[[AsyncSession], AvailabilityIndex]


def _default_availability(session: AsyncSession) -> AvailabilityIndex:
    return AvailabilityIndex(SqlBookingLookup(session))


@dataclass
class MaterializationResult:
    booking: Booking
    payment: Payment
    already_processed: bool = False
    already_confirmed: bool = False

    @property
    def outcome(self) -> str:
        if self.already_confirmed:
            return "already_confirmed"
        if self.already_processed:
            return "already_processed"
        return "created"


async def _linked_booking(session: AsyncSession, payment: Payment) -> Booking | None:
    return await session.scalar(select(Booking).where(Booking.payment_id == payment.payment_id))


def initial_status(start, now) -> str:
    return statuses.ACTIVE if ensure_utc(start) <= ensure_utc(now) else statuses.PENDING


class BookingMaterializer:
    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        *,
        clock: Clock = system_clock,
        notifier: Notifier | None = None,
        availability_factory: AvailabilityFactory = _default_availability,
    ) -> None:
        self.session = session
        self.provider = provider
        self.clock = clock
        self.notifier = notifier
        self.availability_factory = availability_factory

    def _existing(self, booking: Booking, payment: Payment) -> MaterializationResult:
        return MaterializationResult(
            booking=booking,
            payment=payment,
            already_processed=True,
            already_confirmed=booking.status in statuses.SETTLED_STATUSES,
        )

    async def _find_existing(self, charge_ref: str, payment_intent_id: str) -> MaterializationResult | Payment | None:
        """Existing result for a processed payment, the unsettled checkout row, or ``None``."""
        payment = await settlement.find_payment(self.session, charge_ref, payment_intent_id)
        if payment is None:
            return None
        booking = await _linked_booking(self.session, payment)
        if booking is not None:
            return self._existing(booking, payment)
        return payment

    async def materialize(self, payment_intent_id: str, contact_email: str | None = None) -> MaterializationResult:
        intent, charge_ref = await settlement.resolve_settled_intent(self.provider, payment_intent_id)
        meta = parse_payment_metadata(intent.metadata, expected_kind=KIND_BOOKING)
        contact = contact_email or meta.contact_email

        async with begin_unit(self.session):
            found = await self._find_existing(charge_ref, payment_intent_id)
            if isinstance(found, MaterializationResult):
                result = found
            else:
                result = await self._create(intent, charge_ref, meta, contact, checkout_payment=found)
        await self._finish(result, payment_intent_id, charge_ref)
        return result

    async def _create(
        self,
        intent: ProviderPaymentIntent,
        charge_ref: str,
        meta: BookingPaymentMetadata,
        contact_email: str | None,
        *,
        checkout_payment: Payment | None,
    ) -> MaterializationResult:
        box = await lock_box(self.session, meta.box_id)
        if box is None:
            raise NotFoundError(detail=f"Box {meta.box_id} not found")

        candidate = Interval(meta.start_at, meta.end_at)
        availability = self.availability_factory(self.session)
        if box.status != statuses.BOX_ACTIVE or not await availability.is_free(box.box_id, candidate):
            already = await self._refetch(charge_ref, intent.id)
            if already is not None:
                return already
            await report_reconciliation_warning(
                ReconciliationWarning(
                    kind=BOX_DOUBLE_BOOKED,
                    detail="Payment captured for a box that is no longer available",
                    payment_intent_id=intent.id,
                    charge_ref=charge_ref,
                    amount_cents=intent.amount_cents,
                ),
                notifier=self.notifier,
            )
            raise BoxNoLongerAvailable(
                detail=f"Box {box.box_id} is no longer available for {candidate.start.isoformat()} - {candidate.end.isoformat()}"
            )

        now = self.clock.now()
        try:
            async with self.session.begin_nested():
                payment = checkout_payment
                if payment is None:
                    payment = Payment(
                        kind=statuses.PAYMENT_KIND_BOOKING,
                        provider=settlement.PROVIDER,
                        payment_intent_id=intent.id,
                        amount_cents=intent.amount_cents,
                        currency=intent.currency or meta.currency,
                    )
                    self.session.add(payment)
                payment.charge_ref = charge_ref
                payment.status = statuses.PAYMENT_SUCCEEDED
                payment.received_at = now
                if contact_email:
                    payment.contact_email = contact_email
                await self.session.flush()

                booking = Booking(
                    box_id=box.box_id,
                    payment_id=payment.payment_id,
                    start_at=meta.start_at,
                    end_at=meta.end_at,
                    status=initial_status(meta.start_at, now),
                    total_cents=intent.amount_cents,
                    currency=intent.currency or meta.currency,
                    contact_email=contact_email,
                )
                self.session.add(booking)
                await self.session.flush()
                payment.booking_id = booking.booking_id
                await self.session.flush()
        except IntegrityError:
            already = await self._refetch(charge_ref, intent.id)
            if already is None:
                raise ConflictError(detail=f"Charge {charge_ref} is already linked to a different payment")
            logger.info(
                "booking_materialize_race_resolved",
                extra={"extra": {"payment_intent_id": intent.id, "booking_id": already.booking.booking_id}},
            )
            return already
        return MaterializationResult(booking=booking, payment=payment)

    async def _refetch(self, charge_ref: str, payment_intent_id: str) -> MaterializationResult | None:
        found = await self._find_existing(charge_ref, payment_intent_id)
        if isinstance(found, MaterializationResult):
            return found
        return None

    async def _finish(self, result: MaterializationResult, payment_intent_id: str, charge_ref: str) -> None:
        metrics.record_materialization(result.outcome)
        log_extra = {
            "payment_intent_id": payment_intent_id,
            "charge_ref": charge_ref,
            "booking_id": result.booking.booking_id,
            "outcome": result.outcome,
        }
        if result.already_processed:
            logger.info("booking_already_materialized", extra={"extra": log_extra})
            return
        metrics.record_booking("created")
        logger.info("booking_materialized", extra={"extra": log_extra})
        await dispatch_notification(
            self.notifier,
            BOOKING_MATERIALIZED,
            {
                "booking_id": result.booking.booking_id,
                "box_id": result.booking.box_id,
                "start_at": ensure_utc(result.booking.start_at).isoformat(),
                "end_at": ensure_utc(result.booking.end_at).isoformat(),
                "contact_email": result.booking.contact_email,
            },
        )
