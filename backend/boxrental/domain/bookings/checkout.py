from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from boxrental.domain.availability.service import AvailabilityIndex, SqlBookingLookup
from boxrental.domain.bookings import statuses
from boxrental.domain.bookings.db_models import Box, Location, Payment, Stand
from boxrental.domain.bookings.metadata import KIND_BOOKING, BookingPaymentMetadata
from boxrental.domain.errors import ConflictError, NotFoundError
from boxrental.domain.intervals import Interval
from boxrental.domain.payments import settlement
from boxrental.domain.payments.provider import PaymentProvider
from boxrental.domain.pricing.config_loader import PricingConfig
from boxrental.domain.pricing.service import RentalQuote, quote_rental
from boxrental.infra.db import begin_unit
from boxrental.infra.stripe_client import call_stripe_client_method
from boxrental.infra.stripe_idempotency import make_stripe_idempotency_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    payment_id: str
    payment_intent_id: str
    client_secret: str | None
    quote: RentalQuote
    start_at: datetime
    end_at: datetime


async def _load_box(session: AsyncSession, box_id: str) -> tuple[Box, int | None]:
    row = (
        await session.execute(
            select(Box, Location.price_per_day_cents)
            .join(Stand, Stand.stand_id == Box.stand_id)
            .join(Location, Location.location_id == Stand.location_id)
            .where(Box.box_id == box_id)
        )
    ).first()
    if row is None:
        raise NotFoundError(detail=f"Box {box_id} not found")
    return row[0], row[1]


async def start_checkout(
    session: AsyncSession,
    provider: PaymentProvider,
    *,
    pricing: PricingConfig,
    box_id: str,
    start: datetime,
    end: datetime,
    contact_email: str | None = None,
) -> CheckoutSession:
    """Price a rental and open a payment intent for it.

    No booking exists until the payment settles; the ``PENDING`` payment row
    created here is adopted later by the materializer.
    """
    candidate = Interval(start, end)
    box, location_price = await _load_box(session, box_id)
    if box.status != statuses.BOX_ACTIVE:
        raise ConflictError(detail=f"Box {box_id} is not available for rent")
    availability = AvailabilityIndex(SqlBookingLookup(session))
    conflicts = await availability.conflicts(box_id, candidate)
    if conflicts:
        raise ConflictError(
            detail=f"Box {box_id} is already booked in the requested period",
            errors=[{"field": "start_at", "message": f"overlaps booking {conflicts[0].booking_id}"}],
        )

    quote = quote_rental(
        pricing,
        model=box.model,
        start=candidate.start,
        end=candidate.end,
        box_price_cents=box.price_per_day_cents,
        location_price_cents=location_price,
    )
    meta = BookingPaymentMetadata(
        kind=KIND_BOOKING,
        box_id=box_id,
        start_at=candidate.start,
        end_at=candidate.end,
        amount_cents=quote.total_cents,
        currency=quote.currency,
        contact_email=contact_email,
    )
    created = await call_stripe_client_method(
        provider,
        "create_payment_intent",
        amount_cents=quote.total_cents,
        currency=quote.currency,
        metadata=meta.to_provider(),
        receipt_email=contact_email,
        idempotency_key=make_stripe_idempotency_key(
            "booking_checkout",
            box_id=box_id,
            amount_cents=quote.total_cents,
            currency=quote.currency,
            extra={
                "start": candidate.start.isoformat(),
                "end": candidate.end.isoformat(),
                "email": contact_email or "",
            },
        ),
    )

    async with begin_unit(session):
        payment = await settlement.lock_payment_by_intent(session, created.id)
        if payment is None:
            try:
                async with session.begin_nested():
                    payment = Payment(
                        kind=statuses.PAYMENT_KIND_BOOKING,
                        provider=settlement.PROVIDER,
                        payment_intent_id=created.id,
                        amount_cents=quote.total_cents,
                        currency=quote.currency,
                        contact_email=contact_email,
                    )
                    session.add(payment)
                    await session.flush()
            except IntegrityError:
                payment = await settlement.lock_payment_by_intent(session, created.id)
                if payment is None:
                    raise

    logger.info(
        "checkout_started",
        extra={
            "extra": {
                "box_id": box_id,
                "payment_intent_id": created.id,
                "amount_cents": quote.total_cents,
                "days": quote.days,
            }
        },
    )
    return CheckoutSession(
        payment_id=payment.payment_id,
        payment_intent_id=created.id,
        client_secret=created.client_secret,
        quote=quote,
        start_at=candidate.start,
        end_at=candidate.end,
    )
