from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxrental.domain.bookings.db_models import Booking, Payment
from boxrental.domain.errors import NotFoundError, PaymentNotSucceeded
from boxrental.domain.payments.provider import PaymentProvider, ProviderPaymentIntent

PROVIDER = "stripe"


async def resolve_settled_intent(
    provider: PaymentProvider, payment_intent_id: str
) -> tuple[ProviderPaymentIntent, str]:
    """Authoritative intent state plus its settled charge reference.

    Raises ``PaymentNotSucceeded`` while the provider has not settled the
    payment, which callers treat as "retry later".
    """
    intent = await provider.retrieve_payment_intent(payment_intent_id)
    if not intent.succeeded:
        raise PaymentNotSucceeded(
            detail=f"Payment {payment_intent_id} has status {intent.status or 'unknown'}; retry later"
        )
    charge_ref = intent.latest_charge_ref or await provider.retrieve_latest_charge(payment_intent_id)
    if not charge_ref:
        raise PaymentNotSucceeded(detail=f"Payment {payment_intent_id} has no settled charge yet; retry later")
    return intent, charge_ref


async def lock_payment_by_charge(session: AsyncSession, charge_ref: str) -> Payment | None:
    return await session.scalar(
        select(Payment)
        .where(Payment.provider == PROVIDER, Payment.charge_ref == charge_ref)
        .with_for_update()
    )


async def lock_payment_by_intent(session: AsyncSession, payment_intent_id: str) -> Payment | None:
    return await session.scalar(
        select(Payment)
        .where(Payment.provider == PROVIDER, Payment.payment_intent_id == payment_intent_id)
        .with_for_update()
    )


async def find_payment(session: AsyncSession, charge_ref: str, payment_intent_id: str) -> Payment | None:
    payment = await lock_payment_by_charge(session, charge_ref)
    if payment is None:
        payment = await lock_payment_by_intent(session, payment_intent_id)
    return payment


async def booking_for_payment_intent(session: AsyncSession, payment_intent_id: str) -> tuple[Payment, Booking]:
    """Payment recorded for ``payment_intent_id`` and the booking it paid for.

    Raises ``NotFoundError`` until the payment exists and has been linked to a
    booking, so a polling client simply retries.
    """
    payment = await session.scalar(
        select(Payment).where(Payment.provider == PROVIDER, Payment.payment_intent_id == payment_intent_id)
    )
    if payment is None:
        raise NotFoundError(detail=f"Payment {payment_intent_id} not found")
    booking = None
    if payment.booking_id is not None:
        booking = await session.get(Booking, payment.booking_id)
    if booking is None:
        booking = await session.scalar(select(Booking).where(Booking.payment_id == payment.payment_id))
    if booking is None:
        raise NotFoundError(detail=f"No booking has been created for payment {payment_intent_id} yet")
    return payment, booking
