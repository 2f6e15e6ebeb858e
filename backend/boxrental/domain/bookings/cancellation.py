from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxrental.domain.bookings import statuses
from boxrental.domain.bookings.db_models import Booking, Payment
from boxrental.domain.errors import ConflictError, NotFoundError, ProviderPermanentError, ProviderTransientError
from boxrental.domain.intervals import rental_days
from boxrental.domain.payments.provider import PaymentProvider
from boxrental.domain.pricing.config_loader import CancellationTier, PricingConfig
from boxrental.domain.reconciliation import REFUND_FAILED, ReconciliationWarning, report_reconciliation_warning
from boxrental.infra.db import begin_unit
from boxrental.infra.metrics import metrics
from boxrental.infra.notifications import BOOKING_CANCELLED, Notifier, dispatch_notification
from boxrental.infra.stripe_client import call_stripe_client_method
from boxrental.infra.stripe_idempotency import make_stripe_idempotency_key
from boxrental.shared.clock import Clock, ensure_utc, system_clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CancellationQuote:
    eligible: bool
    refund_percent: int
    refund_cents: int
    transaction_fee_cents: int
    reason: str
    policy: str | None = None
    tier: CancellationTier | None = None
    hours_until_start: float | None = None


@dataclass
class CancellationResult:
    success: bool
    booking_id: str
    refund_percent: int
    refund_cents: int
    transaction_fee_cents: int
    reason: str
    refund_status: str
    refund_ref: str | None = None
    warning: str | None = None


def _ineligible(reason: str) -> CancellationQuote:
    return CancellationQuote(
        eligible=False, refund_percent=0, refund_cents=0, transaction_fee_cents=0, reason=reason
    )


def evaluate_cancellation(booking: Booking, now: datetime, pricing: PricingConfig) -> CancellationQuote:
    """Refund a cancellation of ``booking`` at ``now`` would earn; no side effects."""
    if booking.status == statuses.CANCELLED:
        return _ineligible("Booking has already been cancelled.")
    if booking.status == statuses.COMPLETED:
        return _ineligible("Booking has already been completed.")
    if booking.status == statuses.OVERDUE:
        return _ineligible("Rental period has ended; the box must be returned.")

    now = ensure_utc(now)
    start = ensure_utc(booking.start_at)
    end = ensure_utc(booking.end_at)
    if now >= start or booking.status == statuses.ACTIVE:
        if pricing.started_booking_behaviour == "zero_refund":
            return CancellationQuote(
                eligible=True,
                refund_percent=0,
                refund_cents=0,
                transaction_fee_cents=0,
                reason="Rental period has started. The box can be returned but no refund is issued.",
            )
        return _ineligible("Rental period has started; the booking can no longer be cancelled.")

    hours_until_start = (start - now).total_seconds() / 3600
    policy = pricing.policy_for(rental_days(start, end))
    tier = policy.tier_for(hours_until_start)
    if tier is None:
        return CancellationQuote(
            eligible=True,
            refund_percent=0,
            refund_cents=0,
            transaction_fee_cents=0,
            reason="Cancelled too close to the rental start for a refund.",
            policy=policy.name,
            hours_until_start=hours_until_start,
        )

    fee = pricing.transaction_fee_cents if tier.apply_transaction_fee else 0
    gross = booking.total_cents * tier.refund_percent // 100
    refund = max(0, gross - fee)
    if fee:
        reason = (
            f"Cancelled at least {tier.min_hours_before_start:g} hours before start: "
            f"{tier.refund_percent}% refund minus transaction fee."
        )
    else:
        reason = f"Cancelled at least {tier.min_hours_before_start:g} hours before start: {tier.refund_percent}% refund."
    return CancellationQuote(
        eligible=True,
        refund_percent=tier.refund_percent,
        refund_cents=refund,
        transaction_fee_cents=fee,
        reason=reason,
        policy=policy.name,
        tier=tier,
        hours_until_start=hours_until_start,
    )


class CancellationEngine:
    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        *,
        pricing: PricingConfig,
        clock: Clock = system_clock,
        notifier: Notifier | None = None,
    ) -> None:
        self.session = session
        self.provider = provider
        self.pricing = pricing
        self.clock = clock
        self.notifier = notifier

    async def can_cancel_booking(self, booking_id: str) -> CancellationQuote:
        booking = await self.session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(detail=f"Booking {booking_id} not found")
        return evaluate_cancellation(booking, self.clock.now(), self.pricing)

    async def cancel_booking(self, booking_id: str) -> CancellationResult:
        now = self.clock.now()
        async with begin_unit(self.session):
            booking = await self.session.scalar(
                select(Booking).where(Booking.booking_id == booking_id).with_for_update()
            )
            if booking is None:
                raise NotFoundError(detail=f"Booking {booking_id} not found")
            quote = evaluate_cancellation(booking, now, self.pricing)
            if not quote.eligible:
                raise ConflictError(detail=quote.reason)
            payment = None
            if booking.payment_id:
                payment = await self.session.scalar(
                    select(Payment).where(Payment.payment_id == booking.payment_id).with_for_update()
                )
            booking.status = statuses.CANCELLED
            booking.cancelled_at = now
            booking.refund_percent = quote.refund_percent
            booking.refund_cents = quote.refund_cents
            booking.refund_status = statuses.REFUND_PENDING if quote.refund_cents > 0 else statuses.REFUND_NOT_REQUIRED

        metrics.record_booking("cancelled")
        logger.info(
            "booking_cancelled",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "refund_percent": quote.refund_percent,
                    "refund_cents": quote.refund_cents,
                    "policy": quote.policy,
                }
            },
        )

        result = CancellationResult(
            success=True,
            booking_id=booking_id,
            refund_percent=quote.refund_percent,
            refund_cents=quote.refund_cents,
            transaction_fee_cents=quote.transaction_fee_cents,
            reason=quote.reason,
            refund_status=booking.refund_status,
        )
        if quote.refund_cents > 0:
            await self._refund(booking, payment, result)

        await dispatch_notification(
            self.notifier,
            BOOKING_CANCELLED,
            {
                "booking_id": booking_id,
                "refund_cents": result.refund_cents,
                "refund_status": result.refund_status,
                "contact_email": booking.contact_email,
            },
        )
        return result

    async def _refund(self, booking: Booking, payment: Payment | None, result: CancellationResult) -> None:
        charge_ref = payment.charge_ref if payment is not None else None
        try:
            if not charge_ref:
                raise ProviderPermanentError(detail="Booking has no settled charge to refund")
            charge = await self.provider.retrieve_charge(charge_ref)
            amount = min(result.refund_cents, charge.refundable_cents)
            if amount <= 0:
                raise ProviderPermanentError(detail=f"Charge {charge_ref} has no refundable balance")
            refund = await call_stripe_client_method(
                self.provider,
                "issue_refund",
                charge_ref=charge_ref,
                amount_cents=amount,
                idempotency_key=make_stripe_idempotency_key(
                    "booking_refund",
                    booking_id=booking.booking_id,
                    amount_cents=amount,
                    currency=booking.currency,
                ),
                metadata={
                    "booking_id": booking.booking_id,
                    "refund_percent": str(result.refund_percent),
                    "reason": "customer_cancellation",
                },
            )
        except (ProviderTransientError, ProviderPermanentError) as exc:
            async with begin_unit(self.session):
                booking.refund_status = statuses.REFUND_FAILED
            metrics.record_refund("failed")
            warning = await report_reconciliation_warning(
                ReconciliationWarning(
                    kind=REFUND_FAILED,
                    detail=f"Booking cancelled but refund was not issued: {exc.detail}",
                    booking_id=booking.booking_id,
                    payment_intent_id=payment.payment_intent_id if payment is not None else None,
                    charge_ref=charge_ref,
                    amount_cents=result.refund_cents,
                ),
                notifier=self.notifier,
            )
            result.refund_status = statuses.REFUND_FAILED
            result.warning = warning.detail
            return

        async with begin_unit(self.session):
            booking.refund_status = statuses.REFUND_SUCCEEDED
            booking.refund_ref = refund.id
            booking.refund_cents = refund.amount_cents
            if payment is not None:
                fully = charge.amount_refunded_cents + refund.amount_cents >= charge.amount_cents
                payment.status = statuses.PAYMENT_REFUNDED if fully else statuses.PAYMENT_PARTIALLY_REFUNDED
        metrics.record_refund("succeeded")
        result.refund_status = statuses.REFUND_SUCCEEDED
        result.refund_ref = refund.id
        result.refund_cents = refund.amount_cents
