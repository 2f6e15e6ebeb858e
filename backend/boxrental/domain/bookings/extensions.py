from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from boxrental.domain.availability.service import AvailabilityIndex, SqlBookingLookup, lock_box
from boxrental.domain.bookings import statuses
from boxrental.domain.bookings.db_models import Booking, BookingExtension, Box, Location, Payment, Stand
from boxrental.domain.bookings.metadata import KIND_EXTENSION, BookingPaymentMetadata, parse_payment_metadata
from boxrental.domain.errors import (
    BoxNoLongerAvailable,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from boxrental.domain.intervals import Interval, days_between
from boxrental.domain.payments import settlement
from boxrental.domain.payments.provider import PaymentProvider, ProviderPaymentIntent
from boxrental.domain.pricing.config_loader import PricingConfig
from boxrental.domain.pricing.service import quote_extension
from boxrental.domain.reconciliation import EXTENSION_CONFLICT, ReconciliationWarning, report_reconciliation_warning
from boxrental.infra.db import begin_unit
from boxrental.infra.metrics import metrics
from boxrental.infra.notifications import BOOKING_EXTENDED, Notifier, dispatch_notification
from boxrental.infra.stripe_client import call_stripe_client_method
from boxrental.infra.stripe_idempotency import make_stripe_idempotency_key
from boxrental.shared.clock import Clock, ensure_utc, system_clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtensionQuote:
    can_extend: bool
    additional_days: int
    additional_cents: int
    price_per_day_cents: int
    currency: str
    reason: str
    conflicting_booking_id: str | None = None
    new_end: datetime | None = None


@dataclass(frozen=True)
class ExtensionCheckout:
    quote: ExtensionQuote
    payment_id: str
    payment_intent_id: str
    client_secret: str | None


@dataclass
class ExtensionResult:
    booking: Booking
    extension: BookingExtension
    already_processed: bool = False


def _rejected(reason: str, currency: str, *, conflicting_booking_id: str | None = None) -> ExtensionQuote:
    return ExtensionQuote(
        can_extend=False,
        additional_days=0,
        additional_cents=0,
        price_per_day_cents=0,
        currency=currency,
        reason=reason,
        conflicting_booking_id=conflicting_booking_id,
    )


class ExtensionEngine:
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
        self.availability = AvailabilityIndex(SqlBookingLookup(session))

    async def _load_booking(self, booking_id: str, *, for_update: bool = False) -> Booking:
        stmt = select(Booking).where(Booking.booking_id == booking_id)
        if for_update:
            stmt = stmt.with_for_update()
        booking = await self.session.scalar(stmt)
        if booking is None:
            raise NotFoundError(detail=f"Booking {booking_id} not found")
        return booking

    async def _box_pricing(self, box_id: str) -> tuple[Box, int | None]:
        row = (
            await self.session.execute(
                select(Box, Location.price_per_day_cents)
                .join(Stand, Stand.stand_id == Box.stand_id)
                .join(Location, Location.location_id == Stand.location_id)
                .where(Box.box_id == box_id)
            )
        ).first()
        if row is None:
            raise NotFoundError(detail=f"Box {box_id} not found")
        return row[0], row[1]

    async def calculate_extension(self, booking: Booking, new_end: datetime) -> ExtensionQuote:
        currency = booking.currency
        if booking.status == statuses.CANCELLED:
            return _rejected("Cannot extend a cancelled booking.", currency)
        if booking.status == statuses.COMPLETED:
            return _rejected("Cannot extend a completed booking.", currency)

        new_end = ensure_utc(new_end)
        current_end = ensure_utc(booking.end_at)
        if new_end <= current_end:
            return _rejected("New end must be after the current end.", currency)

        box, location_price = await self._box_pricing(booking.box_id)
        quote = quote_extension(
            self.pricing,
            model=box.model,
            current_end=current_end,
            new_end=new_end,
            box_price_cents=box.price_per_day_cents,
            location_price_cents=location_price,
        )
        conflicts = await self.availability.conflicts(
            booking.box_id, Interval(current_end, new_end), exclude_booking_id=booking.booking_id
        )
        if conflicts:
            blocking = conflicts[0]
            return ExtensionQuote(
                can_extend=False,
                additional_days=quote.days,
                additional_cents=quote.total_cents,
                price_per_day_cents=quote.price_per_day_cents,
                currency=currency,
                reason=(
                    f"Box is booked by booking {blocking.booking_id} from "
                    f"{blocking.start.isoformat()}; the extension would overlap it."
                ),
                conflicting_booking_id=blocking.booking_id,
                new_end=new_end,
            )
        plural = "day" if quote.days == 1 else "days"
        return ExtensionQuote(
            can_extend=True,
            additional_days=quote.days,
            additional_cents=quote.total_cents,
            price_per_day_cents=quote.price_per_day_cents,
            currency=currency,
            reason=f"Extension adds {quote.days} {plural} to the booking.",
            new_end=new_end,
        )

    async def quote(self, booking_id: str, new_end: datetime) -> ExtensionQuote:
        booking = await self._load_booking(booking_id)
        return await self.calculate_extension(booking, new_end)

    async def start_extension_checkout(self, booking_id: str, new_end: datetime) -> ExtensionCheckout:
        booking = await self._load_booking(booking_id)
        quote = await self.calculate_extension(booking, new_end)
        if not quote.can_extend:
            if quote.conflicting_booking_id:
                raise ConflictError(
                    detail=quote.reason,
                    errors=[{"field": "new_end", "message": f"conflicts with booking {quote.conflicting_booking_id}"}],
                )
            raise ValidationError(detail=quote.reason, errors=[{"field": "new_end", "message": quote.reason}])

        meta = BookingPaymentMetadata(
            kind=KIND_EXTENSION,
            box_id=booking.box_id,
            start_at=ensure_utc(booking.end_at),
            end_at=quote.new_end,
            amount_cents=quote.additional_cents,
            currency=quote.currency,
            contact_email=booking.contact_email,
            booking_id=booking.booking_id,
        )
        created = await call_stripe_client_method(
            self.provider,
            "create_payment_intent",
            amount_cents=quote.additional_cents,
            currency=quote.currency,
            metadata=meta.to_provider(),
            receipt_email=booking.contact_email,
            idempotency_key=make_stripe_idempotency_key(
                "booking_extension",
                booking_id=booking.booking_id,
                amount_cents=quote.additional_cents,
                currency=quote.currency,
                extra={"from": meta.start_at.isoformat(), "to": meta.end_at.isoformat()},
            ),
        )
        payment = await self._record_checkout_payment(booking, created.id, quote)
        logger.info(
            "extension_checkout_started",
            extra={
                "extra": {
                    "booking_id": booking.booking_id,
                    "payment_intent_id": created.id,
                    "additional_days": quote.additional_days,
                }
            },
        )
        return ExtensionCheckout(
            quote=quote,
            payment_id=payment.payment_id,
            payment_intent_id=created.id,
            client_secret=created.client_secret,
        )

    async def _record_checkout_payment(self, booking: Booking, payment_intent_id: str, quote: ExtensionQuote) -> Payment:
        async with begin_unit(self.session):
            existing = await settlement.lock_payment_by_intent(self.session, payment_intent_id)
            if existing is not None:
                return existing
            try:
                async with self.session.begin_nested():
                    payment = Payment(
                        booking_id=booking.booking_id,
                        kind=statuses.PAYMENT_KIND_EXTENSION,
                        provider=settlement.PROVIDER,
                        payment_intent_id=payment_intent_id,
                        amount_cents=quote.additional_cents,
                        currency=quote.currency,
                        contact_email=booking.contact_email,
                    )
                    self.session.add(payment)
                    await self.session.flush()
            except IntegrityError:
                payment = await settlement.lock_payment_by_intent(self.session, payment_intent_id)
                if payment is None:
                    raise
            return payment

    async def _applied(self, payment: Payment) -> ExtensionResult | None:
        extension = await self.session.scalar(
            select(BookingExtension).where(BookingExtension.payment_id == payment.payment_id)
        )
        if extension is None:
            return None
        booking = await self._load_booking(extension.booking_id)
        return ExtensionResult(booking=booking, extension=extension, already_processed=True)

    async def complete_extension(self, payment_intent_id: str, *, booking_id: str | None = None) -> ExtensionResult:
        intent, charge_ref = await settlement.resolve_settled_intent(self.provider, payment_intent_id)
        meta = parse_payment_metadata(intent.metadata, expected_kind=KIND_EXTENSION)
        if booking_id is not None and meta.booking_id != booking_id:
            raise ValidationError(
                detail=f"Payment {payment_intent_id} does not belong to booking {booking_id}",
                errors=[{"field": "payment_intent_id", "message": "belongs to a different booking"}],
            )
        now = self.clock.now()

        async with begin_unit(self.session):
            payment = await settlement.find_payment(self.session, charge_ref, payment_intent_id)
            if payment is not None:
                applied = await self._applied(payment)
                if applied is not None:
                    result = applied
                else:
                    result = await self._apply(intent, charge_ref, meta, payment, now)
            else:
                result = await self._apply(intent, charge_ref, meta, None, now)

        if result.already_processed:
            logger.info(
                "extension_already_applied",
                extra={"extra": {"payment_intent_id": payment_intent_id, "booking_id": result.booking.booking_id}},
            )
            return result

        metrics.record_booking("extended")
        logger.info(
            "booking_extended",
            extra={
                "extra": {
                    "booking_id": result.booking.booking_id,
                    "payment_intent_id": payment_intent_id,
                    "additional_days": result.extension.additional_days,
                }
            },
        )
        await dispatch_notification(
            self.notifier,
            BOOKING_EXTENDED,
            {
                "booking_id": result.booking.booking_id,
                "new_end_at": ensure_utc(result.booking.end_at).isoformat(),
                "additional_cents": result.extension.additional_cents,
                "contact_email": result.booking.contact_email,
            },
        )
        return result

    async def _apply(
        self,
        intent: ProviderPaymentIntent,
        charge_ref: str,
        meta: BookingPaymentMetadata,
        payment: Payment | None,
        now: datetime,
    ) -> ExtensionResult:
        booking = await self._load_booking(meta.booking_id, for_update=True)
        await lock_box(self.session, booking.box_id)
        previous_end = ensure_utc(booking.end_at)
        new_end = meta.end_at

        problem: str | None = None
        if booking.status in statuses.TERMINAL_STATUSES:
            problem = f"Booking is {booking.status.lower()}; extension payment cannot be applied"
        elif new_end <= previous_end:
            problem = "Booking already ends at or after the paid extension end"
        else:
            conflicts = await self.availability.conflicts(
                booking.box_id, Interval(previous_end, new_end), exclude_booking_id=booking.booking_id
            )
            if conflicts:
                problem = f"Extension overlaps booking {conflicts[0].booking_id}"
        if problem is not None:
            await report_reconciliation_warning(
                ReconciliationWarning(
                    kind=EXTENSION_CONFLICT,
                    detail=f"Extension paid but not applied: {problem}",
                    booking_id=booking.booking_id,
                    payment_intent_id=intent.id,
                    charge_ref=charge_ref,
                    amount_cents=intent.amount_cents,
                ),
                notifier=self.notifier,
            )
            raise BoxNoLongerAvailable(detail=problem)

        additional_days = days_between(previous_end, new_end)
        try:
            async with self.session.begin_nested():
                if payment is None:
                    payment = Payment(
                        kind=statuses.PAYMENT_KIND_EXTENSION,
                        provider=settlement.PROVIDER,
                        payment_intent_id=intent.id,
                        amount_cents=intent.amount_cents,
                        currency=intent.currency or meta.currency,
                        contact_email=meta.contact_email,
                    )
                    self.session.add(payment)
                payment.booking_id = booking.booking_id
                payment.charge_ref = charge_ref
                payment.status = statuses.PAYMENT_SUCCEEDED
                payment.received_at = now
                await self.session.flush()

                extension = BookingExtension(
                    booking_id=booking.booking_id,
                    payment_id=payment.payment_id,
                    previous_end_at=previous_end,
                    new_end_at=new_end,
                    additional_days=additional_days,
                    additional_cents=intent.amount_cents,
                )
                self.session.add(extension)
                booking.end_at = new_end
                booking.total_cents = booking.total_cents + intent.amount_cents
                if booking.status == statuses.OVERDUE and ensure_utc(now) < new_end:
                    booking.status = statuses.ACTIVE
                await self.session.flush()
        except IntegrityError:
            found = await settlement.find_payment(self.session, charge_ref, intent.id)
            applied = await self._applied(found) if found is not None else None
            if applied is None:
                raise ConflictError(detail=f"Charge {charge_ref} is already linked to a different payment")
            return applied
        return ExtensionResult(booking=booking, extension=extension)
