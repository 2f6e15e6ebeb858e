from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxrental.api.serializers import booking_response
from boxrental.dependencies import get_clock, get_notifier, get_payment_provider, get_pricing_config
from boxrental.domain.bookings import schemas, statuses
from boxrental.domain.bookings.checkout import start_checkout
from boxrental.domain.bookings.db_models import StripeEvent
from boxrental.domain.bookings.extensions import ExtensionEngine
from boxrental.domain.bookings.materializer import BookingMaterializer
from boxrental.domain.bookings.metadata import KIND_BOOKING, KIND_EXTENSION
from boxrental.domain.errors import ConflictError, ProviderTransientError, ValidationError
from boxrental.domain.payments import settlement
from boxrental.domain.pricing.config_loader import PricingConfig
from boxrental.infra import stripe_client as stripe_infra
from boxrental.infra.db import get_db_session
from boxrental.infra.metrics import metrics
from boxrental.settings import settings
from boxrental.shared.circuit_breaker import CircuitBreakerOpenError
from boxrental.shared.clock import Clock

router = APIRouter()
logger = logging.getLogger(__name__)

EVENT_PROCESSING = "processing"
EVENT_SUCCEEDED = "succeeded"
EVENT_IGNORED = "ignored"
EVENT_ERROR = "error"


def _safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, dict):
        return source.get(key, default)
    try:
        return source[key]  # type: ignore[index]
    except (KeyError, TypeError, AttributeError):
        return getattr(source, key, default)


def _event_object(event: Any) -> Any:
    data = _safe_get(event, "data", {}) or {}
    return _safe_get(data, "object", {}) or {}


def _event_metadata(event: Any) -> dict[str, str]:
    metadata = _safe_get(_event_object(event), "metadata", {}) or {}
    if isinstance(metadata, dict):
        return {str(key): str(value) for key, value in metadata.items()}
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        return {str(key): str(value) for key, value in to_dict().items()}
    return {}


@router.post(
    "/v1/payments/checkout",
    response_model=schemas.CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkout(
    request: schemas.CheckoutRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    pricing: PricingConfig = Depends(get_pricing_config),
) -> schemas.CheckoutResponse:
    checkout = await start_checkout(
        session,
        get_payment_provider(http_request),
        pricing=pricing,
        box_id=request.box_id,
        start=request.start_at,
        end=request.end_at,
        contact_email=request.contact_email,
    )
    await session.commit()
    return schemas.CheckoutResponse(
        payment_id=checkout.payment_id,
        payment_intent_id=checkout.payment_intent_id,
        client_secret=checkout.client_secret,
        amount_cents=checkout.quote.total_cents,
        currency=checkout.quote.currency,
        days=checkout.quote.days,
        price_per_day_cents=checkout.quote.price_per_day_cents,
    )


@router.post(
    "/v1/payments/{payment_intent_id}/process-success",
    response_model=schemas.MaterializationResponse,
)
async def process_payment_success(
    payment_intent_id: str,
    http_request: Request,
    request: schemas.ProcessSuccessRequest | None = Body(None),
    session: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
) -> schemas.MaterializationResponse:
    materializer = BookingMaterializer(
        session,
        get_payment_provider(http_request),
        clock=clock,
        notifier=get_notifier(http_request),
    )
    result = await materializer.materialize(
        payment_intent_id, contact_email=request.contact_email if request else None
    )
    return schemas.MaterializationResponse(
        booking=booking_response(result.booking),
        already_processed=result.already_processed,
        already_confirmed=result.already_confirmed,
    )


@router.get(
    "/v1/payments/{payment_intent_id}/booking",
    response_model=schemas.PaymentBookingResponse,
)
async def booking_by_payment_intent(
    payment_intent_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> schemas.PaymentBookingResponse:
    payment, booking = await settlement.booking_for_payment_intent(session, payment_intent_id)
    return schemas.PaymentBookingResponse(
        booking=booking_response(booking),
        payment=schemas.PaymentSummaryResponse(
            payment_id=payment.payment_id,
            kind=payment.kind,
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            status=payment.status,
        ),
    )


async def _mark_payment_failed(session: AsyncSession, payment_intent_id: str | None) -> bool:
    if not payment_intent_id:
        return False
    async with session.begin():
        payment = await settlement.lock_payment_by_intent(session, payment_intent_id)
        if payment is None or payment.status != statuses.PAYMENT_PENDING:
            return False
        payment.status = statuses.PAYMENT_FAILED
    logger.info("payment_failed_recorded", extra={"extra": {"payment_intent_id": payment_intent_id}})
    return True


async def _handle_webhook_event(session: AsyncSession, event: Any, http_request: Request) -> bool:
    event_type = _safe_get(event, "type")
    payment_intent_id = _safe_get(_event_object(event), "id")
    if event_type == "payment_intent.payment_failed":
        return await _mark_payment_failed(session, payment_intent_id)
    if event_type != "payment_intent.succeeded" or not payment_intent_id:
        logger.info("stripe_webhook_ignored", extra={"extra": {"reason": "event_type", "event_type": event_type}})
        return False

    provider = get_payment_provider(http_request)
    notifier = get_notifier(http_request)
    clock = get_clock(http_request)
    kind = _event_metadata(event).get("kind")
    if kind == KIND_BOOKING:
        await BookingMaterializer(session, provider, clock=clock, notifier=notifier).materialize(payment_intent_id)
        return True
    if kind == KIND_EXTENSION:
        engine = ExtensionEngine(session, provider, pricing=get_pricing_config(), clock=clock, notifier=notifier)
        await engine.complete_extension(payment_intent_id)
        return True
    logger.info(
        "stripe_webhook_ignored",
        extra={"extra": {"reason": "missing_metadata", "event_type": event_type}},
    )
    return False


async def _claim_event(
    session: AsyncSession, event_id: str, payload_hash: str, event: Any
) -> StripeEvent | None:
    """Record the event as in-flight; ``None`` when it was already handled."""
    metadata = _event_metadata(event)
    async with session.begin():
        existing = await session.scalar(
            select(StripeEvent).where(StripeEvent.event_id == event_id).with_for_update()
        )
        if existing is not None:
            if existing.payload_hash != payload_hash:
                logger.warning("stripe_webhook_replayed_mismatch", extra={"extra": {"event_id": event_id}})
                metrics.record_webhook_error("payload_mismatch")
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Event payload mismatch")
            if existing.status in {EVENT_SUCCEEDED, EVENT_IGNORED}:
                logger.info(
                    "stripe_webhook_duplicate",
                    extra={"extra": {"event_id": event_id, "status": existing.status}},
                )
                return None
            existing.status = EVENT_PROCESSING
            return existing
        record = StripeEvent(
            event_id=event_id,
            status=EVENT_PROCESSING,
            payload_hash=payload_hash,
            event_type=_safe_get(event, "type"),
            payment_intent_id=_safe_get(_event_object(event), "id"),
            booking_id=metadata.get("booking_id"),
        )
        session.add(record)
    return record


async def _reset_session(session: AsyncSession) -> None:
    if session.in_transaction():
        await session.rollback()


async def _finish_event(session: AsyncSession, event_id: str, event_status: str, error: str | None) -> None:
    async with session.begin():
        record = await session.get(StripeEvent, event_id, with_for_update=True)
        if record is None:
            return
        record.status = event_status
        record.last_error = error
        record.processed_at = datetime.now(tz=timezone.utc)


async def _stripe_webhook_handler(http_request: Request, session: AsyncSession) -> dict[str, bool]:
    payload = await http_request.body()
    sig_header = http_request.headers.get("Stripe-Signature")
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe webhook disabled")

    outcome = "error"
    try:
        stripe_client = get_payment_provider(http_request)
        try:
            event = await stripe_infra.call_stripe_client_method(
                stripe_client, "verify_webhook", payload=payload, signature=sig_header
            )
        except (CircuitBreakerOpenError, ProviderTransientError) as exc:
            metrics.record_webhook_error("stripe_unavailable")
            logger.warning("stripe_webhook_circuit_open", extra={"extra": {"reason": type(exc).__name__}})
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Stripe temporarily unavailable",
            ) from exc
        except Exception as exc:  # noqa: BLE001
            metrics.record_webhook_error("invalid_signature")
            logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": type(exc).__name__}})
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe webhook") from exc

        event_id = _safe_get(event, "id")
        if not event_id:
            metrics.record_webhook_error("missing_event_id")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id")
        event_id = str(event_id)

        livemode = _safe_get(event, "livemode")
        if livemode is not None and bool(livemode) != settings.stripe_live_mode:
            logger.warning(
                "stripe_webhook_mode_mismatch",
                extra={"extra": {"event_id": event_id, "livemode": bool(livemode)}},
            )
            metrics.record_webhook_error("mode_mismatch")
            outcome = "ignored"
            return {"received": True, "processed": False}

        record = await _claim_event(session, event_id, hashlib.sha256(payload or b"").hexdigest(), event)
        if record is None:
            outcome = "ignored"
            return {"received": True, "processed": False}

        try:
            processed = await _handle_webhook_event(session, event, http_request)
        except (ConflictError, ValidationError) as exc:
            # Redelivery cannot change the outcome; reconciliation already has it.
            logger.warning(
                "stripe_webhook_unprocessable",
                extra={"extra": {"event_id": event_id, "reason": exc.kind, "detail": exc.detail}},
            )
            metrics.record_webhook_error(exc.kind)
            await _reset_session(session)
            await _finish_event(session, event_id, EVENT_IGNORED, exc.detail)
            outcome = "ignored"
            return {"received": True, "processed": False}
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "stripe_webhook_error",
                extra={"extra": {"event_id": event_id, "reason": type(exc).__name__}},
            )
            metrics.record_webhook_error("processing_error")
            await _reset_session(session)
            await _finish_event(session, event_id, EVENT_ERROR, str(exc))
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Stripe webhook processing error",
            ) from exc

        await _finish_event(session, event_id, EVENT_SUCCEEDED if processed else EVENT_IGNORED, None)
        outcome = "processed" if processed else "ignored"
        return {"received": True, "processed": processed}
    finally:
        metrics.record_stripe_webhook(outcome)


@router.post("/v1/payments/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    http_request: Request, session: AsyncSession = Depends(get_db_session)
) -> dict[str, bool]:
    return await _stripe_webhook_handler(http_request, session)
