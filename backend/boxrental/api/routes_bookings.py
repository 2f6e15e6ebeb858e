from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from boxrental.api.serializers import booking_response
from boxrental.dependencies import get_clock, get_notifier, get_payment_provider, get_pricing_config
from boxrental.domain.bookings import schemas
from boxrental.domain.bookings.cancellation import CancellationEngine
from boxrental.domain.bookings.extensions import ExtensionEngine
from boxrental.domain.bookings.problems import report_problems
from boxrental.domain.bookings.status_engine import StatusSyncer, record_return
from boxrental.domain.pricing.config_loader import PricingConfig
from boxrental.infra.db import get_db_session, get_session_factory
from boxrental.shared.clock import Clock

router = APIRouter()
logger = logging.getLogger(__name__)


def _extension_engine(
    http_request: Request, session: AsyncSession, pricing: PricingConfig, clock: Clock
) -> ExtensionEngine:
    return ExtensionEngine(
        session,
        get_payment_provider(http_request),
        pricing=pricing,
        clock=clock,
        notifier=get_notifier(http_request),
    )


@router.post("/v1/bookings/sync-statuses", response_model=schemas.SyncStatusesResponse)
async def sync_statuses(
    http_request: Request,
    request: schemas.SyncStatusesRequest | None = Body(None),
    clock: Clock = Depends(get_clock),
) -> schemas.SyncStatusesResponse:
    session_factory = getattr(http_request.app.state, "db_session_factory", None) or get_session_factory()
    syncer = StatusSyncer(session_factory, clock=clock)
    result = await syncer.sync_many(
        request.booking_ids if request else None,
        owner_email=request.owner_email if request else None,
    )
    return schemas.SyncStatusesResponse(**result.as_dict())


@router.post("/v1/bookings/{booking_id}/return", response_model=schemas.BookingResponse)
async def return_booking(
    booking_id: str,
    request: schemas.ReturnRequest | None = Body(None),
    session: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
) -> schemas.BookingResponse:
    booking = await record_return(
        session,
        booking_id,
        clock=clock,
        returned_at=request.returned_at if request else None,
    )
    return booking_response(booking)


@router.post("/v1/bookings/{booking_id}/problems", response_model=schemas.ReportProblemsResponse)
async def report_booking_problems(
    booking_id: str,
    request: schemas.ReportProblemsRequest,
    session: AsyncSession = Depends(get_db_session),
) -> schemas.ReportProblemsResponse:
    booking = await report_problems(session, booking_id, [problem.model_dump() for problem in request.problems])
    return schemas.ReportProblemsResponse(
        booking_id=booking.booking_id,
        problems=[schemas.ProblemReport(**problem) for problem in booking.problems or []],
    )


@router.get("/v1/bookings/{booking_id}/cancellation", response_model=schemas.CancellationPreviewResponse)
async def cancellation_preview(
    booking_id: str,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    pricing: PricingConfig = Depends(get_pricing_config),
    clock: Clock = Depends(get_clock),
) -> schemas.CancellationPreviewResponse:
    engine = CancellationEngine(session, get_payment_provider(http_request), pricing=pricing, clock=clock)
    quote = await engine.can_cancel_booking(booking_id)
    return schemas.CancellationPreviewResponse(
        booking_id=booking_id,
        can_cancel=quote.eligible,
        refund_percent=quote.refund_percent,
        refund_cents=quote.refund_cents,
        transaction_fee_cents=quote.transaction_fee_cents,
        reason=quote.reason,
        policy=quote.policy,
        hours_until_start=quote.hours_until_start,
    )


@router.post("/v1/bookings/{booking_id}/cancel", response_model=schemas.CancellationResponse)
async def cancel_booking(
    booking_id: str,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    pricing: PricingConfig = Depends(get_pricing_config),
    clock: Clock = Depends(get_clock),
) -> schemas.CancellationResponse:
    engine = CancellationEngine(
        session,
        get_payment_provider(http_request),
        pricing=pricing,
        clock=clock,
        notifier=get_notifier(http_request),
    )
    result = await engine.cancel_booking(booking_id)
    return schemas.CancellationResponse(
        success=result.success,
        booking_id=result.booking_id,
        refund_percent=result.refund_percent,
        refund_cents=result.refund_cents,
        transaction_fee_cents=result.transaction_fee_cents,
        reason=result.reason,
        refund_status=result.refund_status,
        refund_ref=result.refund_ref,
        warning=result.warning,
    )


@router.post("/v1/bookings/{booking_id}/extension/quote", response_model=schemas.ExtensionQuoteResponse)
async def extension_quote(
    booking_id: str,
    request: schemas.ExtensionRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    pricing: PricingConfig = Depends(get_pricing_config),
    clock: Clock = Depends(get_clock),
) -> schemas.ExtensionQuoteResponse:
    quote = await _extension_engine(http_request, session, pricing, clock).quote(booking_id, request.new_end_at)
    return schemas.ExtensionQuoteResponse(
        booking_id=booking_id,
        can_extend=quote.can_extend,
        additional_days=quote.additional_days,
        additional_cents=quote.additional_cents,
        price_per_day_cents=quote.price_per_day_cents,
        currency=quote.currency,
        reason=quote.reason,
        conflicting_booking_id=quote.conflicting_booking_id,
    )


@router.post(
    "/v1/bookings/{booking_id}/extension/checkout",
    response_model=schemas.ExtensionCheckoutResponse,
    status_code=201,
)
async def extension_checkout(
    booking_id: str,
    request: schemas.ExtensionRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    pricing: PricingConfig = Depends(get_pricing_config),
    clock: Clock = Depends(get_clock),
) -> schemas.ExtensionCheckoutResponse:
    engine = _extension_engine(http_request, session, pricing, clock)
    checkout = await engine.start_extension_checkout(booking_id, request.new_end_at)
    await session.commit()
    return schemas.ExtensionCheckoutResponse(
        booking_id=booking_id,
        payment_id=checkout.payment_id,
        payment_intent_id=checkout.payment_intent_id,
        client_secret=checkout.client_secret,
        additional_days=checkout.quote.additional_days,
        additional_cents=checkout.quote.additional_cents,
        currency=checkout.quote.currency,
    )


@router.post(
    "/v1/bookings/{booking_id}/extension/complete",
    response_model=schemas.ExtensionCompleteResponse,
)
async def extension_complete(
    booking_id: str,
    request: schemas.ExtensionCompleteRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    pricing: PricingConfig = Depends(get_pricing_config),
    clock: Clock = Depends(get_clock),
) -> schemas.ExtensionCompleteResponse:
    engine = _extension_engine(http_request, session, pricing, clock)
    result = await engine.complete_extension(request.payment_intent_id, booking_id=booking_id)
    return schemas.ExtensionCompleteResponse(
        booking=booking_response(result.booking),
        extension_id=result.extension.extension_id,
        additional_days=result.extension.additional_days,
        additional_cents=result.extension.additional_cents,
        already_processed=result.already_processed,
    )
