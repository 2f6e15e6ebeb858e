from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    box_id: str
    start_at: datetime
    end_at: datetime
    contact_email: str | None = Field(None, max_length=320)

    @model_validator(mode="after")
    def check_range(self) -> "CheckoutRequest":
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self


class CheckoutResponse(BaseModel):
    payment_id: str
    payment_intent_id: str
    client_secret: str | None
    amount_cents: int
    currency: str
    days: int
    price_per_day_cents: int


class ProcessSuccessRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contact_email: str | None = Field(None, max_length=320)


class BookingResponse(BaseModel):
    booking_id: str
    box_id: str
    status: str
    start_at: datetime
    end_at: datetime
    total_cents: int
    currency: str
    returned_at: datetime | None = None
    cancelled_at: datetime | None = None
    refund_status: str | None = None


class MaterializationResponse(BaseModel):
    booking: BookingResponse
    already_processed: bool
    already_confirmed: bool


class IntervalResponse(BaseModel):
    start: datetime
    end: datetime


class AvailabilityResponse(BaseModel):
    box_id: str
    start_at: datetime
    end_at: datetime
    available: bool
    conflicting_booking_ids: list[str]


class BlockedRangesResponse(BaseModel):
    box_id: str
    ranges: list[IntervalResponse]
    merge_grace_hours: float


class EarliestStartResponse(BaseModel):
    box_id: str
    duration_days: int
    earliest_start: datetime | None


class ModelBlockedRangesResponse(BaseModel):
    location_id: str
    model: str
    ranges: list[IntervalResponse]
    total_bookings: int
    merged_ranges_count: int
    total_boxes: int
    available_boxes: int
    fully_booked_until: datetime | None = None


class SyncStatusesRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    booking_ids: list[str] | None = None
    owner_email: str | None = None


class SyncFailureResponse(BaseModel):
    booking_id: str
    error: str


class SyncStatusesResponse(BaseModel):
    updated: int
    unchanged: int
    failed: list[SyncFailureResponse]


class ReturnRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    returned_at: datetime | None = None


class CancellationPreviewResponse(BaseModel):
    booking_id: str
    can_cancel: bool
    refund_percent: int
    refund_cents: int
    transaction_fee_cents: int
    reason: str
    policy: str | None = None
    hours_until_start: float | None = None


class CancellationResponse(BaseModel):
    success: bool
    booking_id: str
    refund_percent: int
    refund_cents: int
    transaction_fee_cents: int
    reason: str
    refund_status: Literal["not_required", "pending", "succeeded", "failed"]
    refund_ref: str | None = None
    warning: str | None = None


class ExtensionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    new_end_at: datetime


class ExtensionQuoteResponse(BaseModel):
    booking_id: str
    can_extend: bool
    additional_days: int
    additional_cents: int
    price_per_day_cents: int
    currency: str
    reason: str
    conflicting_booking_id: str | None = None


class ExtensionCheckoutResponse(BaseModel):
    booking_id: str
    payment_id: str
    payment_intent_id: str
    client_secret: str | None
    additional_days: int
    additional_cents: int
    currency: str


class ExtensionCompleteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_intent_id: str


class ExtensionCompleteResponse(BaseModel):
    booking: BookingResponse
    extension_id: str
    additional_days: int
    additional_cents: int
    already_processed: bool


class PaymentSummaryResponse(BaseModel):
    payment_id: str
    kind: str
    amount_cents: int
    currency: str
    status: str


class PaymentBookingResponse(BaseModel):
    booking: BookingResponse
    payment: PaymentSummaryResponse


class ProblemReport(BaseModel):
    type: str
    description: str | None = Field(None, max_length=2000)


class ReportProblemsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    problems: list[ProblemReport]


class ReportProblemsResponse(BaseModel):
    booking_id: str
    problems: list[ProblemReport]
