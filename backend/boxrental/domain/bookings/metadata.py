"""Typed metadata carried on payment intents.

The payment provider stores metadata as a flat ``str -> str`` map. Everything
the materializer and the extension engine need to act on a settled payment
travels through it, so it is versioned and validated on the way back in.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from boxrental.domain.errors import ValidationError
from boxrental.shared.clock import ensure_utc

METADATA_VERSION = "1"
KIND_BOOKING = "booking"
KIND_EXTENSION = "booking_extension"


class BookingPaymentMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal["1"] = Field(METADATA_VERSION, alias="v")
    kind: Literal["booking", "booking_extension"]
    box_id: str = Field(min_length=1)
    start_at: datetime
    end_at: datetime
    amount_cents: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=8)
    contact_email: str | None = None
    booking_id: str | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def check_shape(self) -> "BookingPaymentMetadata":
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        if self.kind == KIND_EXTENSION and not self.booking_id:
            raise ValueError("booking_extension metadata requires booking_id")
        return self

    def to_provider(self) -> dict[str, str]:
        payload = {
            "v": self.version,
            "kind": self.kind,
            "box_id": self.box_id,
            "start_at": self.start_at.isoformat(),
            "end_at": self.end_at.isoformat(),
            "amount_cents": str(self.amount_cents),
            "currency": self.currency,
        }
        if self.contact_email:
            payload["contact_email"] = self.contact_email
        if self.booking_id:
            payload["booking_id"] = self.booking_id
        return payload


def parse_payment_metadata(raw: Mapping[str, Any] | None, *, expected_kind: str | None = None) -> BookingPaymentMetadata:
    if not raw:
        raise ValidationError(detail="Payment intent carries no booking metadata")
    data = dict(raw)
    version = data.get("v")
    if version != METADATA_VERSION:
        raise ValidationError(
            detail=f"Unsupported payment metadata version: {version!r}",
            errors=[{"field": "v", "message": "unsupported version"}],
        )
    try:
        parsed = BookingPaymentMetadata.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]) or "metadata", "message": error["msg"]}
            for error in exc.errors()
        ]
        raise ValidationError(detail="Invalid payment metadata", errors=errors) from exc
    if expected_kind is not None and parsed.kind != expected_kind:
        raise ValidationError(
            detail=f"Payment intent is a {parsed.kind} payment, expected {expected_kind}",
            errors=[{"field": "kind", "message": "unexpected payment kind"}],
        )
    return parsed
