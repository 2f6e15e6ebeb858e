from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from boxrental.domain.bookings import statuses
from boxrental.infra.db import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Location(Base):
    __tablename__ = "locations"

    location_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_per_day_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    stands: Mapped[list["Stand"]] = relationship("Stand", back_populates="location")


class Stand(Base):
    __tablename__ = "stands"

    stand_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    location_id: Mapped[str] = mapped_column(
        ForeignKey("locations.location_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    location: Mapped[Location] = relationship("Location", back_populates="stands")
    boxes: Mapped[list["Box"]] = relationship("Box", back_populates="stand")

    __table_args__ = (Index("ix_stands_location_id", "location_id"),)


class Box(Base):
    __tablename__ = "boxes"

    box_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    stand_id: Mapped[str] = mapped_column(ForeignKey("stands.stand_id", ondelete="CASCADE"), nullable=False)
    display_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    model: Mapped[str] = mapped_column(String(16), nullable=False, default=statuses.BOX_MODEL_CLASSIC)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=statuses.BOX_ACTIVE)
    price_per_day_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    stand: Mapped[Stand] = relationship("Stand", back_populates="boxes")

    __table_args__ = (Index("ix_boxes_stand_model", "stand_id", "model"),)


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    box_id: Mapped[str] = mapped_column(ForeignKey("boxes.box_id"), nullable=False)
    payment_id: Mapped[str | None] = mapped_column(ForeignKey("payments.payment_id"), nullable=True)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=statuses.PENDING)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="SEK")
    contact_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    problems: Mapped[list | None] = mapped_column(JSON, nullable=True)
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refund_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refund_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    refund_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    box: Mapped[Box] = relationship("Box")
    payment: Mapped[Optional["Payment"]] = relationship("Payment", foreign_keys=[payment_id])
    extensions: Mapped[list["BookingExtension"]] = relationship(
        "BookingExtension", back_populates="booking", order_by="BookingExtension.created_at"
    )

    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_bookings_payment_id"),
        CheckConstraint("end_at > start_at", name="ck_bookings_interval"),
        Index("ix_bookings_box_status", "box_id", "status"),
        Index("ix_bookings_box_range", "box_id", "start_at", "end_at"),
        Index("ix_bookings_contact_email", "contact_email"),
    )


class Payment(Base):
    __tablename__ = "payments"

    payment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default=statuses.PAYMENT_KIND_BOOKING)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="stripe")
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    charge_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=statuses.PAYMENT_PENDING)
    contact_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("provider", "charge_ref", name="uq_payments_provider_charge_ref"),
        UniqueConstraint("provider", "payment_intent_id", name="uq_payments_provider_intent"),
        Index("ix_payments_booking_id", "booking_id"),
    )


class BookingExtension(Base):
    __tablename__ = "booking_extensions"

    extension_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.booking_id", ondelete="CASCADE"), nullable=False
    )
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.payment_id"), nullable=False)
    previous_end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    new_end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    additional_days: Mapped[int] = mapped_column(Integer, nullable=False)
    additional_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    booking: Mapped[Booking] = relationship("Booking", back_populates="extensions")

    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_booking_extensions_payment_id"),
        Index("ix_booking_extensions_booking_id", "booking_id"),
    )


class StripeEvent(Base):
    __tablename__ = "stripe_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(128))
    payment_intent_id: Mapped[str | None] = mapped_column(String(255))
    booking_id: Mapped[str | None] = mapped_column(String(36))
    last_error: Mapped[str | None] = mapped_column(Text())
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_stripe_events_payload_hash", "payload_hash"),
        Index("ix_stripe_events_payment_intent_id", "payment_intent_id"),
    )
