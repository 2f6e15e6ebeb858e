"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "locations",
        sa.Column("location_id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("price_per_day_cents", sa.Integer()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "stands",
        sa.Column("stand_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "location_id",
            sa.String(length=36),
            sa.ForeignKey("locations.location_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
    )
    op.create_index("ix_stands_location_id", "stands", ["location_id"])
    op.create_table(
        "boxes",
        sa.Column("box_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "stand_id",
            sa.String(length=36),
            sa.ForeignKey("stands.stand_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("display_id", sa.String(length=32)),
        sa.Column("model", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("price_per_day_cents", sa.Integer()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_boxes_stand_model", "boxes", ["stand_id", "model"])
    op.create_table(
        "payments",
        sa.Column("payment_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36)),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("payment_intent_id", sa.String(length=255)),
        sa.Column("charge_ref", sa.String(length=255)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("contact_email", sa.String(length=320)),
        sa.Column("received_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("provider", "charge_ref", name="uq_payments_provider_charge_ref"),
        sa.UniqueConstraint("provider", "payment_intent_id", name="uq_payments_provider_intent"),
    )
    op.create_index("ix_payments_booking_id", "payments", ["booking_id"])
    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("box_id", sa.String(length=36), sa.ForeignKey("boxes.box_id"), nullable=False),
        sa.Column("payment_id", sa.String(length=36), sa.ForeignKey("payments.payment_id")),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("contact_email", sa.String(length=320)),
        sa.Column("problems", sa.JSON()),
        sa.Column("returned_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("refund_percent", sa.Integer()),
        sa.Column("refund_cents", sa.Integer()),
        sa.Column("refund_status", sa.String(length=16)),
        sa.Column("refund_ref", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            # ORM-managed updated_at (no database trigger).
            nullable=False,
        ),
        sa.UniqueConstraint("payment_id", name="uq_bookings_payment_id"),
        sa.CheckConstraint("end_at > start_at", name="ck_bookings_interval"),
    )
    op.create_index("ix_bookings_box_status", "bookings", ["box_id", "status"])
    op.create_index("ix_bookings_box_range", "bookings", ["box_id", "start_at", "end_at"])
    op.create_index("ix_bookings_contact_email", "bookings", ["contact_email"])
    op.create_table(
        "booking_extensions",
        sa.Column("extension_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("payment_id", sa.String(length=36), sa.ForeignKey("payments.payment_id"), nullable=False),
        sa.Column("previous_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("new_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("additional_days", sa.Integer(), nullable=False),
        sa.Column("additional_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("payment_id", name="uq_booking_extensions_payment_id"),
    )
    op.create_index("ix_booking_extensions_booking_id", "booking_extensions", ["booking_id"])
    op.create_table(
        "stripe_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=128)),
        sa.Column("payment_intent_id", sa.String(length=255)),
        sa.Column("booking_id", sa.String(length=36)),
        sa.Column("last_error", sa.Text()),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_stripe_events_payload_hash", "stripe_events", ["payload_hash"])
    op.create_index("ix_stripe_events_payment_intent_id", "stripe_events", ["payment_intent_id"])


def downgrade() -> None:
    op.drop_index("ix_stripe_events_payment_intent_id", table_name="stripe_events")
    op.drop_index("ix_stripe_events_payload_hash", table_name="stripe_events")
    op.drop_table("stripe_events")
    op.drop_index("ix_booking_extensions_booking_id", table_name="booking_extensions")
    op.drop_table("booking_extensions")
    op.drop_index("ix_bookings_contact_email", table_name="bookings")
    op.drop_index("ix_bookings_box_range", table_name="bookings")
    op.drop_index("ix_bookings_box_status", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_payments_booking_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_boxes_stand_model", table_name="boxes")
    op.drop_table("boxes")
    op.drop_index("ix_stands_location_id", table_name="stands")
    op.drop_table("stands")
    op.drop_table("locations")
