from datetime import timedelta
from types import SimpleNamespace

import pytest

from boxrental.domain.bookings import statuses
from boxrental.domain.bookings.cancellation import CancellationEngine, evaluate_cancellation
from boxrental.domain.bookings.db_models import Booking, Payment
from boxrental.domain.errors import ConflictError, NotFoundError, ProviderTransientError
from boxrental.domain.pricing.config_loader import PricingConfig
from boxrental.infra.notifications import BOOKING_CANCELLED, RECONCILIATION_REQUIRED
from boxrental.shared.clock import FrozenClock
from tests.fakes import NOW, FakeNotifier, FakeProvider, at, seed_booking, seed_box

TIERED = PricingConfig.model_validate(
    {
        "transaction_fee_cents": 100,
        "cancellation_policies": [
            {
                "name": "standard",
                "max_rental_days": None,
                "tiers": [
                    {"min_hours_before_start": 72, "refund_percent": 100, "apply_transaction_fee": True},
                    {"min_hours_before_start": 24, "refund_percent": 50, "apply_transaction_fee": True},
                    {"min_hours_before_start": 0, "refund_percent": 0},
                ],
            }
        ],
    }
)


def _booking(status=statuses.UPCOMING, *, start=at(5), days=2, total_cents=60000):
    return SimpleNamespace(status=status, start_at=start, end_at=start + timedelta(days=days), total_cents=total_cents)


def test_tier_is_chosen_by_notice_and_fee_is_deducted():
    booking = _booking(total_cents=1000)
    quote = evaluate_cancellation(booking, booking.start_at - timedelta(hours=30), TIERED)
    assert quote.eligible
    assert quote.refund_percent == 50
    assert quote.transaction_fee_cents == 100
    assert quote.refund_cents == 400
    assert quote.hours_until_start == pytest.approx(30)


def test_last_minute_cancellation_refunds_nothing():
    booking = _booking(total_cents=1000)
    quote = evaluate_cancellation(booking, booking.start_at - timedelta(hours=3), TIERED)
    assert quote.eligible
    assert quote.refund_percent == 0
    assert quote.refund_cents == 0


def test_default_short_and_long_rental_policies():
    config = PricingConfig()
    short = _booking(days=2, total_cents=60000)
    assert evaluate_cancellation(short, short.start_at - timedelta(hours=30), config).refund_cents == 57100
    assert evaluate_cancellation(short, short.start_at - timedelta(hours=10), config).refund_cents == 30000

    long = _booking(days=5, total_cents=150000)
    quote = evaluate_cancellation(long, long.start_at - timedelta(hours=30), config)
    assert quote.policy == "long_rental"
    assert quote.refund_percent == 75
    assert quote.refund_cents == 112500


def test_refund_never_goes_negative():
    booking = _booking(total_cents=2000)
    quote = evaluate_cancellation(booking, booking.start_at - timedelta(days=5), PricingConfig())
    assert quote.eligible
    assert quote.refund_cents == 0


@pytest.mark.parametrize("status", [statuses.CANCELLED, statuses.COMPLETED, statuses.OVERDUE])
def test_finished_bookings_cannot_be_cancelled(status):
    quote = evaluate_cancellation(_booking(status), at(1), PricingConfig())
    assert not quote.eligible
    assert quote.refund_cents == 0


def test_started_booking_behaviour_is_configurable():
    booking = _booking(statuses.ACTIVE, start=at(1))
    assert not evaluate_cancellation(booking, at(2), PricingConfig()).eligible

    lenient = PricingConfig(started_booking_behaviour="zero_refund")
    quote = evaluate_cancellation(booking, at(2), lenient)
    assert quote.eligible
    assert quote.refund_cents == 0


async def _seed_paid_booking(async_session_maker, provider, *, refunded_cents=0, **kwargs):
    async with async_session_maker() as session:
        box = await seed_box(session)
        booking = await seed_booking(session, box, at(5), at(7), total_cents=60000, charge_ref="ch_paid", **kwargs)
    provider.add_charge("ch_paid", 60000, refunded_cents=refunded_cents)
    return booking


def _engine(session, provider, notifier=None, pricing=None, now=NOW):
    return CancellationEngine(
        session, provider, pricing=pricing or PricingConfig(), clock=FrozenClock(now), notifier=notifier
    )


@pytest.mark.anyio
async def test_cancel_refunds_through_provider(async_session_maker):
    provider = FakeProvider()
    notifier = FakeNotifier()
    booking = await _seed_paid_booking(async_session_maker, provider)

    async with async_session_maker() as session:
        result = await _engine(session, provider, notifier).cancel_booking(booking.booking_id)

    assert result.success
    assert result.refund_percent == 100
    assert result.refund_cents == 57100
    assert result.transaction_fee_cents == 2900
    assert result.refund_status == statuses.REFUND_SUCCEEDED
    assert result.refund_ref == provider.refunds[0]["refund_id"]
    assert provider.refunds[0]["amount_cents"] == 57100
    assert provider.refunds[0]["idempotency_key"].startswith("booking-")
    assert notifier.names() == [BOOKING_CANCELLED]

    async with async_session_maker() as session:
        stored = await session.get(Booking, booking.booking_id)
        assert stored.status == statuses.CANCELLED
        assert stored.cancelled_at is not None
        assert stored.refund_status == statuses.REFUND_SUCCEEDED
        assert stored.refund_cents == 57100
        payment = await session.get(Payment, stored.payment_id)
        assert payment.status == statuses.PAYMENT_PARTIALLY_REFUNDED


@pytest.mark.anyio
async def test_refund_is_clamped_to_refundable_balance(async_session_maker):
    provider = FakeProvider()
    booking = await _seed_paid_booking(async_session_maker, provider, refunded_cents=50000)

    async with async_session_maker() as session:
        result = await _engine(session, provider).cancel_booking(booking.booking_id)

    assert result.refund_cents == 10000
    assert provider.refunds[0]["amount_cents"] == 10000
    async with async_session_maker() as session:
        stored = await session.get(Booking, booking.booking_id)
        payment = await session.get(Payment, stored.payment_id)
        assert payment.status == statuses.PAYMENT_REFUNDED


@pytest.mark.anyio
async def test_refund_failure_keeps_cancellation_and_warns(async_session_maker):
    provider = FakeProvider()
    provider.refund_error = ProviderTransientError(detail="Payment provider unavailable")
    notifier = FakeNotifier()
    booking = await _seed_paid_booking(async_session_maker, provider)

    async with async_session_maker() as session:
        result = await _engine(session, provider, notifier).cancel_booking(booking.booking_id)

    assert result.success
    assert result.refund_status == statuses.REFUND_FAILED
    assert "refund was not issued" in result.warning
    assert notifier.names() == [RECONCILIATION_REQUIRED, BOOKING_CANCELLED]
    _, payload = notifier.events[0]
    assert payload["kind"] == "refund_failed"
    assert payload["booking_id"] == booking.booking_id

    async with async_session_maker() as session:
        stored = await session.get(Booking, booking.booking_id)
        assert stored.status == statuses.CANCELLED
        assert stored.refund_status == statuses.REFUND_FAILED


@pytest.mark.anyio
async def test_booking_without_charge_reports_failed_refund(async_session_maker):
    provider = FakeProvider()
    async with async_session_maker() as session:
        box = await seed_box(session)
        booking = await seed_booking(session, box, at(5), at(7), total_cents=60000)

    async with async_session_maker() as session:
        result = await _engine(session, provider).cancel_booking(booking.booking_id)
    assert result.refund_status == statuses.REFUND_FAILED
    assert provider.refunds == []


@pytest.mark.anyio
async def test_ineligible_cancellation_changes_nothing(async_session_maker):
    provider = FakeProvider()
    async with async_session_maker() as session:
        box = await seed_box(session)
        booking = await seed_booking(session, box, at(1), at(4), status=statuses.ACTIVE, charge_ref="ch_active")

    async with async_session_maker() as session:
        engine = _engine(session, provider)
        preview = await engine.can_cancel_booking(booking.booking_id)
        assert not preview.eligible
        with pytest.raises(ConflictError):
            await engine.cancel_booking(booking.booking_id)

    async with async_session_maker() as session:
        assert (await session.get(Booking, booking.booking_id)).status == statuses.ACTIVE
    assert provider.refunds == []


@pytest.mark.anyio
async def test_second_cancellation_is_rejected(async_session_maker):
    provider = FakeProvider()
    booking = await _seed_paid_booking(async_session_maker, provider)

    async with async_session_maker() as session:
        await _engine(session, provider).cancel_booking(booking.booking_id)
    async with async_session_maker() as session:
        with pytest.raises(ConflictError):
            await _engine(session, provider).cancel_booking(booking.booking_id)
    assert len(provider.refunds) == 1


@pytest.mark.anyio
async def test_zero_refund_cancellation_skips_provider(async_session_maker):
    provider = FakeProvider()
    async with async_session_maker() as session:
        box = await seed_box(session)
        booking = await seed_booking(session, box, at(1), at(4), status=statuses.ACTIVE, charge_ref="ch_started")

    pricing = PricingConfig(started_booking_behaviour="zero_refund")
    async with async_session_maker() as session:
        result = await _engine(session, provider, pricing=pricing).cancel_booking(booking.booking_id)

    assert result.refund_cents == 0
    assert result.refund_status == statuses.REFUND_NOT_REQUIRED
    assert provider.refunds == []


@pytest.mark.anyio
async def test_unknown_booking_is_not_found(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(NotFoundError):
            await _engine(session, FakeProvider()).can_cancel_booking("missing")


@pytest.mark.parametrize(
    ("config", "days"),
    [(TIERED, 2), (PricingConfig(), 2), (PricingConfig(), 10)],
)
def test_refund_never_grows_as_start_approaches(config, days):
    booking = _booking(days=days, total_cents=150000)
    percents = []
    refunds = []
    for hours_before in range(100, 0, -1):
        quote = evaluate_cancellation(booking, booking.start_at - timedelta(hours=hours_before), config)
        assert quote.eligible
        percents.append(quote.refund_percent)
        refunds.append(quote.refund_cents)

    assert all(later <= earlier for earlier, later in zip(percents, percents[1:]))
    assert all(later <= earlier for earlier, later in zip(refunds, refunds[1:]))
