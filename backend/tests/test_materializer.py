import pytest
import sqlalchemy as sa

from boxrental.domain.bookings import statuses
from boxrental.domain.bookings.checkout import start_checkout
from boxrental.domain.bookings.db_models import Booking, Payment
from boxrental.domain.bookings.materializer import BookingMaterializer
from boxrental.domain.errors import BoxNoLongerAvailable, ConflictError, PaymentNotSucceeded, ValidationError
from boxrental.domain.payments import settlement
from boxrental.domain.pricing.config_loader import PricingConfig
from boxrental.infra.notifications import BOOKING_MATERIALIZED, RECONCILIATION_REQUIRED
from boxrental.shared.clock import FrozenClock
from tests.fakes import NOW, FakeNotifier, FakeProvider, at, booking_metadata, seed_booking, seed_box


class AlwaysFree:
    async def is_free(self, box_id, candidate, *, exclude_booking_id=None):
        return True


async def _count(session, model) -> int:
    return await session.scalar(sa.select(sa.func.count()).select_from(model))


@pytest.mark.anyio
async def test_materialize_creates_single_booking_and_is_idempotent(async_session_maker):
    provider = FakeProvider()
    notifier = FakeNotifier()
    async with async_session_maker() as session:
        box = await seed_box(session)
    intent = provider.add_intent(booking_metadata(box.box_id, at(5), at(7), 60000), amount_cents=60000)

    async with async_session_maker() as session:
        first = await BookingMaterializer(
            session, provider, clock=FrozenClock(NOW), notifier=notifier
        ).materialize(intent.id, contact_email="renter@example.com")
    async with async_session_maker() as session:
        second = await BookingMaterializer(
            session, provider, clock=FrozenClock(NOW), notifier=notifier
        ).materialize(intent.id)

    assert first.outcome == "created"
    assert first.booking.status == statuses.PENDING
    assert first.booking.total_cents == 60000
    assert first.booking.contact_email == "renter@example.com"
    assert first.payment.status == statuses.PAYMENT_SUCCEEDED
    assert first.payment.charge_ref == intent.latest_charge_ref
    assert second.already_processed
    assert second.booking.booking_id == first.booking.booking_id
    assert notifier.names() == [BOOKING_MATERIALIZED]

    async with async_session_maker() as session:
        assert await _count(session, Booking) == 1
        assert await _count(session, Payment) == 1


@pytest.mark.anyio
async def test_losing_a_race_returns_the_winners_booking(async_session_maker, monkeypatch):
    provider = FakeProvider()
    async with async_session_maker() as session:
        box = await seed_box(session)
    intent = provider.add_intent(booking_metadata(box.box_id, at(5), at(7), 60000), amount_cents=60000)

    async with async_session_maker() as session:
        winner = await BookingMaterializer(session, provider, clock=FrozenClock(NOW)).materialize(intent.id)

    real_find_payment = settlement.find_payment
    lookups = []

    async def stale_find_payment(session, charge_ref, payment_intent_id):
        lookups.append(payment_intent_id)
        if len(lookups) == 1:
            return None
        return await real_find_payment(session, charge_ref, payment_intent_id)

    monkeypatch.setattr(settlement, "find_payment", stale_find_payment)

    async with async_session_maker() as session:
        loser = await BookingMaterializer(
            session,
            provider,
            clock=FrozenClock(NOW),
            availability_factory=lambda _session: AlwaysFree(),
        ).materialize(intent.id)

    assert loser.already_processed
    assert loser.booking.booking_id == winner.booking.booking_id
    assert len(lookups) == 2
    async with async_session_maker() as session:
        assert await _count(session, Booking) == 1


@pytest.mark.anyio
async def test_unsettled_payment_is_retry_later(async_session_maker):
    provider = FakeProvider()
    async with async_session_maker() as session:
        box = await seed_box(session)
    intent = provider.add_intent(
        booking_metadata(box.box_id, at(5), at(7), 60000), amount_cents=60000, settled=False
    )

    async with async_session_maker() as session:
        with pytest.raises(PaymentNotSucceeded):
            await BookingMaterializer(session, provider, clock=FrozenClock(NOW)).materialize(intent.id)
        assert await _count(session, Booking) == 0


@pytest.mark.anyio
async def test_extension_intent_is_not_materialized_as_booking(async_session_maker):
    provider = FakeProvider()
    async with async_session_maker() as session:
        box = await seed_box(session)
    metadata = {**booking_metadata(box.box_id, at(5), at(7), 60000), "kind": "booking_extension", "booking_id": "b-1"}
    intent = provider.add_intent(metadata, amount_cents=60000)

    async with async_session_maker() as session:
        with pytest.raises(ValidationError):
            await BookingMaterializer(session, provider, clock=FrozenClock(NOW)).materialize(intent.id)


@pytest.mark.anyio
async def test_box_taken_meanwhile_raises_and_reports(async_session_maker):
    provider = FakeProvider()
    notifier = FakeNotifier()
    async with async_session_maker() as session:
        box = await seed_box(session)
        await seed_booking(session, box, at(6), at(9), charge_ref="ch_other")
    intent = provider.add_intent(booking_metadata(box.box_id, at(5), at(7), 60000), amount_cents=60000)

    async with async_session_maker() as session:
        with pytest.raises(BoxNoLongerAvailable) as excinfo:
            await BookingMaterializer(
                session, provider, clock=FrozenClock(NOW), notifier=notifier
            ).materialize(intent.id)

    assert isinstance(excinfo.value, ConflictError)
    assert notifier.names() == [RECONCILIATION_REQUIRED]
    _, payload = notifier.events[0]
    assert payload["kind"] == "box_double_booked"
    assert payload["payment_intent_id"] == intent.id
    async with async_session_maker() as session:
        assert await _count(session, Booking) == 1


@pytest.mark.anyio
async def test_booking_starting_in_the_past_is_active(async_session_maker):
    provider = FakeProvider()
    async with async_session_maker() as session:
        box = await seed_box(session)
    intent = provider.add_intent(booking_metadata(box.box_id, at(1), at(4), 90000), amount_cents=90000)

    async with async_session_maker() as session:
        result = await BookingMaterializer(session, provider, clock=FrozenClock(NOW)).materialize(intent.id)
    assert result.booking.status == statuses.ACTIVE


@pytest.mark.anyio
async def test_materialize_adopts_checkout_payment(async_session_maker):
    provider = FakeProvider()
    async with async_session_maker() as session:
        box = await seed_box(session, location_price_cents=20000)

    async with async_session_maker() as session:
        checkout = await start_checkout(
            session,
            provider,
            pricing=PricingConfig(),
            box_id=box.box_id,
            start=at(5),
            end=at(7),
            contact_email="renter@example.com",
        )
        await session.commit()

    assert checkout.quote.total_cents == 40000
    provider.settle(checkout.payment_intent_id)

    async with async_session_maker() as session:
        result = await BookingMaterializer(session, provider, clock=FrozenClock(NOW)).materialize(
            checkout.payment_intent_id
        )
    assert result.payment.payment_id == checkout.payment_id
    assert result.booking.contact_email == "renter@example.com"

    async with async_session_maker() as session:
        assert await _count(session, Payment) == 1
        payment = await session.get(Payment, checkout.payment_id)
        assert payment.status == statuses.PAYMENT_SUCCEEDED
        assert payment.booking_id == result.booking.booking_id


@pytest.mark.anyio
async def test_checkout_rejects_booked_or_inactive_box(async_session_maker):
    provider = FakeProvider()
    async with async_session_maker() as session:
        box = await seed_box(session)
        inactive = await seed_box(session, status=statuses.BOX_INACTIVE)
        await seed_booking(session, box, at(6), at(9))

    async with async_session_maker() as session:
        with pytest.raises(ConflictError):
            await start_checkout(session, provider, pricing=PricingConfig(), box_id=box.box_id, start=at(5), end=at(7))
        with pytest.raises(ConflictError):
            await start_checkout(
                session, provider, pricing=PricingConfig(), box_id=inactive.box_id, start=at(5), end=at(7)
            )
    assert provider.created == []


@pytest.mark.anyio
async def test_repeated_checkout_reuses_payment_intent(async_session_maker):
    provider = FakeProvider()
    async with async_session_maker() as session:
        box = await seed_box(session)

    sessions = []
    for _ in range(2):
        async with async_session_maker() as session:
            sessions.append(
                await start_checkout(
                    session, provider, pricing=PricingConfig(), box_id=box.box_id, start=at(5), end=at(7)
                )
            )
            await session.commit()

    assert sessions[0].payment_intent_id == sessions[1].payment_intent_id
    assert sessions[0].payment_id == sessions[1].payment_id
    assert len(provider.created) == 1
