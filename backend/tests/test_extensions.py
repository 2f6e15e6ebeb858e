import pytest
import sqlalchemy as sa

from boxrental.domain.bookings import statuses
from boxrental.domain.bookings.db_models import Booking, BookingExtension, Payment
from boxrental.domain.availability.service import AvailabilityIndex
from boxrental.domain.bookings import extensions
from boxrental.domain.bookings.extensions import ExtensionEngine
from boxrental.domain.bookings.metadata import KIND_EXTENSION
from boxrental.domain.errors import BoxNoLongerAvailable, ConflictError, ValidationError
from boxrental.domain.pricing.config_loader import PricingConfig
from boxrental.infra.notifications import BOOKING_EXTENDED, RECONCILIATION_REQUIRED
from boxrental.shared.clock import FrozenClock, ensure_utc
from tests.fakes import NOW, FakeNotifier, FakeProvider, at, extension_metadata, seed_booking, seed_box


def _engine(session, provider, notifier=None, now=NOW):
    return ExtensionEngine(session, provider, pricing=PricingConfig(), clock=FrozenClock(now), notifier=notifier)


async def _seed(async_session_maker, **kwargs):
    async with async_session_maker() as session:
        box = await seed_box(session)
        booking = await seed_booking(session, box, at(5), at(7), total_cents=60000, charge_ref="ch_rent", **kwargs)
    return box, booking


@pytest.mark.anyio
async def test_quote_prices_additional_days(async_session_maker):
    _, booking = await _seed(async_session_maker)
    async with async_session_maker() as session:
        quote = await _engine(session, FakeProvider()).quote(booking.booking_id, at(9))

    assert quote.can_extend
    assert quote.additional_days == 2
    assert quote.additional_cents == 60000
    assert quote.price_per_day_cents == 30000
    assert quote.conflicting_booking_id is None


@pytest.mark.anyio
async def test_quote_names_the_conflicting_booking(async_session_maker):
    box, booking = await _seed(async_session_maker)
    async with async_session_maker() as session:
        blocking = await seed_booking(session, box, at(8), at(10))

    async with async_session_maker() as session:
        quote = await _engine(session, FakeProvider()).quote(booking.booking_id, at(9))

    assert not quote.can_extend
    assert quote.conflicting_booking_id == blocking.booking_id
    assert blocking.booking_id in quote.reason


@pytest.mark.anyio
async def test_quote_rejects_shrinking_and_finished_bookings(async_session_maker):
    box, booking = await _seed(async_session_maker)
    async with async_session_maker() as session:
        cancelled = await seed_booking(session, box, at(12), at(14), status=statuses.CANCELLED)

    async with async_session_maker() as session:
        engine = _engine(session, FakeProvider())
        assert not (await engine.quote(booking.booking_id, at(7))).can_extend
        assert not (await engine.quote(booking.booking_id, at(6))).can_extend
        assert not (await engine.quote(cancelled.booking_id, at(16))).can_extend


@pytest.mark.anyio
async def test_checkout_then_complete_extends_once(async_session_maker):
    provider = FakeProvider()
    notifier = FakeNotifier()
    _, booking = await _seed(async_session_maker)

    async with async_session_maker() as session:
        checkout = await _engine(session, provider).start_extension_checkout(booking.booking_id, at(9))
        await session.commit()

    assert checkout.quote.additional_cents == 60000
    metadata = provider.created[0]["metadata"]
    assert metadata["kind"] == KIND_EXTENSION
    assert metadata["booking_id"] == booking.booking_id
    provider.settle(checkout.payment_intent_id)

    async with async_session_maker() as session:
        result = await _engine(session, provider, notifier).complete_extension(
            checkout.payment_intent_id, booking_id=booking.booking_id
        )
    async with async_session_maker() as session:
        again = await _engine(session, provider, notifier).complete_extension(checkout.payment_intent_id)

    assert not result.already_processed
    assert result.extension.additional_days == 2
    assert result.extension.payment_id == checkout.payment_id
    assert again.already_processed
    assert again.extension.extension_id == result.extension.extension_id
    assert notifier.names() == [BOOKING_EXTENDED]

    async with async_session_maker() as session:
        stored = await session.get(Booking, booking.booking_id)
        assert ensure_utc(stored.end_at) == at(9)
        assert stored.total_cents == 120000
        payment = await session.get(Payment, checkout.payment_id)
        assert payment.status == statuses.PAYMENT_SUCCEEDED
        assert payment.kind == statuses.PAYMENT_KIND_EXTENSION
        count = await session.scalar(sa.select(sa.func.count()).select_from(BookingExtension))
        assert count == 1


@pytest.mark.anyio
async def test_checkout_refuses_unextendable_requests(async_session_maker):
    provider = FakeProvider()
    box, booking = await _seed(async_session_maker)
    async with async_session_maker() as session:
        await seed_booking(session, box, at(8), at(10))

    async with async_session_maker() as session:
        engine = _engine(session, provider)
        with pytest.raises(ConflictError):
            await engine.start_extension_checkout(booking.booking_id, at(9))
        with pytest.raises(ValidationError):
            await engine.start_extension_checkout(booking.booking_id, at(6))
    assert provider.created == []


@pytest.mark.anyio
async def test_overdue_booking_becomes_active_again(async_session_maker):
    provider = FakeProvider()
    async with async_session_maker() as session:
        box = await seed_box(session)
        booking = await seed_booking(session, box, at(1), at(2), status=statuses.OVERDUE, charge_ref="ch_late")
    intent = provider.add_intent(extension_metadata(booking, at(5), 90000), amount_cents=90000)

    async with async_session_maker() as session:
        result = await _engine(session, provider, now=at(3)).complete_extension(intent.id)

    assert result.booking.status == statuses.ACTIVE
    assert result.extension.additional_days == 3
    assert ensure_utc(result.extension.previous_end_at) == at(2)


@pytest.mark.anyio
async def test_complete_rejects_payment_for_another_booking(async_session_maker):
    provider = FakeProvider()
    _, booking = await _seed(async_session_maker)
    intent = provider.add_intent(extension_metadata(booking, at(9), 60000), amount_cents=60000)

    async with async_session_maker() as session:
        with pytest.raises(ValidationError):
            await _engine(session, provider).complete_extension(intent.id, booking_id="someone-else")


@pytest.mark.anyio
async def test_conflict_after_payment_reports_reconciliation(async_session_maker):
    provider = FakeProvider()
    notifier = FakeNotifier()
    box, booking = await _seed(async_session_maker)
    intent = provider.add_intent(extension_metadata(booking, at(9), 60000), amount_cents=60000)
    async with async_session_maker() as session:
        await seed_booking(session, box, at(8), at(10))

    async with async_session_maker() as session:
        with pytest.raises(BoxNoLongerAvailable):
            await _engine(session, provider, notifier).complete_extension(intent.id)

    assert notifier.names() == [RECONCILIATION_REQUIRED]
    assert notifier.events[0][1]["kind"] == "extension_conflict"
    async with async_session_maker() as session:
        stored = await session.get(Booking, booking.booking_id)
        assert ensure_utc(stored.end_at) == at(7)


@pytest.mark.anyio
async def test_complete_locks_the_box_before_checking_conflicts(async_session_maker, monkeypatch):
    provider = FakeProvider()
    box, booking = await _seed(async_session_maker)
    intent = provider.add_intent(extension_metadata(booking, at(9), 60000), amount_cents=60000)
    calls = []
    real_lock_box = extensions.lock_box
    real_conflicts = AvailabilityIndex.conflicts

    async def spy_lock_box(session, box_id):
        calls.append(("lock", box_id))
        return await real_lock_box(session, box_id)

    async def spy_conflicts(self, box_id, candidate, *, exclude_booking_id=None):
        calls.append(("conflicts", box_id))
        return await real_conflicts(self, box_id, candidate, exclude_booking_id=exclude_booking_id)

    monkeypatch.setattr(extensions, "lock_box", spy_lock_box)
    monkeypatch.setattr(AvailabilityIndex, "conflicts", spy_conflicts)

    async with async_session_maker() as session:
        await _engine(session, provider).complete_extension(intent.id)

    assert calls[0] == ("lock", box.box_id)
    assert ("conflicts", box.box_id) in calls[1:]
