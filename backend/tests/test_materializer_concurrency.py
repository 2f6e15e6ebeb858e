import anyio
import pytest
import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from boxrental.domain.bookings.db_models import Booking, Payment
from boxrental.domain.bookings.materializer import BookingMaterializer
from boxrental.infra.db import Base
from boxrental.shared.clock import FrozenClock
from tests.fakes import NOW, FakeNotifier, FakeProvider, at, booking_metadata, seed_box

CONCURRENT_CALLS = 5


@pytest.fixture
async def isolated_session_maker(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'materialize.db'}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )

    # One connection per session; writers serialize on the database lock.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.mark.anyio
async def test_concurrent_materialize_creates_exactly_one_booking(isolated_session_maker):
    provider = FakeProvider()
    notifier = FakeNotifier()
    async with isolated_session_maker() as session:
        box = await seed_box(session)
    intent = provider.add_intent(booking_metadata(box.box_id, at(5), at(7), 60000), amount_cents=60000)
    results = []

    async def _materialize() -> None:
        async with isolated_session_maker() as session:
            materializer = BookingMaterializer(session, provider, clock=FrozenClock(NOW), notifier=notifier)
            results.append(await materializer.materialize(intent.id))

    async with anyio.create_task_group() as task_group:
        for _ in range(CONCURRENT_CALLS):
            task_group.start_soon(_materialize)

    assert len(results) == CONCURRENT_CALLS
    assert sum(1 for result in results if not result.already_processed) == 1
    assert sum(1 for result in results if result.already_processed) == CONCURRENT_CALLS - 1
    assert len({result.booking.booking_id for result in results}) == 1

    async with isolated_session_maker() as session:
        assert await session.scalar(sa.select(sa.func.count()).select_from(Booking)) == 1
        assert await session.scalar(sa.select(sa.func.count()).select_from(Payment)) == 1
