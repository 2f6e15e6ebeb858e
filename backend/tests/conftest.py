import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import pytest
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from boxrental.domain.bookings import db_models as booking_db_models  # noqa: F401
from boxrental.infra.db import Base, get_db_session
from boxrental.infra.stripe_resilience import stripe_circuit
from boxrental.main import app
from boxrental.settings import settings


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original_app_env = settings.app_env
    original_testing = settings.testing
    original_webhook_secret = settings.stripe_webhook_secret
    original_secret_key = settings.stripe_secret_key
    original_live_mode = settings.stripe_live_mode
    original_metrics = settings.metrics_enabled
    original_metrics_token = settings.metrics_token
    original_overdue_blocks = settings.overdue_blocks_availability
    original_grace = settings.display_merge_grace_hours
    original_concurrency = settings.status_sync_concurrency
    yield
    settings.app_env = original_app_env
    settings.testing = original_testing
    settings.stripe_webhook_secret = original_webhook_secret
    settings.stripe_secret_key = original_secret_key
    settings.stripe_live_mode = original_live_mode
    settings.metrics_enabled = original_metrics
    settings.metrics_token = original_metrics_token
    settings.overdue_blocks_availability = original_overdue_blocks
    settings.display_merge_grace_hours = original_grace
    settings.status_sync_concurrency = original_concurrency


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    # StaticPool shares one sqlite connection; concurrent transactions on it interleave.
    settings.status_sync_concurrency = 1
    yield


@pytest.fixture(autouse=True)
def restore_app_state():
    """Restore app.state after each test to prevent state pollution."""
    saved = {
        name: getattr(app.state, name, None)
        for name in ("metrics", "app_settings", "stripe_client", "notifier", "clock")
    }
    yield
    for name, original in saved.items():
        if original is not None:
            setattr(app.state, name, original)
        elif hasattr(app.state, name):
            delattr(app.state, name)


@pytest.fixture(autouse=True)
def reset_stripe_circuit():
    stripe_circuit.reset()
    yield
    stripe_circuit.reset()


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def client(async_session_maker):
    ensure_event_loop()

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
