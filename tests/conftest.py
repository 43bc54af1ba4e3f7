"""
Pytest configuration and fixtures for EC2 reconciler tests.
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from ec2_reconciler.monitor import LoggingMonitor
from ec2_reconciler.notifications import InstanceState, LifecycleNotification
from ec2_reconciler.provider import InstanceDescriptor
from ec2_reconciler.reconciler import EventReconciler
from ec2_reconciler.storage.protocol import InstanceRecord
from ec2_reconciler.storage.sqlalchemy_storage import SQLAlchemyStateStore
from tests.fakes import FakeGateway, FakeTagger, FaultInjectingStore

REGION = "us-east-1"
KEY_PREFIX = "ec2-manager:"
INSTANCE_ID = "i-0123456789abcdef0"

# Base generation time for notifications; T(n) is n seconds later
T0 = datetime(2017, 9, 21, 17, 52, 43, tzinfo=UTC)


def T(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest_asyncio.fixture
async def sqlite_store():
    """Create an in-memory SQLite state store for testing."""
    # Use StaticPool to ensure all connections share the same in-memory database
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    store = SQLAlchemyStateStore(engine)
    await store.initialize()

    yield store
    await store.close()


@pytest_asyncio.fixture
async def postgresql_store():
    """Create a PostgreSQL state store for testing with Testcontainers."""
    # Check if asyncpg driver is installed
    try:
        import asyncpg  # noqa: F401
    except ModuleNotFoundError:
        pytest.skip("asyncpg driver not installed. Install with: pip install -e '.[postgresql]'")

    # Try to use Testcontainers
    try:
        from testcontainers.postgres import PostgresContainer
    except ModuleNotFoundError:
        pytest.skip("testcontainers not installed. Install with: pip install -e '.[dev]'")

    db_url = os.getenv("EC2_RECONCILER_TEST_POSTGRES_URL")
    if db_url:
        engine = create_async_engine(db_url, echo=False, isolation_level="READ COMMITTED")
        store = SQLAlchemyStateStore(engine)
        await store.initialize()
        yield store
        await _truncate(store)
        await store.close()
        return

    try:
        postgres = PostgresContainer(
            "postgres:17", username="ec2", password="ec2_test_password", dbname="ec2_test"
        )
        postgres.start()
    except Exception as e:
        pytest.skip(f"PostgreSQL container unavailable: {e}")

    try:
        # Get connection URL and replace psycopg2 with asyncpg
        db_url = postgres.get_connection_url().replace("psycopg2", "asyncpg")
        engine = create_async_engine(db_url, echo=False, isolation_level="READ COMMITTED")

        store = SQLAlchemyStateStore(engine)
        await store.initialize()

        yield store

        await _truncate(store)
        await store.close()
    finally:
        postgres.stop()


async def _truncate(store: SQLAlchemyStateStore) -> None:
    async with AsyncSession(store.engine) as session:
        await session.execute(text("DELETE FROM cloudwatch_events"))
        await session.execute(text("DELETE FROM instances"))
        await session.commit()


@pytest.fixture
def monitor():
    """In-memory monitor whose counters the tests inspect."""
    return LoggingMonitor()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def tagger():
    return FakeTagger()


@pytest_asyncio.fixture
async def store(sqlite_store):
    """SQLite store wrapped for fault injection and transaction tracking."""
    return FaultInjectingStore(sqlite_store)


@pytest.fixture
def reconciler(store, gateway, tagger, monitor):
    return EventReconciler(
        store=store,
        gateway=gateway,
        tagger=tagger,
        monitor=monitor,
        key_prefix=KEY_PREFIX,
    )


@pytest.fixture
def make_notification() -> Callable[..., LifecycleNotification]:
    """Factory for notifications about INSTANCE_ID in REGION."""

    def _make(
        state: str | InstanceState,
        generated_at: datetime,
        instance_id: str = INSTANCE_ID,
        region: str = REGION,
    ) -> LifecycleNotification:
        return LifecycleNotification(
            region=region,
            instance_id=instance_id,
            state=InstanceState(state),
            generated_at=generated_at,
        )

    return _make


@pytest.fixture
def make_record() -> Callable[..., InstanceRecord]:
    """Factory for records owned by KEY_PREFIX's provisioner."""

    def _make(
        state: str | InstanceState = InstanceState.PENDING,
        last_event_at: datetime = T0,
        instance_id: str = INSTANCE_ID,
        region: str = REGION,
    ) -> InstanceRecord:
        return InstanceRecord(
            region=region,
            instance_id=instance_id,
            worker_type="gecko-t-linux",
            provisioner_id="ec2-manager",
            availability_zone=f"{region}a",
            instance_type="m3.large",
            image_id="ami-12345678",
            spot_request_id="sir-abcd1234",
            launched_at=T(-60),
            state=InstanceState(state),
            last_event_at=last_event_at,
        )

    return _make


@pytest.fixture
def make_descriptor() -> Callable[..., InstanceDescriptor]:
    """Factory for DescribeInstances results."""

    def _make(
        key_name: str | None = "ec2-manager:gecko-t-linux",
        instance_id: str = INSTANCE_ID,
        tags: dict[str, str] | None = None,
    ) -> InstanceDescriptor:
        return InstanceDescriptor(
            instance_id=instance_id,
            key_name=key_name,
            instance_type="m3.large",
            availability_zone="us-east-1a",
            image_id="ami-12345678",
            launch_time=T(-60),
            spot_request_id="sir-abcd1234",
            tags=tags or {},
        )

    return _make
