"""
SQLAlchemy storage implementation for the EC2 reconciler.

This module provides a SQLAlchemy-based implementation of the StateStoreProtocol,
supporting SQLite, PostgreSQL, and MySQL. Per-instance mutual exclusion uses
SELECT ... FOR UPDATE inside explicit transactions (a no-op on SQLite, which
serializes writers at the database level instead).
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    and_,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import declarative_base

from ec2_reconciler.exceptions import TransactionClosedError
from ec2_reconciler.notifications import InstanceState, ensure_utc
from ec2_reconciler.storage.protocol import InstanceRecord

logger = logging.getLogger(__name__)

# Declarative base for ORM models
Base = declarative_base()

_STATE_VALUES = ", ".join(f"'{state.value}'" for state in InstanceState)


# ============================================================================
# SQLAlchemy ORM Models
# ============================================================================


class SchemaVersion(Base):  # type: ignore[valid-type, misc]
    """Schema version tracking."""

    __tablename__ = "schema_version"

    version = Column(Integer, primary_key=True)
    applied_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    description = Column(Text, nullable=False)


class Instance(Base):  # type: ignore[valid-type, misc]
    """Tracked EC2 instance, one row per (region, instance_id)."""

    __tablename__ = "instances"

    region = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True)
    worker_type = Column(String(255), nullable=False)
    provisioner_id = Column(String(255), nullable=False)
    availability_zone = Column(String(64), nullable=False)
    instance_type = Column(String(64), nullable=False)
    image_id = Column(String(64), nullable=False)
    spot_request_id = Column(String(64), nullable=True)
    launched_at = Column(DateTime(timezone=True), nullable=False)
    state = Column(String(20), nullable=False)
    last_event_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(f"state IN ({_STATE_VALUES})", name="valid_instance_state"),
        Index("idx_instances_worker_type", "provisioner_id", "worker_type"),
        Index("idx_instances_state", "state"),
    )


class CloudWatchEvent(Base):  # type: ignore[valid-type, misc]
    """Append-only audit log of every lifecycle notification received."""

    __tablename__ = "cloudwatch_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    region = Column(String(64), nullable=False)
    instance_id = Column(String(64), nullable=False)
    state = Column(String(20), nullable=False)
    generated_at = Column(DateTime(timezone=True), nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_cloudwatch_events_instance", "region", "instance_id", "generated_at"),
    )


# Current schema version
CURRENT_SCHEMA_VERSION = 1


# ============================================================================
# Transaction Handle
# ============================================================================


@dataclass(eq=False)
class SQLAlchemyTransaction:
    """
    Transaction handle returned by SQLAlchemyStateStore.begin_transaction().

    Wraps the session that owns the database transaction. The handle is
    finished (inactive) after commit() or rollback().
    """

    session: AsyncSession
    """The session bound to this transaction"""

    active: bool = field(default=True)
    """False once committed or rolled back"""

    @property
    def is_active(self) -> bool:
        return self.active


# ============================================================================
# SQLAlchemyStateStore
# ============================================================================


class SQLAlchemyStateStore:
    """
    SQLAlchemy implementation of StateStoreProtocol.

    Transaction Architecture:
    - Operations given a transaction handle run in that handle's session and
      are committed or rolled back by its owner
    - Operations without a handle run in a new session and auto-commit
    """

    def __init__(self, engine: AsyncEngine):
        """
        Initialize SQLAlchemy storage.

        Args:
            engine: SQLAlchemy AsyncEngine instance
        """
        self.engine = engine

    async def initialize(self) -> None:
        """Initialize database connection and create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        await self._initialize_schema_version()

    async def close(self) -> None:
        """Close database connection."""
        await self.engine.dispose()

    async def _initialize_schema_version(self) -> None:
        """Initialize schema version for a fresh database."""
        async with AsyncSession(self.engine) as session:
            result = await session.execute(select(func.count()).select_from(SchemaVersion))
            count = result.scalar()

            if count == 0:
                version = SchemaVersion(
                    version=CURRENT_SCHEMA_VERSION,
                    description="Initial schema with instances and cloudwatch_events",
                )
                session.add(version)
                await session.commit()
                logger.info(f"Initialized schema version to {CURRENT_SCHEMA_VERSION}")

    @asynccontextmanager
    async def _session_scope(
        self, txn: SQLAlchemyTransaction | None = None
    ) -> AsyncIterator[AsyncSession]:
        """
        Context manager for session usage.

        If a transaction handle is given, use its session without lifecycle
        management. Otherwise open a new session and commit/rollback/close it.
        """
        if txn is not None:
            self._check_active(txn)
            yield txn.session
            return

        session = AsyncSession(self.engine, expire_on_commit=False)
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @staticmethod
    def _check_active(txn: SQLAlchemyTransaction) -> None:
        if not txn.active:
            raise TransactionClosedError("Transaction is already committed or rolled back")

    # -------------------------------------------------------------------------
    # Transaction Management Methods
    # -------------------------------------------------------------------------

    async def begin_transaction(self) -> SQLAlchemyTransaction:
        """Begin a new transaction on a dedicated session and return its handle."""
        session = AsyncSession(self.engine, expire_on_commit=False)
        await session.begin()
        logger.debug("Beginning transaction")
        return SQLAlchemyTransaction(session=session)

    async def commit(self, txn: SQLAlchemyTransaction) -> None:
        """Commit the transaction and close its session."""
        self._check_active(txn)
        txn.active = False
        try:
            logger.debug("Committing transaction")
            await txn.session.commit()
        finally:
            await txn.session.close()

    async def rollback(self, txn: SQLAlchemyTransaction) -> None:
        """Rollback the transaction and close its session."""
        self._check_active(txn)
        txn.active = False
        try:
            logger.debug("Rolling back transaction")
            await txn.session.rollback()
        finally:
            await txn.session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLAlchemyTransaction]:
        """Scoped transaction: commit on normal exit, rollback on exception."""
        txn = await self.begin_transaction()
        try:
            yield txn
        except BaseException:
            if txn.active:
                await self.rollback(txn)
            raise
        if txn.active:
            await self.commit(txn)

    # -------------------------------------------------------------------------
    # Raw Event Log Methods
    # -------------------------------------------------------------------------

    async def log_event(
        self,
        region: str,
        instance_id: str,
        state: InstanceState,
        generated_at: datetime,
    ) -> None:
        """Append a received notification to the audit log."""
        async with self._session_scope() as session:
            session.add(
                CloudWatchEvent(
                    region=region,
                    instance_id=instance_id,
                    state=InstanceState(state).value,
                    generated_at=ensure_utc(generated_at),
                )
            )

    async def list_events(self, region: str, instance_id: str) -> list[dict[str, Any]]:
        """List audit log entries for an instance, oldest generation time first."""
        async with self._session_scope() as session:
            result = await session.execute(
                select(CloudWatchEvent)
                .where(
                    and_(
                        CloudWatchEvent.region == region,
                        CloudWatchEvent.instance_id == instance_id,
                    )
                )
                .order_by(CloudWatchEvent.generated_at, CloudWatchEvent.id)
            )
            events = result.scalars().all()

            return [
                {
                    "region": event.region,
                    "instance_id": event.instance_id,
                    "state": InstanceState(event.state),
                    "generated_at": ensure_utc(event.generated_at),
                    "received_at": ensure_utc(event.received_at),
                }
                for event in events
            ]

    # -------------------------------------------------------------------------
    # Instance Methods
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_record(instance: Instance) -> InstanceRecord:
        return InstanceRecord(
            region=instance.region,
            instance_id=instance.instance_id,
            worker_type=instance.worker_type,
            provisioner_id=instance.provisioner_id,
            availability_zone=instance.availability_zone,
            instance_type=instance.instance_type,
            image_id=instance.image_id,
            spot_request_id=instance.spot_request_id,
            launched_at=instance.launched_at,
            state=InstanceState(instance.state),
            last_event_at=instance.last_event_at,
        )

    async def find_instance(
        self,
        region: str,
        instance_id: str,
        txn: SQLAlchemyTransaction | None = None,
    ) -> InstanceRecord | None:
        """
        Get the record for an instance.

        Inside a transaction the row is locked with SELECT FOR UPDATE until the
        transaction is committed or rolled back.
        """
        async with self._session_scope(txn) as session:
            stmt = select(Instance).where(
                and_(Instance.region == region, Instance.instance_id == instance_id)
            )
            if txn is not None:
                stmt = stmt.with_for_update()

            result = await session.execute(stmt)
            instance = result.scalar_one_or_none()

            if instance is None:
                return None

            return self._to_record(instance)

    async def update_instance_state(
        self,
        region: str,
        instance_id: str,
        state: InstanceState,
        last_event_at: datetime,
        txn: SQLAlchemyTransaction,
    ) -> None:
        """Update the state and last event time of a tracked instance."""
        async with self._session_scope(txn) as session:
            await session.execute(
                update(Instance)
                .where(and_(Instance.region == region, Instance.instance_id == instance_id))
                .values(
                    state=InstanceState(state).value,
                    last_event_at=ensure_utc(last_event_at),
                    updated_at=func.now(),
                )
            )

    async def remove_instance(
        self,
        region: str,
        instance_id: str,
        txn: SQLAlchemyTransaction | None = None,
    ) -> None:
        """Delete the record for an instance (no-op if it is not tracked)."""
        async with self._session_scope(txn) as session:
            await session.execute(
                delete(Instance).where(
                    and_(Instance.region == region, Instance.instance_id == instance_id)
                )
            )

    async def upsert_instance(self, record: InstanceRecord) -> bool:
        """
        Insert a record, or replace the existing one with the same key.

        An existing row is only replaced by a record with a newer
        ``last_event_at``, checked under the row lock.

        Returns:
            True if the row was written, False if the stored one is as new or newer
        """
        values = {
            "worker_type": record.worker_type,
            "provisioner_id": record.provisioner_id,
            "availability_zone": record.availability_zone,
            "instance_type": record.instance_type,
            "image_id": record.image_id,
            "spot_request_id": record.spot_request_id,
            "launched_at": record.launched_at,
            "state": record.state.value,
            "last_event_at": record.last_event_at,
        }

        async with self._session_scope() as session:
            result = await session.execute(
                select(Instance)
                .where(
                    and_(
                        Instance.region == record.region,
                        Instance.instance_id == record.instance_id,
                    )
                )
                .with_for_update()
            )
            existing = result.scalar_one_or_none()

            if existing is None:
                session.add(Instance(region=record.region, instance_id=record.instance_id, **values))
                return True

            if ensure_utc(existing.last_event_at) >= record.last_event_at:
                logger.debug(
                    f"Keeping stored record for {record.instance_id}: "
                    f"{existing.last_event_at} is not older than {record.last_event_at}"
                )
                return False

            for key, value in values.items():
                setattr(existing, key, value)
            return True

    async def list_instances(self, region: str | None = None) -> list[InstanceRecord]:
        """List tracked instances, optionally limited to one region."""
        async with self._session_scope() as session:
            stmt = select(Instance).order_by(Instance.region, Instance.instance_id)
            if region is not None:
                stmt = stmt.where(Instance.region == region)

            result = await session.execute(stmt)
            return [self._to_record(instance) for instance in result.scalars().all()]
