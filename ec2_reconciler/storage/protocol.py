"""
Storage protocol definition for the EC2 reconciler.

This module defines the StateStoreProtocol using Python's structural typing (Protocol).
Any storage implementation that conforms to this protocol can be used by the
EventReconciler.
"""

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, field_validator

from ec2_reconciler.notifications import InstanceState, ensure_utc


class InstanceRecord(BaseModel):
    """
    A tracked instance, keyed by (region, instance_id).

    ``last_event_at`` is the generation time of the most recently applied
    notification and never moves backwards.
    """

    model_config = ConfigDict(frozen=True)

    region: str
    instance_id: str
    worker_type: str
    provisioner_id: str
    availability_zone: str
    instance_type: str
    image_id: str
    spot_request_id: str | None = None
    launched_at: datetime
    state: InstanceState
    last_event_at: datetime

    @field_validator("launched_at", "last_event_at")
    @classmethod
    def _normalise_timestamps(cls, value: datetime) -> datetime:
        return ensure_utc(value)


@runtime_checkable
class Transaction(Protocol):
    """
    Handle bounding a read-then-write sequence against the store.

    Returned by ``begin_transaction()`` and passed explicitly by its owner to
    every operation that should run inside it. Exactly one of
    ``commit(txn)``/``rollback(txn)`` must be called for every handle.
    """

    @property
    def is_active(self) -> bool:
        """True until the transaction is committed or rolled back."""
        ...


@runtime_checkable
class StateStoreProtocol(Protocol):
    """
    Protocol for state store implementations.

    The store holds the tracked instance records and the raw event audit log.
    Reads of a single instance inside a transaction lock the row until the
    transaction finishes, so two reconcilers never race the same instance.
    """

    async def initialize(self) -> None:
        """
        Initialize storage (create tables, connections, etc.).

        This method should be idempotent.
        """
        ...

    async def close(self) -> None:
        """Close storage connections and cleanup resources."""
        ...

    # -------------------------------------------------------------------------
    # Transaction Management Methods
    # -------------------------------------------------------------------------

    async def begin_transaction(self) -> Transaction:
        """
        Begin a new transaction and return its handle.

        The handle is owned by the caller, which must finish it with exactly
        one call to commit() or rollback(), including on paths that performed
        no writes (a read under lock still holds the row).
        """
        ...

    async def commit(self, txn: Transaction) -> None:
        """
        Commit the transaction and release any row locks it holds.

        Raises:
            TransactionClosedError: If the transaction is already finished
        """
        ...

    async def rollback(self, txn: Transaction) -> None:
        """
        Rollback the transaction and release any row locks it holds.

        Raises:
            TransactionClosedError: If the transaction is already finished
        """
        ...

    def transaction(self) -> AbstractAsyncContextManager[Transaction]:
        """
        Scoped transaction: commits on normal exit, rolls back on exception.

        Example:
            async with store.transaction() as txn:
                record = await store.find_instance(region, instance_id, txn)
                ...
        """
        ...

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
        """
        Append a received notification to the audit log.

        Args:
            region: Region of the instance
            instance_id: EC2 instance id
            state: Reported state
            generated_at: Provider generation time of the notification
        """
        ...

    async def list_events(self, region: str, instance_id: str) -> list[dict[str, Any]]:
        """
        List audit log entries for an instance, oldest generation time first.

        Returns:
            List of dicts with keys: region, instance_id, state, generated_at,
            received_at
        """
        ...

    # -------------------------------------------------------------------------
    # Instance Methods
    # -------------------------------------------------------------------------

    async def find_instance(
        self,
        region: str,
        instance_id: str,
        txn: Transaction | None = None,
    ) -> InstanceRecord | None:
        """
        Get the record for an instance, if tracked.

        When ``txn`` is given the row is locked (SELECT ... FOR UPDATE) until
        the transaction finishes.
        """
        ...

    async def update_instance_state(
        self,
        region: str,
        instance_id: str,
        state: InstanceState,
        last_event_at: datetime,
        txn: Transaction,
    ) -> None:
        """Update the state and last event time of a tracked instance."""
        ...

    async def remove_instance(
        self,
        region: str,
        instance_id: str,
        txn: Transaction | None = None,
    ) -> None:
        """
        Delete the record for an instance.

        Removing an untracked instance is a no-op.
        """
        ...

    async def upsert_instance(self, record: InstanceRecord) -> bool:
        """
        Insert a record, or replace an existing one with an older last_event_at.

        Returns True if the row was written.
        """
        ...

    async def list_instances(self, region: str | None = None) -> list[InstanceRecord]:
        """List tracked instances, optionally limited to one region."""
        ...
