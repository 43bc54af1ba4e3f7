"""State store implementations for the EC2 reconciler."""

from ec2_reconciler.storage.protocol import InstanceRecord, StateStoreProtocol, Transaction
from ec2_reconciler.storage.sqlalchemy_storage import SQLAlchemyStateStore

__all__ = [
    "InstanceRecord",
    "StateStoreProtocol",
    "Transaction",
    "SQLAlchemyStateStore",
]
