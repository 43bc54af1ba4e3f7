"""
EC2 Reconciler - keeps a state store in step with EC2 instance lifecycle events.

Example:
    >>> import uvloop
    >>> from ec2_reconciler import ReconcilerApp, ReconcilerSettings
    >>>
    >>> settings = ReconcilerSettings(region="us-east-1", key_prefix="ec2-manager:")
    >>> app = ReconcilerApp(settings)
    >>>
    >>> async def main():
    ...     await app.initialize()
    ...     app.start()
    >>>
    >>> uvloop.run(main())
"""

from ec2_reconciler.app import ReconcilerApp
from ec2_reconciler.config import ReconcilerSettings
from ec2_reconciler.dead_letter import DeadLetterHandler
from ec2_reconciler.exceptions import (
    InstanceNotFoundError,
    NotificationDecodeError,
    ProviderError,
    ReconcilerError,
    TransactionClosedError,
)
from ec2_reconciler.monitor import LoggingMonitor, Monitor
from ec2_reconciler.notifications import (
    InstanceState,
    KeyNameOwnership,
    LifecycleNotification,
    decode_notification,
    parse_key_name,
)
from ec2_reconciler.provider import CloudAPIGateway, EC2Gateway, InstanceDescriptor
from ec2_reconciler.queue import SQSQueueListener
from ec2_reconciler.reconciler import EventReconciler
from ec2_reconciler.storage import InstanceRecord, SQLAlchemyStateStore, StateStoreProtocol
from ec2_reconciler.tagger import EC2Tagger, Tagger

__version__ = "0.1.0"

__all__ = [
    "ReconcilerApp",
    "ReconcilerSettings",
    "EventReconciler",
    "DeadLetterHandler",
    "LifecycleNotification",
    "InstanceState",
    "KeyNameOwnership",
    "decode_notification",
    "parse_key_name",
    "InstanceRecord",
    "StateStoreProtocol",
    "SQLAlchemyStateStore",
    "CloudAPIGateway",
    "EC2Gateway",
    "InstanceDescriptor",
    "Tagger",
    "EC2Tagger",
    "SQSQueueListener",
    "Monitor",
    "LoggingMonitor",
    "ReconcilerError",
    "NotificationDecodeError",
    "ProviderError",
    "InstanceNotFoundError",
    "TransactionClosedError",
]
