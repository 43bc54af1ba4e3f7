"""
EC2 reconciler exceptions.

This module defines custom exception classes used throughout the package.
"""


class ReconcilerError(Exception):
    """Base class for all reconciler errors."""

    pass


class NotificationDecodeError(ReconcilerError):
    """
    Raised when a queue message body is not a valid lifecycle notification.

    The message is left on the queue, so malformed payloads end up in the
    dead-letter queue once its redeliveries are exhausted.
    """

    def __init__(self, message: str, body: str | None = None):
        self.body = body
        super().__init__(message)


class ProviderError(ReconcilerError):
    """
    Raised when the cloud provider API call fails.

    Attributes:
        code: Provider error code (e.g., "RequestLimitExceeded"), if known
    """

    def __init__(self, message: str, code: str | None = None):
        self.code = code
        super().__init__(message)


class InstanceNotFoundError(ProviderError):
    """
    Raised when the provider does not (yet) know about an instance.

    EC2 reports lifecycle events before DescribeInstances can see the
    instance, so this is treated as API lag and retried by redelivery.
    """

    def __init__(self, instance_id: str, code: str | None = "InvalidInstanceID.NotFound"):
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id} not found", code=code)


class TransactionClosedError(ReconcilerError):
    """Raised when a transaction handle is used after commit or rollback."""

    pass
