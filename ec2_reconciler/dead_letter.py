"""
Dead-letter handler for notifications that exhausted their redeliveries.
"""

import logging

from ec2_reconciler.exceptions import ReconcilerError
from ec2_reconciler.monitor import Monitor
from ec2_reconciler.notifications import decode_notification

logger = logging.getLogger(__name__)

UNTRACKED_INSTANCE_MESSAGE = " ".join(
    [
        "UNTRACKED INSTANCE\n\n",
        "A CloudWatch Event message has failed.  This is likely because the",
        "EC2 API call to DescribeInstances did not return information.  While",
        "we do retry this a number of times, we eventually give up.  This instance",
        "should probably be killed or else deleted.",
    ]
)


class UntrackedInstanceAlert(ReconcilerError):
    """Alert raised (reported, never thrown) for a dead-lettered notification."""

    def __init__(self, body: str, region: str | None = None, instance_id: str | None = None):
        self.body = body
        self.region = region
        self.instance_id = instance_id

        message = UNTRACKED_INSTANCE_MESSAGE
        if instance_id is not None:
            message += f"\nInstance: {instance_id} ({region})"
        message += "\nFailing message follows:\n\n" + body
        super().__init__(message)


class DeadLetterHandler:
    """
    Last-resort sink for the dead-letter queue.

    Reports one informational alert per message and mutates nothing. Never
    raises, so the message is always acknowledged.
    """

    def __init__(self, monitor: Monitor):
        self.monitor = monitor.prefix("cloud-watch-events")

    async def handle(self, body: str) -> None:
        region = instance_id = None
        try:
            notification = decode_notification(body)
            region, instance_id = notification.region, notification.instance_id
        except ReconcilerError:
            logger.debug("Dead-lettered message is not a valid lifecycle notification")

        try:
            self.monitor.report_error(
                UntrackedInstanceAlert(body, region=region, instance_id=instance_id),
                level="info",
                extra={"region": region, "instance_id": instance_id},
            )
        except Exception:
            logger.exception("Failed to report untracked instance alert")
