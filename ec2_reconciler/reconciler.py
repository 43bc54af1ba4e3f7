"""
Event reconciliation engine.

EventReconciler merges one EC2 state-change notification into the state store.
Delivery is at-least-once and unordered, so every decision is made against the
``last_event_at`` of the stored record, read under a row lock:

- record exists, notification newer: update (pending/running) or delete
- record exists, notification not newer: drop it and count it as out of order
- no record, pending/running: describe the instance and insert it if this
  provisioner owns it
- no record, any other state: delete unconditionally

The row lock is released before any provider call so that one slow API call
does not serialize unrelated instances.
"""

import logging
from typing import Any

from ec2_reconciler.exceptions import InstanceNotFoundError
from ec2_reconciler.monitor import Monitor
from ec2_reconciler.notifications import (
    KEY_NAME_SEPARATOR,
    LifecycleNotification,
    decode_notification,
    parse_key_name,
)
from ec2_reconciler.provider import CloudAPIGateway
from ec2_reconciler.storage.protocol import InstanceRecord, StateStoreProtocol, Transaction
from ec2_reconciler.tagger import Tagger

logger = logging.getLogger(__name__)


class EventReconciler:
    """
    Applies lifecycle notifications to the state store.

    ``handle()`` raises only when the notification should be redelivered
    (provider API lag, provider failures, failed writes); every other failure
    is reported through the monitor and absorbed.
    """

    def __init__(
        self,
        store: StateStoreProtocol,
        gateway: CloudAPIGateway,
        tagger: Tagger,
        monitor: Monitor,
        key_prefix: str,
    ):
        """
        Initialize the reconciler.

        Args:
            store: State store holding instance records and the event log
            gateway: Provider API used to describe instances we have no record of
            tagger: Applies ownership tags to newly discovered instances
            monitor: Metrics/alert sink
            key_prefix: Key-pair name prefix of this provisioner, with its
                trailing separator (e.g., "ec2-manager:")
        """
        if not key_prefix.endswith(KEY_NAME_SEPARATOR) or len(key_prefix) < 2:
            raise ValueError(
                f"key_prefix must be a provisioner id followed by '{KEY_NAME_SEPARATOR}', "
                f"got {key_prefix!r}"
            )

        self.store = store
        self.gateway = gateway
        self.tagger = tagger
        self.monitor = monitor.prefix("cloud-watch-events")
        self.key_prefix = key_prefix
        self.provisioner_id = key_prefix[: -len(KEY_NAME_SEPARATOR)]

    async def handle_message(self, body: str) -> None:
        """
        Queue handler: decode a raw message body and reconcile it.

        Raises:
            NotificationDecodeError: If the body is malformed (left for redelivery,
                ending up in the dead-letter queue)
        """
        notification = decode_notification(body)
        with self.monitor.timer("message-handler-time"):
            await self.handle(notification)
        self.monitor.count("handled-messages")

    async def handle(self, notification: LifecycleNotification) -> None:
        """Reconcile one notification with the state store."""
        region = notification.region
        instance_id = notification.instance_id

        try:
            await self.store.log_event(
                region, instance_id, notification.state, notification.generated_at
            )
        except Exception as e:
            # The audit log must never block reconciliation
            self.monitor.report_error(e, extra={"region": region, "instance_id": instance_id})

        txn = await self.store.begin_transaction()

        try:
            record = await self.store.find_instance(region, instance_id, txn)
        except Exception:
            logger.exception(
                "Error looking up state from database",
                extra={"region": region, "instance_id": instance_id},
            )
            await self.store.rollback(txn)
            return

        if record is not None:
            await self._apply_to_record(notification, record, txn)
            return

        # Nothing to hold a lock on; never keep a transaction open across API calls
        try:
            await self.store.commit(txn)
        except Exception as e:
            self.monitor.report_error(e, extra={"region": region, "instance_id": instance_id})
            raise

        if notification.state.is_live:
            await self._discover_instance(notification)
        else:
            try:
                await self.store.remove_instance(region, instance_id)
            except Exception as e:
                self.monitor.report_error(e, extra={"region": region, "instance_id": instance_id})
                raise
            logger.debug(
                "CloudWatch event resulting in deletion",
                extra={"region": region, "instance_id": instance_id, "metadata_source": None},
            )

    async def _apply_to_record(
        self,
        notification: LifecycleNotification,
        record: InstanceRecord,
        txn: Transaction,
    ) -> None:
        """Compare-and-swap on last_event_at while holding the row lock."""
        region = notification.region
        instance_id = notification.instance_id
        log_info = self._log_info(record, notification, metadata_source="db")

        if notification.generated_at > record.last_event_at:
            try:
                if notification.state.is_live:
                    await self.store.update_instance_state(
                        region,
                        instance_id,
                        notification.state,
                        notification.generated_at,
                        txn,
                    )
                else:
                    await self.store.remove_instance(region, instance_id, txn)
                await self.store.commit(txn)
            except Exception as e:
                if txn.is_active:
                    await self.store.rollback(txn)
                logger.error(
                    f"Error trying to update or remove instance {instance_id}: {e}",
                    extra=log_info,
                )
                self.monitor.report_error(e, extra={"region": region, "instance_id": instance_id})
                raise

            if notification.state.is_live:
                logger.info("CloudWatch event resulting in update", extra=log_info)
            else:
                logger.debug("CloudWatch event resulting in deletion", extra=log_info)
            return

        # No write, but the row is locked: release it
        try:
            await self.store.commit(txn)
        except Exception as e:
            self.monitor.report_error(e, extra={"region": region, "instance_id": instance_id})
            raise

        delay_ms = (record.last_event_at - notification.generated_at).total_seconds() * 1000.0
        self.monitor.count("global.cwe-out-of-order.count")
        self.monitor.count(f"{region}.cwe-out-of-order.count")
        self.monitor.measure("global.cwe-out-of-order.delay", delay_ms)
        self.monitor.measure(f"{region}.cwe-out-of-order.delay", delay_ms)
        logger.info(
            "CloudWatch event delivered out of order",
            extra={
                "region": region,
                "instance_id": instance_id,
                "state": notification.state.value,
                "delay_ms": delay_ms,
            },
        )

    async def _discover_instance(self, notification: LifecycleNotification) -> None:
        """Describe an untracked pending/running instance and track it if it is ours."""
        region = notification.region
        instance_id = notification.instance_id

        if await self._superseded_by_terminal_event(notification):
            logger.info(
                "Ignoring CloudWatch event superseded by a newer terminal event",
                extra={
                    "region": region,
                    "instance_id": instance_id,
                    "state": notification.state.value,
                    "last_event_at": notification.generated_at.isoformat(),
                },
            )
            return

        try:
            descriptor = await self.gateway.describe_instance(instance_id)
        except InstanceNotFoundError:
            # Usually EC2 internal lag: let redelivery retry, the dead-letter
            # handler alerts once the attempts are exhausted
            self.monitor.count("global.api-lag")
            self.monitor.count(f"{region}.api-lag")
            logger.debug(f"Instance {instance_id} not yet visible through the API")
            raise
        except Exception as e:
            self.monitor.report_error(e, extra={"region": region, "instance_id": instance_id})
            raise

        ownership = parse_key_name(descriptor.key_name)

        # Instances outside any provisioner have no separator in their key name
        if ownership.ok and not descriptor.has_owner_tag:
            try:
                await self.tagger.tag_resources(
                    ids=[instance_id],
                    worker_type=ownership.worker_type,
                    region=region,
                )
            except Exception as e:
                self.monitor.report_error(
                    e, level="warning", extra={"region": region, "instance_id": instance_id}
                )

        record = InstanceRecord(
            region=region,
            instance_id=instance_id,
            worker_type=ownership.worker_type or "",
            provisioner_id=ownership.provisioner_id or "",
            availability_zone=descriptor.availability_zone,
            instance_type=descriptor.instance_type,
            image_id=descriptor.image_id,
            spot_request_id=descriptor.spot_request_id,
            launched_at=descriptor.launch_time,
            state=notification.state,
            last_event_at=notification.generated_at,
        )
        log_info = self._log_info(record, notification, metadata_source="api")

        if not ownership.ok or ownership.provisioner_id != self.provisioner_id:
            logger.debug(
                "Ignoring instance because it does not belong to this manager", extra=log_info
            )
            return

        try:
            written = await self.store.upsert_instance(record)
        except Exception as e:
            self.monitor.report_error(e, extra={"region": region, "instance_id": instance_id})
            raise

        if not written:
            # Another consumer tracked the instance with a newer event meanwhile
            logger.info("Ignoring CloudWatch event older than the stored record", extra=log_info)
            return
        logger.info("CloudWatch event resulting in insertion", extra=log_info)

    async def _superseded_by_terminal_event(self, notification: LifecycleNotification) -> bool:
        """
        True if the event log holds a newer terminal notification for the instance.

        A terminal notification for an untracked instance leaves no row behind,
        so a late pending/running notification would otherwise resurrect it.
        """
        try:
            events = await self.store.list_events(notification.region, notification.instance_id)
        except Exception as e:
            self.monitor.report_error(
                e,
                level="warning",
                extra={"region": notification.region, "instance_id": notification.instance_id},
            )
            return False

        return any(
            not event["state"].is_live and event["generated_at"] > notification.generated_at
            for event in events
        )

    @staticmethod
    def _log_info(
        record: InstanceRecord,
        notification: LifecycleNotification,
        metadata_source: str,
    ) -> dict[str, Any]:
        return {
            "worker_type": record.worker_type,
            "region": record.region,
            "availability_zone": record.availability_zone,
            "instance_id": record.instance_id,
            "instance_type": record.instance_type,
            "spot_request_id": record.spot_request_id,
            "image_id": record.image_id,
            "launched_at": record.launched_at.isoformat(),
            "state": notification.state.value,
            "last_event_at": notification.generated_at.isoformat(),
            "metadata_source": metadata_source,
        }
