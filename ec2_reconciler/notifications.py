"""
Lifecycle notification schema for the EC2 reconciler.

CloudWatch (EventBridge) delivers EC2 state-change events to SQS with a body
shaped like::

    {
        "region": "us-east-1",
        "time": "2017-09-21T17:52:43Z",
        "detail": {"instance-id": "i-0123456789abcdef0", "state": "running"}
    }

This module validates that shape into a strict LifecycleNotification and
parses the ownership information encoded in an instance key-pair name.
"""

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ec2_reconciler.exceptions import NotificationDecodeError

KEY_NAME_SEPARATOR = ":"


class InstanceState(str, Enum):
    """EC2 instance states as reported in state-change notifications."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"

    @property
    def is_live(self) -> bool:
        """True for states whose instances are tracked (pending/running)."""
        return self in (InstanceState.PENDING, InstanceState.RUNNING)


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime (naive values are assumed to be UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class LifecycleNotification(BaseModel):
    """
    A decoded instance state-change notification.

    Attributes:
        region: Region the instance lives in
        instance_id: EC2 instance id
        state: Reported instance state
        generated_at: Time the provider generated the event (not receipt time)
    """

    model_config = ConfigDict(frozen=True)

    region: str = Field(min_length=1)
    instance_id: str = Field(min_length=1)
    state: InstanceState
    generated_at: datetime

    @field_validator("generated_at")
    @classmethod
    def _normalise_generated_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class _EventDetail(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    instance_id: str = Field(alias="instance-id", min_length=1)
    state: InstanceState


class _EventEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    region: str = Field(min_length=1)
    time: datetime
    detail: _EventDetail


def decode_notification(body: str | bytes | dict[str, Any]) -> LifecycleNotification:
    """
    Decode a raw queue message body into a LifecycleNotification.

    Args:
        body: JSON text (or an already-parsed dict) of the CloudWatch event

    Returns:
        The validated notification

    Raises:
        NotificationDecodeError: If the body is not JSON or does not match the
            expected event shape
    """
    raw = body if isinstance(body, str) else None
    try:
        payload = body if isinstance(body, dict) else json.loads(body)
    except (TypeError, ValueError) as e:
        raise NotificationDecodeError(f"Message body is not valid JSON: {e}", raw) from e

    try:
        envelope = _EventEnvelope.model_validate(payload)
    except ValidationError as e:
        raise NotificationDecodeError(f"Malformed lifecycle notification: {e}", raw) from e

    return LifecycleNotification(
        region=envelope.region,
        instance_id=envelope.detail.instance_id,
        state=envelope.detail.state,
        generated_at=envelope.time,
    )


@dataclass(frozen=True)
class KeyNameOwnership:
    """
    Result of parsing an instance key-pair name.

    Instances launched by a provisioner carry a key name of the form
    ``<provisioner_id>:<worker_type>``. Anything else belongs to nobody we
    track and yields ``ok=False``.
    """

    provisioner_id: str | None
    worker_type: str | None
    ok: bool


def parse_key_name(key_name: str | None) -> KeyNameOwnership:
    """
    Split a key-pair name on its first separator.

    Example:
        >>> parse_key_name("ec2-manager:gecko-t-linux")
        KeyNameOwnership(provisioner_id='ec2-manager', worker_type='gecko-t-linux', ok=True)
        >>> parse_key_name("my-personal-key")
        KeyNameOwnership(provisioner_id='my-personal-key', worker_type=None, ok=False)
    """
    if not key_name:
        return KeyNameOwnership(provisioner_id=None, worker_type=None, ok=False)

    provisioner_id, sep, worker_type = key_name.partition(KEY_NAME_SEPARATOR)
    if not sep or not worker_type:
        return KeyNameOwnership(provisioner_id=provisioner_id or None, worker_type=None, ok=False)

    return KeyNameOwnership(provisioner_id=provisioner_id, worker_type=worker_type, ok=True)
