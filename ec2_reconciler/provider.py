"""
Cloud provider gateway for instance descriptor lookups.

EC2Gateway wraps a boto3 EC2 client. boto3 is blocking, so calls run in the
event loop's default executor.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Protocol, runtime_checkable

from botocore.exceptions import BotoCoreError, ClientError

from ec2_reconciler.exceptions import InstanceNotFoundError, ProviderError
from ec2_reconciler.notifications import ensure_utc

OWNER_TAG = "Owner"
NOT_FOUND_CODES = frozenset({"InvalidInstanceID.NotFound"})


@dataclass(frozen=True)
class InstanceDescriptor:
    """The subset of DescribeInstances output the reconciler needs."""

    instance_id: str
    key_name: str | None
    instance_type: str
    availability_zone: str
    image_id: str
    launch_time: datetime
    spot_request_id: str | None = None
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def has_owner_tag(self) -> bool:
        return OWNER_TAG in self.tags

    @classmethod
    def from_api(cls, instance: dict[str, Any]) -> "InstanceDescriptor":
        """Build a descriptor from one ``Reservations[].Instances[]`` entry."""
        return cls(
            instance_id=instance["InstanceId"],
            key_name=instance.get("KeyName"),
            instance_type=instance["InstanceType"],
            availability_zone=instance["Placement"]["AvailabilityZone"],
            image_id=instance["ImageId"],
            launch_time=ensure_utc(instance["LaunchTime"]),
            spot_request_id=instance.get("SpotInstanceRequestId") or None,
            tags={tag["Key"]: tag["Value"] for tag in instance.get("Tags", [])},
        )


@runtime_checkable
class CloudAPIGateway(Protocol):
    """On-demand instance descriptor lookup."""

    async def describe_instance(self, instance_id: str) -> InstanceDescriptor:
        """
        Describe one instance.

        Raises:
            InstanceNotFoundError: If the provider does not know the instance (yet)
            ProviderError: For every other failure
        """
        ...


class EC2Gateway:
    """CloudAPIGateway backed by a boto3 EC2 client."""

    def __init__(self, ec2: Any):
        """
        Args:
            ec2: boto3 EC2 client for the region being reconciled
        """
        self.ec2 = ec2

    @property
    def region(self) -> str:
        return self.ec2.meta.region_name

    async def describe_instance(self, instance_id: str) -> InstanceDescriptor:
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None, partial(self.ec2.describe_instances, InstanceIds=[instance_id])
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in NOT_FOUND_CODES:
                raise InstanceNotFoundError(instance_id, code=code) from e
            raise ProviderError(f"DescribeInstances failed for {instance_id}: {e}", code) from e
        except BotoCoreError as e:
            raise ProviderError(f"DescribeInstances failed for {instance_id}: {e}") from e

        instances = [
            instance
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]
        if not instances:
            # Eventually consistent API: an empty answer means the same as NotFound
            raise InstanceNotFoundError(instance_id, code=None)
        if len(instances) > 1:
            raise ProviderError(
                f"DescribeInstances returned {len(instances)} instances for {instance_id}"
            )

        try:
            return InstanceDescriptor.from_api(instances[0])
        except KeyError as e:
            raise ProviderError(f"DescribeInstances response for {instance_id} lacks {e}") from e
