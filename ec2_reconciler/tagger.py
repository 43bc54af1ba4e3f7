"""
Ownership tagging for newly discovered instances.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Protocol, runtime_checkable

from botocore.exceptions import BotoCoreError, ClientError

from ec2_reconciler.exceptions import ProviderError
from ec2_reconciler.provider import OWNER_TAG

logger = logging.getLogger(__name__)


@runtime_checkable
class Tagger(Protocol):
    """Applies ownership metadata to cloud resources."""

    async def tag_resources(self, ids: list[str], worker_type: str, region: str) -> None:
        """Tag the given resources as belonging to ``worker_type``."""
        ...


class EC2Tagger:
    """
    Tagger backed by boto3 EC2 clients, one per region.

    Writes ``Name``, ``Owner`` and ``WorkerType`` tags.
    """

    def __init__(self, ec2_clients: dict[str, Any], provisioner_id: str):
        self.ec2_clients = ec2_clients
        self.provisioner_id = provisioner_id

    async def tag_resources(self, ids: list[str], worker_type: str, region: str) -> None:
        ec2 = self.ec2_clients.get(region)
        if ec2 is None:
            raise ProviderError(f"No EC2 client configured for region {region}")

        tags = [
            {"Key": "Name", "Value": worker_type},
            {"Key": OWNER_TAG, "Value": self.provisioner_id},
            {"Key": "WorkerType", "Value": f"{self.provisioner_id}/{worker_type}"},
        ]

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, partial(ec2.create_tags, Resources=ids, Tags=tags))
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            raise ProviderError(f"CreateTags failed for {ids}: {e}", code) from e
        except BotoCoreError as e:
            raise ProviderError(f"CreateTags failed for {ids}: {e}") from e

        logger.debug(f"Tagged {ids} in {region} as {self.provisioner_id}/{worker_type}")
