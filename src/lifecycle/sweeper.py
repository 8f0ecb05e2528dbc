"""Cleanup of leftover disposable test resources.

Test runs create resource groups whose names start with a configured prefix
followed by a random suffix. A run that crashes leaves them behind; the
sweeper finds them through Azure Resource Graph and tears each one down
through the destroy orchestrator.

SECURITY:
- Query results are bounded by MAX_GRAPH_QUERY_RESULTS
- Queries have a timeout
- The prefix is validated before it is interpolated into KQL
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import string
from dataclasses import dataclass, field
from typing import Any

from azure.core.exceptions import AzureError
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import (
    QueryRequest,
    QueryRequestOptions,
    ResultFormat,
)

from .config import (
    MAX_GRAPH_QUERY_RESULTS,
    MAX_GRAPH_QUERY_TIMEOUT_SECONDS,
    VALID_PREFIX_PATTERN,
    Config,
)
from .errors import PreconditionSkipped, ReconcileError, TransientError, translate_azure_error
from .models import ResourceInstance, ResourceStatus
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

RANDOM_SUFFIX_LENGTH = 8


def random_name(prefix: str, length: int = RANDOM_SUFFIX_LENGTH) -> str:
    """Generate a disposable resource name: "<prefix>-<random suffix>".

    The suffix uses lowercase letters and digits so the name is valid for
    every resource type that accepts lowercase alphanumerics and dashes.
    """
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(length))
    return f"{prefix}-{suffix}"


@dataclass
class SweepResult:
    """Outcome of a sweep.

    Attributes:
        swept: IDs destroyed (or already gone).
        failed: ID -> error message for groups that could not be destroyed.
        skipped: Reason, when the resource group kind is unavailable.
    """

    swept: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: str = ""

    @property
    def success(self) -> bool:
        return not self.failed


class Sweeper:
    """Finds and destroys leftover test resource groups."""

    def __init__(
        self,
        graph_client: ResourceGraphClient,
        reconciler: Reconciler,
        config: Config,
    ) -> None:
        """Initialize the sweeper.

        Args:
            graph_client: Resource Graph client.
            reconciler: Reconciler whose orchestrator performs the teardown.
            config: Configuration (subscription and default prefix).
        """
        self._graph = graph_client
        self._reconciler = reconciler
        self._config = config

    async def find_leftovers(self, prefix: str | None = None) -> list[dict[str, Any]]:
        """List resource groups whose name starts with the prefix.

        Raises:
            ValueError: The prefix is not a valid test prefix.
            TransientError / ReconcileError: The query failed.
        """
        prefix = prefix or self._config.resource_prefix
        if not re.match(VALID_PREFIX_PATTERN, prefix):
            raise ValueError(f"Invalid sweep prefix: {prefix}")

        query = f"""
        resourcecontainers
        | where type =~ 'microsoft.resources/subscriptions/resourcegroups'
        | where subscriptionId == '{self._config.subscription_id}'
        | where name startswith '{prefix}-'
        | project id, name, location
        | order by name asc
        | limit {MAX_GRAPH_QUERY_RESULTS}
        """
        return await self._execute_query(query.strip())

    async def sweep(self, prefix: str | None = None) -> SweepResult:
        """Destroy every leftover resource group with the prefix.

        Groups are destroyed one after another; a failure is recorded and
        the sweep moves on to the next group.
        """
        result = SweepResult()
        leftovers = await self.find_leftovers(prefix)
        logger.info(
            "Sweep started",
            extra={"prefix": prefix or self._config.resource_prefix, "found": len(leftovers)},
        )

        for row in leftovers:
            resource_id = row.get("id", "")
            if not resource_id:
                continue
            instance = ResourceInstance(
                kind="resource_group",
                desired={"name": row.get("name", ""), "location": row.get("location", "")},
                id=resource_id,
                status=ResourceStatus.READY,
            )
            try:
                await self._reconciler.destroy(instance)
            except PreconditionSkipped as e:
                result.skipped = e.reason
                logger.warning("Sweep skipped", extra={"reason": e.reason})
                break
            except ReconcileError as e:
                result.failed[resource_id] = str(e)
                continue
            result.swept.append(resource_id)

        logger.info(
            "Sweep complete",
            extra={"swept": len(result.swept), "failed": len(result.failed)},
        )
        return result

    async def _execute_query(self, query: str) -> list[dict[str, Any]]:
        """Execute a Resource Graph query.

        Returns:
            List of result rows as dictionaries.
        """
        request = QueryRequest(
            subscriptions=[self._config.subscription_id],
            query=query,
            options=QueryRequestOptions(
                result_format=ResultFormat.OBJECT_ARRAY,
                top=MAX_GRAPH_QUERY_RESULTS,
            ),
        )

        try:
            # Resource Graph client is synchronous, wrap in executor
            loop = asyncio.get_event_loop()
            response = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: self._graph.resources(request)),
                timeout=MAX_GRAPH_QUERY_TIMEOUT_SECONDS,
            )
        except TimeoutError as e:
            logger.error(
                "Resource Graph query timed out",
                extra={"timeout_seconds": MAX_GRAPH_QUERY_TIMEOUT_SECONDS},
            )
            raise TransientError("Resource Graph query timed out", operation="sweep") from e
        except AzureError as e:
            logger.error("Resource Graph query failed", extra={"error": str(e)})
            raise translate_azure_error(e, operation="sweep") from e

        if response.data is None:
            return []

        # response.data is a list of dictionaries when using OBJECT_ARRAY format
        if isinstance(response.data, list):
            return response.data

        return []
