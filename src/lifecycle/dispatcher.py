"""CRUD dispatcher.

Routes lifecycle operations to the kind implementation, runs the
synchronous SDK calls off the event loop with a per-call timeout, and
translates SDK exceptions into the error taxonomy. It never retries: retry
and waiting are the poller's job.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any

from azure.core.exceptions import AzureError

from .config import DEFAULT_CALL_TIMEOUT_SECONDS
from .errors import NotFoundError, RemoteValidationError, TransientError, translate_azure_error
from .kinds.base import ResourceKind

logger = logging.getLogger(__name__)


class CrudDispatcher:
    """Executes kind operations and translates their failures."""

    def __init__(self, call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS) -> None:
        """Initialize the dispatcher.

        Args:
            call_timeout_seconds: Maximum duration of a single remote call.
        """
        self._call_timeout = call_timeout_seconds

    async def create(
        self, kind: ResourceKind, desired: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        """Issue a single create call.

        Returns:
            (resource id, observed payload returned by the create call)
        """
        resource_id, observed = await self._run(kind, "create", "", kind.create, desired)
        logger.info("Create accepted", extra={"kind": kind.name, "resource_id": resource_id})
        return resource_id, observed

    async def read(self, kind: ResourceKind, resource_id: str) -> dict[str, Any]:
        """Fetch current remote state.

        Raises:
            NotFoundError: The resource does not exist, whether signalled by a
                not-found error or by an empty result.
        """
        observed = await self._run(kind, "read", resource_id, kind.read, resource_id)
        if observed is None:
            raise NotFoundError(
                "Remote returned an empty result",
                kind=kind.name,
                resource_id=resource_id,
                operation="read",
            )
        return observed

    async def read_optional(self, kind: ResourceKind, resource_id: str) -> dict[str, Any] | None:
        """Like read(), but returns None instead of raising NotFoundError."""
        try:
            return await self.read(kind, resource_id)
        except NotFoundError:
            return None

    async def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        desired: dict[str, Any],
        observed: dict[str, Any],
    ) -> dict[str, Any]:
        """Apply mutable changes in place.

        Raises:
            RemoteValidationError: The remote rejected the change (for example
                an attempt to change an immutable field).
        """
        result = await self._run(
            kind, "update", resource_id, kind.update, resource_id, desired, observed
        )
        logger.info("Update accepted", extra={"kind": kind.name, "resource_id": resource_id})
        return result

    async def delete(self, kind: ResourceKind, resource_id: str) -> bool:
        """Issue a delete call.

        Returns:
            True if the delete was accepted, False if the resource was
            already gone (not-found is success).
        """
        try:
            await self._run(kind, "delete", resource_id, kind.delete, resource_id)
        except NotFoundError:
            logger.info(
                "Delete found nothing to remove",
                extra={"kind": kind.name, "resource_id": resource_id},
            )
            return False
        logger.info("Delete accepted", extra={"kind": kind.name, "resource_id": resource_id})
        return True

    async def _run(
        self,
        kind: ResourceKind,
        operation: str,
        resource_id: str,
        func: Callable[..., Any],
        *args: Any,
    ) -> Any:
        context = {"kind": kind.name, "resource_id": resource_id, "operation": operation}
        loop = asyncio.get_event_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(func, *args)),
                timeout=self._call_timeout,
            )
        except TimeoutError as e:
            logger.warning(
                "Remote call timed out",
                extra={**context, "timeout_seconds": self._call_timeout},
            )
            raise TransientError(
                f"Remote call timed out after {self._call_timeout}s", **context
            ) from e
        except AzureError as e:
            error = translate_azure_error(e, **context)
            if not isinstance(error, NotFoundError):
                logger.warning(
                    "Remote call failed",
                    extra={
                        **context,
                        "error_type": type(error).__name__,
                        "code": error.code,
                        "status_code": error.status_code,
                    },
                )
            raise error from e
        except (KeyError, TypeError, ValueError) as e:
            # Identifier or payload the kind could not map onto a request
            message = f"Desired state is missing field {e}" if isinstance(e, KeyError) else str(e)
            logger.warning("Request could not be built", extra={**context, "error": message})
            raise RemoteValidationError(message, **context) from e
