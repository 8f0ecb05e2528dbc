"""Error taxonomy for lifecycle operations.

Every failure that leaves the core is one of the classes below and carries
enough context (resource kind, id, operation) to attribute it. Azure SDK
exceptions are translated exactly once, at the boundary, by
translate_azure_error().

TAXONOMY:
- TransientError: network blips and throttling, absorbed by the poller
- NotFoundError: absence; success for delete, a signal for read/update
- RemoteValidationError: desired state rejected by the remote API
- PermissionDeniedError: credentials or policy insufficient
- TerminalFailureError: remote reports an explicit failure while provisioning
- PollTimeoutError: waiting exceeded the policy's maximum wait
- ReconcileCancelledError: the caller gave up (deadline or cancel event)

PreconditionSkipped is deliberately outside the hierarchy: it is a
structured "cannot run here" outcome, not a failure.
"""

from __future__ import annotations

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
PERMISSION_STATUS_CODES = frozenset({401, 403})

# ARM error codes that mean "try again later" regardless of HTTP status
TRANSIENT_ERROR_CODES = frozenset(
    {
        "TooManyRequests",
        "Throttled",
        "RetryableError",
        "AnotherOperationInProgress",
        "OperationNotAllowed.Retry",
    }
)


class ReconcileError(Exception):
    """Base class for all lifecycle failures.

    Attributes:
        kind: Resource kind the operation was issued for.
        resource_id: Remote identifier, empty before creation.
        operation: Lifecycle operation (create, read, update, delete, ...).
        code: Remote error code, when the remote API supplied one.
        status_code: HTTP status, when the failure came from an HTTP response.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str = "",
        resource_id: str = "",
        operation: str = "",
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.resource_id = resource_id
        self.operation = operation
        self.code = code
        self.status_code = status_code

    def __str__(self) -> str:
        context = [
            f"{label}={value}"
            for label, value in (
                ("kind", self.kind),
                ("id", self.resource_id),
                ("operation", self.operation),
                ("code", self.code),
            )
            if value
        ]
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class TransientError(ReconcileError):
    """Network failure or throttling; safe to retry with backoff."""


class NotFoundError(ReconcileError):
    """The remote resource does not exist."""


class RemoteValidationError(ReconcileError):
    """The remote API rejected the desired state (including immutable fields)."""


class PermissionDeniedError(ReconcileError):
    """Credentials or policy do not allow the operation."""


class TerminalFailureError(ReconcileError):
    """The remote side reported an explicit failure during async provisioning."""


class PollTimeoutError(ReconcileError):
    """Polling exceeded the maximum wait without reaching a terminal state."""


class ReconcileCancelledError(ReconcileError):
    """The caller cancelled or its deadline passed while waiting."""


class PreconditionSkipped(Exception):
    """The environment cannot run this resource kind. Not an error.

    Raised by the pre-check gate when a feature or provider is structurally
    unavailable (e.g. provider not registered on the subscription).
    """

    def __init__(self, kind: str, reason: str) -> None:
        super().__init__(f"{kind}: {reason}")
        self.kind = kind
        self.reason = reason


def remote_error_code(exc: AzureError) -> str | None:
    """Extract the ARM error code from an SDK exception, if any."""
    error = getattr(exc, "error", None)
    code = getattr(error, "code", None)
    return code or None


def translate_azure_error(
    exc: AzureError,
    *,
    kind: str = "",
    resource_id: str = "",
    operation: str = "",
) -> ReconcileError:
    """Map an Azure SDK exception onto the lifecycle error taxonomy.

    Args:
        exc: Exception raised by an Azure SDK call.
        kind: Resource kind for attribution.
        resource_id: Resource identifier for attribution.
        operation: Lifecycle operation for attribution.

    Returns:
        The translated error. Callers raise it chained to the original.
    """
    code = remote_error_code(exc)
    status = getattr(exc, "status_code", None)
    message = getattr(exc, "message", None) or str(exc)
    context = {
        "kind": kind,
        "resource_id": resource_id,
        "operation": operation,
        "code": code,
        "status_code": status,
    }

    if isinstance(exc, ResourceNotFoundError) or status == 404:
        return NotFoundError(message, **context)

    if isinstance(exc, ClientAuthenticationError) or status in PERMISSION_STATUS_CODES:
        return PermissionDeniedError(message, **context)

    if code in TRANSIENT_ERROR_CODES or status in TRANSIENT_STATUS_CODES:
        return TransientError(message, **context)

    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return TransientError(message, **context)

    if isinstance(exc, HttpResponseError):
        if status is not None and 400 <= status < 500:
            return RemoteValidationError(message, **context)
        # Unknown or missing status: the response never made it back intact
        return TransientError(message, **context)

    # Non-HTTP SDK errors (connection resets, decode failures)
    return TransientError(message, **context)
