"""Registry of resource kinds by name."""

from __future__ import annotations

from collections.abc import Iterator

from azure.mgmt.resource import ResourceManagementClient

from ..retry import RetryPolicy
from .arm_resource import GenericResourceKind
from .base import ResourceKind
from .management_lock import ManagementLockKind
from .resource_group import DEFAULT_DESTROY_SETTLE, ResourceGroupKind
from .security_contact import SecurityContactKind


class UnknownKindError(ValueError):
    """Raised when a kind name is not registered."""

    pass


class KindRegistry:
    """Maps kind names to ResourceKind implementations."""

    def __init__(self, kinds: list[ResourceKind] | None = None) -> None:
        self._kinds: dict[str, ResourceKind] = {}
        for kind in kinds or []:
            self.register(kind)

    def register(self, kind: ResourceKind) -> None:
        if not kind.name:
            raise ValueError(f"{kind!r} has no name")
        if kind.name in self._kinds:
            raise ValueError(f"Kind '{kind.name}' is already registered")
        self._kinds[kind.name] = kind

    def get(self, name: str) -> ResourceKind:
        try:
            return self._kinds[name]
        except KeyError:
            raise UnknownKindError(
                f"Unknown resource kind '{name}'. Valid kinds: {sorted(self._kinds)}"
            ) from None

    def names(self) -> list[str]:
        return sorted(self._kinds)

    def __contains__(self, name: object) -> bool:
        return name in self._kinds

    def __iter__(self) -> Iterator[ResourceKind]:
        return iter(self._kinds.values())

    def __len__(self) -> int:
        return len(self._kinds)

    @classmethod
    def builtin(
        cls,
        client: ResourceManagementClient,
        subscription_id: str,
        *,
        destroy_settle: RetryPolicy | None = DEFAULT_DESTROY_SETTLE,
        default_location: str | None = None,
    ) -> KindRegistry:
        """Build the registry of built-in kinds around one shared client.

        Args:
            client: ARM client handle shared by all kinds.
            subscription_id: Subscription the association kinds bind to.
            destroy_settle: Settle policy for kinds whose deletion is
                asynchronous (resource groups).
            default_location: Location of resource groups whose desired
                state names none.
        """
        return cls(
            [
                ResourceGroupKind(
                    client,
                    destroy_settle=destroy_settle,
                    subscription_id=subscription_id,
                    default_location=default_location,
                ),
                ManagementLockKind(client),
                GenericResourceKind(client),
                SecurityContactKind(client, subscription_id),
            ]
        )
