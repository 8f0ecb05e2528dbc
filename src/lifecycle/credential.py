"""Azure credential and client construction.

In a pipeline the reconciler runs under a managed identity; on a developer
machine it falls back to DefaultAzureCredential (Azure CLI login and so on).
Either way no secret is read by this code: credentials come from the
identity platform or from the azure-identity credential chain.
"""

from __future__ import annotations

import logging

from azure.core.credentials import TokenCredential
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resourcegraph import ResourceGraphClient

from .config import Config

logger = logging.getLogger(__name__)


def get_credential(config: Config) -> TokenCredential:
    """Return the credential selected by the configuration.

    Args:
        config: Configuration (use_managed_identity, client_id).

    Returns:
        ManagedIdentityCredential when managed identity is requested,
        DefaultAzureCredential otherwise.
    """
    if config.use_managed_identity:
        if config.client_id:
            client_id = config.client_id
            logger.info(
                "Using user-assigned managed identity",
                extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
            )
            return ManagedIdentityCredential(client_id=client_id)

        logger.info("Using system-assigned managed identity")
        return ManagedIdentityCredential()

    logger.info("Using default Azure credential chain")
    return DefaultAzureCredential()


def build_clients(
    config: Config, credential: TokenCredential | None = None
) -> tuple[ResourceManagementClient, ResourceGraphClient]:
    """Create the ARM and Resource Graph clients for the configured subscription."""
    credential = credential or get_credential(config)
    return (
        ResourceManagementClient(credential, config.subscription_id),
        ResourceGraphClient(credential),
    )
