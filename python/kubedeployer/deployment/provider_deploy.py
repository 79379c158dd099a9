"""
kubedeployer/deployment/provider_deploy.py

Builds a ready-to-use ClusterDeployer for the configured provider: loads the
credentials, fills in the SSH key, authenticates the control-plane client and
wires the template builder and tool fetcher around one working directory.
"""

from __future__ import annotations

import logging
import os
from typing import Awaitable, Callable, Dict, Optional

from kubedeployer.deployment.lifecycle import ClusterDeployer, TemplateBuilder
from kubedeployer.deployment.orchestrator import ClusterOrchestrator, prepare_workdir
from kubedeployer.deployment.templates import (
    LibraryTemplateBuilder,
    TemplateGenerator,
    ToolTemplateBuilder,
)
from kubedeployer.errors import ConfigurationError
from kubedeployer.models.credentials import AzureCredentials
from kubedeployer.models.deployer_config import (
    DeployerConfig,
    ProviderName,
    TemplateStrategy,
)
from kubedeployer.secrets.credentials import load_credentials, read_ssh_public_key
from kubedeployer.services.arm_client import AsyncArmClient
from kubedeployer.utils.artifact_fetcher import ArtifactFetcher

logger = logging.getLogger(__name__)

TOOL_ARCHIVE_NAME = "acs-engine.tar.gz"

DeployerFactory = Callable[
    [DeployerConfig, Optional[TemplateGenerator]], Awaitable[ClusterDeployer]
]


async def _with_ssh_key(config: DeployerConfig) -> DeployerConfig:
    """Return `config` with the cluster's SSH public key filled from disk if empty."""
    if config.cluster.ssh_public_key:
        return config
    key = await read_ssh_public_key(config.ssh_public_key_path)
    cluster = config.cluster.model_copy(update={"ssh_public_key": key})
    return config.model_copy(update={"cluster": cluster})


def _template_builder(
    config: DeployerConfig,
    workdir: str,
    credentials: AzureCredentials,
    template_generator: Optional[TemplateGenerator],
) -> TemplateBuilder:
    if config.template_strategy == TemplateStrategy.library:
        if template_generator is None:
            raise ConfigurationError(
                "template_strategy 'library' requires a template generator."
            )
        return LibraryTemplateBuilder(
            workdir,
            credentials,
            template_generator,
            api_model_path=config.api_model_path,
        )
    return ToolTemplateBuilder(workdir, credentials, api_model_path=config.api_model_path)


async def new_azure_deployer(
    config: DeployerConfig,
    template_generator: Optional[TemplateGenerator] = None,
) -> ClusterDeployer:
    """Create an authenticated ARM-template deployer.

    Args:
        config: The deployer configuration.
        template_generator: In-process generator for the library strategy.

    Returns:
        ClusterDeployer: A ClusterOrchestrator in state Initialized.

    Raises:
        CredentialError: If the credential file is unreadable or invalid.
        ConfigurationError: If the SSH key is missing or the strategy is unusable.
        AuthenticationError: If the service principal is rejected.
    """
    credentials = await load_credentials(config.credentials_file)
    config = await _with_ssh_key(config)
    workdir = prepare_workdir(config)
    logger.info("Working directory for %s: %s", config.cluster.name, workdir)

    builder = _template_builder(config, workdir, credentials, template_generator)

    fetcher: Optional[ArtifactFetcher] = None
    if builder.requires_tool and not config.tool.binary_path:
        fetcher = ArtifactFetcher(
            os.path.join(workdir, TOOL_ARCHIVE_NAME),
            workdir,
            binary_name=config.tool.binary_name,
            retry_delay=config.tool.retry_delay,
            checksum_algorithm=config.tool.checksum_algorithm,
        )

    client = AsyncArmClient(credentials, config.environment, config.deployment)
    try:
        await client.authenticate()
    except BaseException:
        await client.close()
        raise

    return ClusterOrchestrator(config, client, builder, fetcher, workdir=workdir)


DEPLOYER_FACTORY_MAP: Dict[ProviderName, DeployerFactory] = {
    ProviderName.azure: new_azure_deployer,
}


async def new_deployer(
    config: DeployerConfig,
    template_generator: Optional[TemplateGenerator] = None,
) -> ClusterDeployer:
    """Create the deployer registered for `config.provider`.

    Raises:
        ConfigurationError: If no deployer is registered for the provider.
    """
    factory = DEPLOYER_FACTORY_MAP.get(config.provider)
    if factory is None:
        raise ConfigurationError(f"No deployer registered for provider {config.provider}.")
    return await factory(config, template_generator)


__all__ = [
    "DEPLOYER_FACTORY_MAP",
    "TOOL_ARCHIVE_NAME",
    "new_azure_deployer",
    "new_deployer",
]
