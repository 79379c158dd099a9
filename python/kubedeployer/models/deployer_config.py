"""
kubedeployer/models/deployer_config.py

The single immutable configuration object handed to a deployer. It replaces
process-wide flag state: everything the orchestrator and its collaborators
need is read from here. Loadable from and dumpable to YAML.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Any, Dict, Optional

import aiofiles
import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from kubedeployer.errors import ConfigurationError
from kubedeployer.models.cluster_spec import ClusterSpec


class ProviderName(str, Enum):
    azure = "azure"


class TemplateStrategy(str, Enum):
    """How deployment templates are produced."""

    tool = "tool"
    library = "library"


class AzureEnvironment(BaseModel):
    """Endpoints of one Azure cloud."""

    model_config = ConfigDict(frozen=True)

    name: str = "AzurePublicCloud"
    resource_manager_endpoint: str = "https://management.azure.com"
    authority_host: str = "https://login.microsoftonline.com"
    resource_api_version: str = "2021-04-01"

    @classmethod
    def from_name(cls, name: str) -> AzureEnvironment:
        """Return the endpoints of a named cloud, e.g. 'AzureChinaCloud'.

        Raises:
            ConfigurationError: If the cloud name is unknown.
        """
        try:
            return cls(**_KNOWN_CLOUDS[name.lower()])
        except KeyError as exc:
            raise ConfigurationError(f"Unknown Azure environment: {name}") from exc


_KNOWN_CLOUDS: Dict[str, Dict[str, str]] = {
    "azurepubliccloud": {
        "name": "AzurePublicCloud",
        "resource_manager_endpoint": "https://management.azure.com",
        "authority_host": "https://login.microsoftonline.com",
    },
    "azureusgovernmentcloud": {
        "name": "AzureUSGovernmentCloud",
        "resource_manager_endpoint": "https://management.usgovcloudapi.net",
        "authority_host": "https://login.microsoftonline.us",
    },
    "azurechinacloud": {
        "name": "AzureChinaCloud",
        "resource_manager_endpoint": "https://management.chinacloudapi.cn",
        "authority_host": "https://login.chinacloudapi.cn",
    },
    "azuregermancloud": {
        "name": "AzureGermanCloud",
        "resource_manager_endpoint": "https://management.microsoftazure.de",
        "authority_host": "https://login.microsoftonline.de",
    },
}


class ToolSettings(BaseModel):
    """Where the template-generation tool comes from.

    Attributes:
        download_url: Release archive (gzip tarball) of the tool.
        checksum: Expected hex digest of the archive; empty skips the check.
        checksum_algorithm: hashlib algorithm name for `checksum`.
        max_attempts: Total download attempts.
        retry_delay: Base delay of the linear download backoff, in seconds.
        binary_name: Executable name inside the archive.
        binary_path: Use this executable and skip the download entirely.
    """

    model_config = ConfigDict(frozen=True)

    download_url: str = ""
    checksum: str = ""
    checksum_algorithm: str = "md5"
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)
    binary_name: str = "acs-engine"
    binary_path: Optional[str] = None


class DeploymentSettings(BaseModel):
    """Timing of control-plane calls."""

    model_config = ConfigDict(frozen=True)

    poll_interval: float = Field(default=5.0, gt=0)
    timeout: float = Field(default=3600.0, gt=0)
    api_retries: int = Field(default=3, ge=1)
    api_retry_delay: float = Field(default=2.0, ge=0)
    request_timeout: float = Field(default=60.0, gt=0)
    token_refresh_threshold: float = Field(default=300.0, ge=0)


class DeployerConfig(BaseModel):
    """Everything needed to bring one test cluster up and down.

    Attributes:
        provider: Which deployer implementation to build.
        cluster: The cluster description.
        credentials_file: TOML or JSON credential file.
        ssh_public_key_path: Read when `cluster.ssh_public_key` is empty.
        template_strategy: External tool or in-process library.
        api_model_path: Optional user-supplied API model to start from.
        workdir: Working directory; a fresh temp dir when unset.
        workdir_parent: Parent of the fresh temp dir; $HOME when unset.
        kubeconfig_env_var: Environment variable that receives the kubeconfig path.
        tool: Tool download settings.
        deployment: Control-plane timing.
        environment: Azure cloud endpoints.
    """

    model_config = ConfigDict(frozen=True)

    provider: ProviderName = ProviderName.azure
    cluster: ClusterSpec
    credentials_file: str = Field(..., min_length=1)
    ssh_public_key_path: str = Field(
        default_factory=lambda: os.path.join(
            os.environ.get("HOME", "~"), ".ssh", "id_rsa.pub"
        )
    )
    template_strategy: TemplateStrategy = TemplateStrategy.tool
    api_model_path: Optional[str] = None
    workdir: Optional[str] = None
    workdir_parent: Optional[str] = None
    kubeconfig_env_var: str = "KUBECONFIG"
    tool: ToolSettings = Field(default_factory=ToolSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    environment: AzureEnvironment = Field(default_factory=AzureEnvironment)

    @field_validator("environment", mode="before")
    @classmethod
    def resolve_environment_name(cls, value: Any) -> Any:
        """Allow `environment: AzureChinaCloud` as shorthand for its endpoints."""
        if isinstance(value, str):
            return AzureEnvironment.from_name(value)
        return value

    @model_validator(mode="after")
    def check_tool_source(self) -> DeployerConfig:
        """The tool strategy needs either a download URL or a local binary."""
        if (
            self.template_strategy == TemplateStrategy.tool
            and not self.tool.download_url
            and not self.tool.binary_path
        ):
            raise ValueError(
                "template_strategy 'tool' requires tool.download_url or tool.binary_path."
            )
        return self

    def to_yaml(self, *, sort_keys: bool = False) -> str:
        """Serialize to YAML. Secret cluster fields are dumped as well."""
        return yaml.safe_dump(self.model_dump(mode="json"), sort_keys=sort_keys)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> DeployerConfig:
        """Parse a YAML document into a DeployerConfig.

        Raises:
            ConfigurationError: If the YAML is malformed or fails validation.
        """
        try:
            data = yaml.safe_load(yaml_str)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Malformed deployer config: {exc}") from exc
        return parse_deployer_config(data)


def parse_deployer_config(data: Any) -> DeployerConfig:
    """Validate untyped data, mapping pydantic failures to ConfigurationError."""
    if not isinstance(data, dict):
        raise ConfigurationError("Deployer config must be a mapping.")
    try:
        return DeployerConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid deployer config: {exc}") from exc


async def load_deployer_config(path: str) -> DeployerConfig:
    """Read a YAML deployer config from `path`.

    Raises:
        ConfigurationError: If the file cannot be read or is invalid.
    """
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
    except OSError as exc:
        raise ConfigurationError(f"Cannot read deployer config {path}: {exc}") from exc
    return DeployerConfig.from_yaml(content)


__all__ = [
    "AzureEnvironment",
    "DeployerConfig",
    "DeploymentSettings",
    "ProviderName",
    "TemplateStrategy",
    "ToolSettings",
    "load_deployer_config",
    "parse_deployer_config",
]
