"""
kubedeployer/deployment/lifecycle.py

The contracts the orchestration engine is written against:

  - ClusterDeployer: the lifecycle every provider's deployer offers to the
    test harness (up, down, is_up, test_setup, dump_cluster_logs,
    get_cluster_created).
  - ControlPlane: the provider operations the orchestrator sequences.
  - TemplateBuilder: produces the deployment template and parameters.
"""

from __future__ import annotations

import asyncio
import datetime
from abc import ABC, abstractmethod
from typing import Dict, Optional, Protocol, Tuple

from kubedeployer.models.arm import (
    DeploymentParameters,
    DeploymentResult,
    DeploymentTemplate,
    ResourceGroup,
    ValidationResult,
)
from kubedeployer.models.cluster_spec import ClusterSpec


class ClusterDeployer(ABC):
    """Lifecycle contract consumed by the surrounding test harness."""

    @abstractmethod
    async def up(self) -> None:
        """Provision the cluster and export its access configuration."""

    @abstractmethod
    async def down(self) -> None:
        """Tear the cluster down."""

    @abstractmethod
    async def is_up(self) -> None:
        """Raise ClusterNotUpError unless the cluster is reachable."""

    @abstractmethod
    async def test_setup(self) -> None:
        """Prepare the environment for test execution against the cluster."""

    @abstractmethod
    async def dump_cluster_logs(self, local_path: str, remote_path: str) -> None:
        """Collect cluster logs into `local_path`."""

    @abstractmethod
    async def get_cluster_created(self, name: str) -> datetime.datetime:
        """Return when the named cluster was created."""


class ControlPlane(Protocol):
    """Provider operations needed to bring a template-described cluster up."""

    async def ensure_resource_group(
        self,
        name: str,
        location: str,
        tags: Optional[Dict[str, str]] = None,
        managed_by: Optional[str] = None,
    ) -> ResourceGroup: ...

    async def get_resource_group(self, name: str) -> Optional[ResourceGroup]: ...

    async def delete_resource_group(self, name: str) -> None: ...

    async def validate_deployment(
        self,
        resource_group: str,
        deployment_name: str,
        template: DeploymentTemplate,
        parameters: DeploymentParameters,
    ) -> ValidationResult: ...

    async def deploy_template(
        self,
        resource_group: str,
        deployment_name: str,
        template: DeploymentTemplate,
        parameters: DeploymentParameters,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> DeploymentResult: ...

    async def get_deployment(
        self, resource_group: str, deployment_name: str
    ) -> Optional[DeploymentResult]: ...

    async def close(self) -> None: ...


class TemplateBuilder(Protocol):
    """Turns a ClusterSpec into (template, parameters).

    `requires_tool` tells the orchestrator whether an external executable must
    be fetched first and passed as `tool_path`.
    """

    requires_tool: bool

    async def build(
        self, spec: ClusterSpec, tool_path: Optional[str] = None
    ) -> Tuple[DeploymentTemplate, DeploymentParameters]: ...


__all__ = ["ClusterDeployer", "ControlPlane", "TemplateBuilder"]
