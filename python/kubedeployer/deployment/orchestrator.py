"""
kubedeployer/deployment/orchestrator.py

ClusterOrchestrator sequences one cluster's lifecycle against a control plane
and a template builder:

  Initialized -> TemplatesReady -> GroupEnsured -> Validated -> Deployed
              -> ConfigExported                     (up)
  any state   -> GroupDeleted                       (down)

A failing step aborts `up()` with StepFailedError naming the step; nothing is
rolled back, `down()` is the cleanup path.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import os
import tempfile
from enum import Enum
from typing import Any, Awaitable, List, Optional, Type, TypeVar

from kubedeployer.deployment.lifecycle import (
    ClusterDeployer,
    ControlPlane,
    TemplateBuilder,
)
from kubedeployer.errors import (
    ClusterNotFoundError,
    ClusterNotUpError,
    ConfigurationError,
    OperationNotSupportedError,
    ParseError,
    StepFailedError,
)
from kubedeployer.models.arm import parse_arm_timestamp
from kubedeployer.models.cluster_spec import ClusterSpec
from kubedeployer.models.deployer_config import DeployerConfig
from kubedeployer.utils.artifact_fetcher import ArtifactFetcher
from kubedeployer.utils.async_command_runner import CommandError
from kubedeployer.utils.kubectl import (
    check_cluster_up,
    dump_cluster_info,
    export_kubeconfig,
    find_kubeconfig,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CREATION_TIMESTAMP_TAG = "creationTimestamp"


class OrchestratorState(str, Enum):
    initialized = "Initialized"
    templates_ready = "TemplatesReady"
    group_ensured = "GroupEnsured"
    validated = "Validated"
    deployed = "Deployed"
    config_exported = "ConfigExported"
    group_deleted = "GroupDeleted"


def prepare_workdir(config: DeployerConfig) -> str:
    """Create the working directory for one deployer instance.

    Uses `config.workdir` when set, else a fresh `acs*` directory under
    `config.workdir_parent` (or $HOME).
    """
    if config.workdir:
        os.makedirs(config.workdir, exist_ok=True)
        return os.path.abspath(config.workdir)
    parent = config.workdir_parent or os.environ.get("HOME") or tempfile.gettempdir()
    os.makedirs(parent, exist_ok=True)
    return tempfile.mkdtemp(prefix="acs", dir=parent)


class ClusterOrchestrator(ClusterDeployer):
    """Template-based deployer for one cluster.

    Args:
        config: Immutable deployer configuration.
        control_plane: Provider operations (e.g. AsyncArmClient).
        template_builder: Produces the template and its parameters.
        artifact_fetcher: Fetches the generator tool; needed when the builder
            requires a tool and no `tool.binary_path` is configured.
        workdir: Already-created working directory; created from `config` if None.
    """

    def __init__(
        self,
        config: DeployerConfig,
        control_plane: ControlPlane,
        template_builder: TemplateBuilder,
        artifact_fetcher: Optional[ArtifactFetcher] = None,
        workdir: Optional[str] = None,
    ) -> None:
        self.config = config
        self.control_plane = control_plane
        self.template_builder = template_builder
        self.artifact_fetcher = artifact_fetcher
        self.workdir = workdir or prepare_workdir(config)

        self.state = OrchestratorState.initialized
        self.history: List[OrchestratorState] = [self.state]
        self.kubeconfig_path: Optional[str] = None
        self.cancel_event = asyncio.Event()

    @property
    def spec(self) -> ClusterSpec:
        return self.config.cluster

    async def __aenter__(self) -> ClusterOrchestrator:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Release the control-plane client."""
        await self.control_plane.close()

    def cancel(self) -> None:
        """Abort an in-progress deployment wait."""
        logger.info("Cancellation requested for %s.", self.spec.name)
        self.cancel_event.set()

    def _transition(self, state: OrchestratorState) -> None:
        logger.info("Cluster %s: %s -> %s", self.spec.name, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    async def _step(self, step: str, action: Awaitable[T]) -> T:
        logger.info("Cluster %s: %s", self.spec.name, step)
        try:
            return await action
        except Exception as exc:
            logger.error("Cluster %s: %s failed: %s", self.spec.name, step, exc)
            raise StepFailedError(step, exc) from exc

    # ------------------------------
    # up
    # ------------------------------
    async def _resolve_tool(self) -> Optional[str]:
        if not self.template_builder.requires_tool:
            return None
        tool = self.config.tool
        if tool.binary_path:
            return tool.binary_path
        if self.artifact_fetcher is None or not tool.download_url:
            raise ConfigurationError(
                "Template builder needs a tool but no fetcher or download URL is set."
            )
        return await self.artifact_fetcher.fetch(
            tool.download_url, tool.checksum, tool.max_attempts
        )

    async def _export_config(self) -> str:
        path = find_kubeconfig(self.workdir, self.spec.location)
        export_kubeconfig(path, self.config.kubeconfig_env_var)
        return path

    async def up(self) -> None:
        """Provision the cluster and export its kubeconfig.

        A cancellation requested by an earlier run does not carry over.

        Raises:
            StepFailedError: Wrapping the first collaborator failure.
        """
        self.cancel_event.clear()
        spec = self.spec
        os.makedirs(self.workdir, exist_ok=True)

        tool_path = await self._step("fetch tool", self._resolve_tool())
        template, parameters = await self._step(
            "build templates", self.template_builder.build(spec, tool_path)
        )
        self._transition(OrchestratorState.templates_ready)

        tags = {
            **spec.tags,
            CREATION_TIMESTAMP_TAG: datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        await self._step(
            "ensure resource group",
            self.control_plane.ensure_resource_group(spec.resource_group, spec.location, tags),
        )
        self._transition(OrchestratorState.group_ensured)

        await self._step(
            "validate deployment",
            self.control_plane.validate_deployment(
                spec.resource_group, spec.name, template, parameters
            ),
        )
        self._transition(OrchestratorState.validated)

        await self._step(
            "deploy template",
            self.control_plane.deploy_template(
                spec.resource_group,
                spec.name,
                template,
                parameters,
                cancel=self.cancel_event,
                timeout=self.config.deployment.timeout,
            ),
        )
        self._transition(OrchestratorState.deployed)

        self.kubeconfig_path = await self._step("export kubeconfig", self._export_config())
        self._transition(OrchestratorState.config_exported)

    # ------------------------------
    # down / status
    # ------------------------------
    async def down(self) -> None:
        """Delete the cluster's resource group."""
        logger.info("Deleting resource group: %s.", self.spec.resource_group)
        await self._step(
            "delete resource group",
            self.control_plane.delete_resource_group(self.spec.resource_group),
        )
        self._transition(OrchestratorState.group_deleted)

    def _require_kubeconfig(self) -> str:
        if not self.kubeconfig_path:
            raise ClusterNotUpError(
                f"No kubeconfig exported for cluster {self.spec.name}; run up() first."
            )
        return self.kubeconfig_path

    def adopt_kubeconfig(self) -> str:
        """Pick up a kubeconfig left in the working directory by an earlier `up()`.

        Raises:
            ClusterNotUpError: If the working directory holds no kubeconfig.
        """
        try:
            self.kubeconfig_path = find_kubeconfig(self.workdir, self.spec.location)
        except FileNotFoundError as exc:
            raise ClusterNotUpError(str(exc)) from exc
        return self.kubeconfig_path

    async def is_up(self) -> None:
        """Raise ClusterNotUpError unless kubectl sees a Ready node."""
        kubeconfig = self._require_kubeconfig()
        try:
            await check_cluster_up(kubeconfig)
        except (CommandError, ParseError) as exc:
            raise ClusterNotUpError(f"kubectl get nodes failed: {exc}") from exc

    async def test_setup(self) -> None:
        """Re-export the kubeconfig so test tooling in this process finds it."""
        if self.kubeconfig_path:
            export_kubeconfig(self.kubeconfig_path, self.config.kubeconfig_env_var)

    async def dump_cluster_logs(self, local_path: str, remote_path: str) -> None:
        """Write `kubectl cluster-info dump` output under `local_path`."""
        kubeconfig = self._require_kubeconfig()
        if remote_path:
            logger.info("Remote log upload is not supported; ignoring %s.", remote_path)
        await dump_cluster_info(kubeconfig, local_path)

    async def get_cluster_created(self, name: str) -> datetime.datetime:
        """When the cluster's resource group was created.

        Args:
            name: The cluster name or its resource group name.

        Raises:
            ClusterNotFoundError: If `name` is not this cluster or the group is gone.
            OperationNotSupportedError: If no creation time is recorded.
        """
        spec = self.spec
        if name not in (spec.name, spec.resource_group):
            raise ClusterNotFoundError(f"Cluster {name} is not managed by this deployer.")

        group = await self.control_plane.get_resource_group(spec.resource_group)
        if group is None:
            raise ClusterNotFoundError(f"Resource group {spec.resource_group} not found.")

        tagged = group.tags.get(CREATION_TIMESTAMP_TAG)
        if tagged:
            try:
                created = parse_arm_timestamp(tagged)
            except ValueError:
                logger.warning("Ignoring malformed %s tag: %s", CREATION_TIMESTAMP_TAG, tagged)
            else:
                if created is not None:
                    return created

        deployment = await self.control_plane.get_deployment(spec.resource_group, spec.name)
        if deployment is not None and deployment.timestamp is not None:
            return deployment.timestamp
        raise OperationNotSupportedError(
            f"No creation time recorded for cluster {spec.name}."
        )


__all__ = [
    "CREATION_TIMESTAMP_TAG",
    "ClusterOrchestrator",
    "OrchestratorState",
    "prepare_workdir",
]
