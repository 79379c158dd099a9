"""
kubedeployer/models/api_model.py

Pydantic models for the acs-engine "vlabs" API model: the input document from
which the template generator produces an ARM template and its parameters.

Only the fields the deployer sets are modelled; anything else found in a
user-supplied API model file is preserved (extra="allow") and written back.
"""

from __future__ import annotations

import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from kubedeployer.models.cluster_spec import ClusterSpec
from kubedeployer.models.credentials import AzureCredentials


class _VlabsModel(BaseModel):
    """Base: camelCase on the wire, unknown keys preserved."""

    model_config = ConfigDict(
        populate_by_name=True, alias_generator=to_camel, extra="allow"
    )


class KubernetesConfig(_VlabsModel):
    custom_hyperkube_image: Optional[str] = None
    custom_windows_package_url: Optional[str] = Field(
        default=None, alias="customWindowsPackageURL"
    )


class OrchestratorProfile(_VlabsModel):
    orchestrator_type: str = "Kubernetes"
    orchestrator_release: Optional[str] = None
    kubernetes_config: Optional[KubernetesConfig] = None


class MasterProfile(_VlabsModel):
    count: int = 1
    dns_prefix: str
    vm_size: str


class AgentPoolProfile(_VlabsModel):
    name: str
    count: int
    vm_size: str
    os_type: Optional[str] = None
    availability_profile: str = "AvailabilitySet"


class PublicKey(_VlabsModel):
    key_data: str


class SSHKeys(_VlabsModel):
    public_keys: List[PublicKey] = Field(default_factory=list)


class LinuxProfile(_VlabsModel):
    admin_username: str
    ssh: SSHKeys = Field(default_factory=SSHKeys)


class WindowsProfile(_VlabsModel):
    admin_username: str
    admin_password: str = Field(repr=False)


class ServicePrincipalProfile(_VlabsModel):
    client_id: str
    secret: str = Field(repr=False)


class Properties(_VlabsModel):
    orchestrator_profile: OrchestratorProfile = Field(
        default_factory=OrchestratorProfile
    )
    master_profile: Optional[MasterProfile] = None
    agent_pool_profiles: List[AgentPoolProfile] = Field(default_factory=list)
    linux_profile: Optional[LinuxProfile] = None
    windows_profile: Optional[WindowsProfile] = None
    service_principal_profile: Optional[ServicePrincipalProfile] = None


class ApiModel(_VlabsModel):
    """Top-level acs-engine API model."""

    api_version: str = "vlabs"
    location: Optional[str] = None
    name: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    properties: Properties = Field(default_factory=Properties)

    def to_document(self) -> Dict[str, Any]:
        """Dump to the JSON-ready camelCase document the generator reads."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> ApiModel:
        return cls.model_validate(document)


def api_model_from_spec(
    spec: ClusterSpec, credentials: AzureCredentials
) -> ApiModel:
    """Build a default API model for `spec`: one master pool and one agent pool."""
    linux_profile = LinuxProfile(
        admin_username=spec.admin_username,
        ssh=SSHKeys(
            public_keys=(
                [PublicKey(key_data=spec.ssh_public_key)]
                if spec.ssh_public_key
                else []
            )
        ),
    )
    windows_profile = (
        WindowsProfile(
            admin_username=spec.admin_username,
            admin_password=spec.admin_password or "",
        )
        if spec.agent_os_type == "Windows"
        else None
    )
    return ApiModel(
        location=spec.location,
        name=spec.name,
        tags={"date": datetime.datetime.now(datetime.timezone.utc).isoformat()},
        properties=Properties(
            orchestrator_profile=OrchestratorProfile(
                orchestrator_release=spec.orchestrator_version,
            ),
            master_profile=MasterProfile(
                count=spec.master_count,
                dns_prefix=spec.dns_prefix,
                vm_size=spec.master_vm_size,
            ),
            agent_pool_profiles=[
                AgentPoolProfile(
                    name=spec.agent_pool_name,
                    count=spec.agent_count,
                    vm_size=spec.agent_vm_size,
                    os_type=spec.agent_os_type,
                )
            ],
            linux_profile=linux_profile,
            windows_profile=windows_profile,
            service_principal_profile=ServicePrincipalProfile(
                client_id=credentials.client_id,
                secret=credentials.client_secret,
            ),
        ),
    )


def apply_spec_overrides(
    model: ApiModel, spec: ClusterSpec, credentials: AzureCredentials
) -> ApiModel:
    """Overlay cluster-level values onto a (possibly user-supplied) API model.

    Spec values always win: name, location, tags and the custom binary
    overrides. A model without a service principal gets the one from the
    credentials.
    """
    properties = model.properties
    kubernetes_config = (
        properties.orchestrator_profile.kubernetes_config or KubernetesConfig()
    )
    if spec.custom_hyperkube_image:
        kubernetes_config = kubernetes_config.model_copy(
            update={"custom_hyperkube_image": spec.custom_hyperkube_image}
        )
    if spec.custom_windows_package_url:
        kubernetes_config = kubernetes_config.model_copy(
            update={"custom_windows_package_url": spec.custom_windows_package_url}
        )
    has_k8s_overrides = (
        kubernetes_config.custom_hyperkube_image is not None
        or kubernetes_config.custom_windows_package_url is not None
        or properties.orchestrator_profile.kubernetes_config is not None
    )
    orchestrator_profile = properties.orchestrator_profile.model_copy(
        update={"kubernetes_config": kubernetes_config if has_k8s_overrides else None}
    )

    service_principal = properties.service_principal_profile or ServicePrincipalProfile(
        client_id=credentials.client_id,
        secret=credentials.client_secret,
    )

    return model.model_copy(
        update={
            "name": spec.name,
            "location": spec.location,
            "tags": {**model.tags, **spec.tags},
            "properties": properties.model_copy(
                update={
                    "orchestrator_profile": orchestrator_profile,
                    "service_principal_profile": service_principal,
                }
            ),
        }
    )


__all__ = [
    "ApiModel",
    "AgentPoolProfile",
    "KubernetesConfig",
    "LinuxProfile",
    "MasterProfile",
    "OrchestratorProfile",
    "Properties",
    "ServicePrincipalProfile",
    "WindowsProfile",
    "api_model_from_spec",
    "apply_spec_overrides",
]
