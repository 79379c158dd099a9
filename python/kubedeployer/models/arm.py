"""
kubedeployer/models/arm.py

Pydantic models for the Azure Resource Manager objects the deployer reads
back: resource groups, deployments and validation results. The template and
parameters documents themselves stay plain JSON objects.
"""

from __future__ import annotations

import datetime
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

DeploymentTemplate = Dict[str, Any]
DeploymentParameters = Dict[str, Any]

_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_arm_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
    """Parse an ARM timestamp; ARM emits 7 fractional digits, datetime takes 6."""
    if not value:
        return None
    return datetime.datetime.fromisoformat(_FRACTION.sub(r".\1", value))


class ProvisioningState(str, Enum):
    accepted = "Accepted"
    created = "Created"
    creating = "Creating"
    running = "Running"
    ready = "Ready"
    updating = "Updating"
    deleting = "Deleting"
    canceled = "Canceled"
    failed = "Failed"
    succeeded = "Succeeded"
    unknown = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> ProvisioningState:
        """Map a provider string to a state, `unknown` when unrecognised."""
        if not value:
            return cls.unknown
        lowered = value.lower()
        return next(
            (state for state in cls if state.value.lower() == lowered), cls.unknown
        )

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProvisioningState.succeeded,
            ProvisioningState.failed,
            ProvisioningState.canceled,
        )


class ResourceGroup(BaseModel):
    """A resource group as returned by ARM."""

    id: Optional[str] = None
    name: str
    location: str
    tags: Dict[str, str] = Field(default_factory=dict)
    managed_by: Optional[str] = None
    provisioning_state: ProvisioningState = ProvisioningState.unknown

    @classmethod
    def from_arm(cls, body: Dict[str, Any]) -> ResourceGroup:
        properties = body.get("properties") or {}
        return cls(
            id=body.get("id"),
            name=body.get("name", ""),
            location=body.get("location", ""),
            tags=body.get("tags") or {},
            managed_by=body.get("managedBy"),
            provisioning_state=ProvisioningState.parse(
                properties.get("provisioningState")
            ),
        )


class DeploymentResult(BaseModel):
    """State of a resource-group-scoped deployment."""

    id: Optional[str] = None
    name: str
    provisioning_state: ProvisioningState
    timestamp: Optional[datetime.datetime] = None
    outputs: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def from_arm(cls, body: Dict[str, Any]) -> DeploymentResult:
        properties = body.get("properties") or {}
        return cls(
            id=body.get("id"),
            name=body.get("name", ""),
            provisioning_state=ProvisioningState.parse(
                properties.get("provisioningState")
            ),
            timestamp=parse_arm_timestamp(properties.get("timestamp")),
            outputs=properties.get("outputs") or {},
            error=properties.get("error"),
        )


class ValidationResult(BaseModel):
    """Outcome of a successful template validation."""

    provisioning_state: ProvisioningState
    validated_resources: List[str] = Field(default_factory=list)

    @classmethod
    def from_arm(cls, body: Dict[str, Any]) -> ValidationResult:
        properties = body.get("properties") or {}
        return cls(
            provisioning_state=ProvisioningState.parse(
                properties.get("provisioningState")
            ),
            validated_resources=[
                resource["id"]
                for resource in properties.get("validatedResources") or []
                if isinstance(resource, dict) and "id" in resource
            ],
        )


__all__ = [
    "DeploymentTemplate",
    "DeploymentParameters",
    "ProvisioningState",
    "ResourceGroup",
    "DeploymentResult",
    "ValidationResult",
    "parse_arm_timestamp",
]
