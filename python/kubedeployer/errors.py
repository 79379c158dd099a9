"""
kubedeployer/errors.py

Error taxonomy shared by every deployer component. Collaborators raise the
specific subclass; the orchestrator wraps whatever reaches it in a
StepFailedError naming the lifecycle step that failed.
"""

from __future__ import annotations

from typing import Any, Optional


class DeployerError(Exception):
    """Base class for all deployer errors."""


class ConfigurationError(DeployerError):
    """A required setting is missing or invalid. Never retried."""


class CredentialError(DeployerError):
    """The credential file is unreadable or does not parse. Never retried."""


class AuthenticationError(DeployerError):
    """Token acquisition failed or the control plane rejected the token."""


class TransientNetworkError(DeployerError):
    """A download or API call failed in a way that may succeed on retry.

    Attributes:
        status: The HTTP status, when one was received.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class IntegrityError(DeployerError):
    """A downloaded artifact failed its checksum or contains unsafe paths."""


class GenerationError(DeployerError):
    """The template tool or library reported a failure."""


class ParseError(DeployerError):
    """A generated document is not the JSON object it should be."""


class ControlPlaneError(DeployerError):
    """The control plane answered with an error.

    Attributes:
        status: HTTP status code of the failing response, if any.
        body: The decoded provider diagnostic body, if any.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class ConflictError(ControlPlaneError):
    """Quota exhaustion or a conflicting concurrent operation (HTTP 409)."""


class TemplateInvalidError(ControlPlaneError):
    """Template validation was rejected by the control plane."""


class DeploymentFailedError(ControlPlaneError):
    """A submitted deployment reached a failed terminal state."""


class DeploymentTimeoutError(DeployerError):
    """A deployment did not reach a terminal state within its timeout."""


class CancellationError(DeployerError):
    """A long wait was aborted by the caller."""


class ClusterNotUpError(DeployerError):
    """The cluster is not reachable, or no access configuration exists yet."""


class ClusterNotFoundError(DeployerError):
    """The named cluster is unknown to this deployer."""


class OperationNotSupportedError(DeployerError):
    """The provider does not expose the requested information."""


class StepFailedError(DeployerError):
    """A lifecycle step failed.

    Attributes:
        step: Name of the failing step, e.g. "validate deployment".
        cause: The collaborator error that aborted the step.
    """

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"{step} failed: {cause}")
        self.step = step
        self.cause = cause


__all__ = [
    "DeployerError",
    "ConfigurationError",
    "CredentialError",
    "AuthenticationError",
    "TransientNetworkError",
    "IntegrityError",
    "GenerationError",
    "ParseError",
    "ControlPlaneError",
    "ConflictError",
    "TemplateInvalidError",
    "DeploymentFailedError",
    "DeploymentTimeoutError",
    "CancellationError",
    "ClusterNotUpError",
    "ClusterNotFoundError",
    "OperationNotSupportedError",
    "StepFailedError",
]
