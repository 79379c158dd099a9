"""
An asynchronous Azure Resource Manager client covering what a test-cluster
deployer needs: bearer-token acquisition for a service principal, idempotent
resource-group management, template validation, incremental deployment with
a cancellable wait for completion, and deployment diagnostics.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Awaitable, Dict, List, NoReturn, Optional, Tuple, Type, TypeVar
from urllib.parse import quote

import aiohttp

from kubedeployer.errors import (
    AuthenticationError,
    CancellationError,
    ConflictError,
    ControlPlaneError,
    DeployerError,
    DeploymentFailedError,
    DeploymentTimeoutError,
    TemplateInvalidError,
    TransientNetworkError,
)
from kubedeployer.models.arm import (
    DeploymentParameters,
    DeploymentResult,
    DeploymentTemplate,
    ProvisioningState,
    ResourceGroup,
    ValidationResult,
)
from kubedeployer.models.credentials import AzureCredentials
from kubedeployer.models.deployer_config import AzureEnvironment, DeploymentSettings
from kubedeployer.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TENANT_DISCOVERY_API_VERSION = "2016-06-01"
_AUTHORIZATION_URI = re.compile(r'authorization_uri="[^"]*/([^/"]+)"')


async def _read_json(resp: aiohttp.ClientResponse) -> Dict[str, Any]:
    """Decode a response body; empty bodies become {} and non-JSON is wrapped."""
    text = await resp.text()
    if not text.strip():
        return {}
    try:
        decoded = json.loads(text)
    except ValueError:
        return {"raw": text}
    return decoded if isinstance(decoded, dict) else {"value": decoded}


def _error_message(body: Dict[str, Any]) -> str:
    error = body.get("error")
    if isinstance(error, dict):
        code = error.get("code", "")
        message = error.get("message", "")
        return f"{code}: {message}" if code else str(message)
    if isinstance(error, str):
        return error
    return json.dumps(body)[:500]


def error_for_status(status: int, body: Dict[str, Any], action: str) -> DeployerError:
    """Map a failed control-plane response onto the error taxonomy."""
    message = f"{action} failed: HTTP {status}, {_error_message(body)}"
    if status in (401, 403):
        return AuthenticationError(message)
    if status == 409:
        return ConflictError(message, status=status, body=body)
    if status == 429 or status >= 500:
        return TransientNetworkError(message, status=status)
    return ControlPlaneError(message, status=status, body=body)


async def _cancel_requested(cancel: Optional[asyncio.Event], timeout: float) -> bool:
    """Sleep up to `timeout` seconds; True as soon as `cancel` is set."""
    if cancel is None:
        await asyncio.sleep(timeout)
        return False
    try:
        await asyncio.wait_for(cancel.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    return True


async def _unless_cancelled(
    call: Awaitable[T], cancel: Optional[asyncio.Event], message: str
) -> T:
    """Await `call`, abandoning it with CancellationError once `cancel` is set.

    Retries and backoff inside `call` are interrupted too.
    """
    if cancel is None:
        return await call
    task = asyncio.ensure_future(call)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        abandoned = not task.done()
        if abandoned:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
    if abandoned:
        raise CancellationError(message)
    return task.result()


class AsyncArmClient:
    """An asynchronous ARM client bound to one subscription.

    Manages:
      - OAuth2 client-credential tokens (with tenant discovery and refresh)
      - Resource groups (get / ensure / delete)
      - Resource-group deployments (validate / deploy and wait / get / operations)

    Transient failures (connection errors, timeouts, 429, 5xx) are retried with
    a linear backoff; authentication, conflict and validation errors are not.
    """

    def __init__(
        self,
        credentials: AzureCredentials,
        environment: Optional[AzureEnvironment] = None,
        settings: Optional[DeploymentSettings] = None,
    ) -> None:
        """
        Initialize the AsyncArmClient.

        Args:
            credentials (AzureCredentials): Service principal and subscription.
            environment (Optional[AzureEnvironment]): Cloud endpoints; public cloud by default.
            settings (Optional[DeploymentSettings]): Poll, retry and timeout settings.
        """
        self._credentials = credentials
        self._environment = environment or AzureEnvironment()
        self._settings = settings or DeploymentSettings()

        self._tenant_id: Optional[str] = credentials.tenant_id
        self._session: Optional[aiohttp.ClientSession] = None
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0

    async def __aenter__(self) -> AsyncArmClient:
        """Async context manager entry, creates an aiohttp session if missing."""
        await self.ensure_session()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        """Async context manager exit, closes the aiohttp session."""
        await self.close()

    async def ensure_session(self) -> aiohttp.ClientSession:
        """Ensure an aiohttp session is available, creating one if needed."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._settings.request_timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
        self._session = None

    @property
    def subscription_id(self) -> str:
        return self._credentials.subscription_id

    # ------------------------------
    # Authentication
    # ------------------------------
    async def authenticate(self) -> None:
        """Resolve the tenant and obtain a first token.

        Raises:
            AuthenticationError: If the tenant or the token cannot be obtained.
        """
        await self.ensure_valid_token()

    async def get_tenant_id(self) -> str:
        """Return the configured tenant, discovering it from the subscription if unset.

        ARM answers an unauthenticated subscription lookup with 401 and a
        `WWW-Authenticate` header naming the tenant's authority.
        """
        if self._tenant_id:
            return self._tenant_id

        session = await self.ensure_session()
        url = (
            f"{self._environment.resource_manager_endpoint}"
            f"/subscriptions/{quote(self.subscription_id)}"
        )
        try:
            async with session.get(
                url, params={"api-version": _TENANT_DISCOVERY_API_VERSION}
            ) as resp:
                header = resp.headers.get("WWW-Authenticate", "")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientNetworkError(f"Tenant discovery failed: {exc}") from exc

        match = _AUTHORIZATION_URI.search(header)
        if not match:
            raise AuthenticationError(
                f"Could not discover the tenant of subscription {self.subscription_id}."
            )
        self._tenant_id = match.group(1)
        logger.info("Discovered tenant %s.", self._tenant_id)
        return self._tenant_id

    async def ensure_valid_token(self) -> None:
        """Acquire a token, or refresh one that is close to expiry."""
        remaining = self._token_expires_at - time.time()
        if self._access_token and remaining > self._settings.token_refresh_threshold:
            return
        await self._acquire_token()

    async def _acquire_token(self) -> None:
        """Client-credential grant against the tenant's v2 token endpoint.

        Raises:
            AuthenticationError: If the identity platform refuses the grant.
            TransientNetworkError: If it cannot be reached after retries.
        """

        @async_retry(
            retries=self._settings.api_retries,
            delay=self._settings.api_retry_delay,
            linear_backoff=True,
            retry_on=(TransientNetworkError,),
            noisy=True,
        )
        async def _request_token() -> Dict[str, Any]:
            tenant = await self.get_tenant_id()
            session = await self.ensure_session()
            url = f"{self._environment.authority_host}/{quote(tenant)}/oauth2/v2.0/token"
            form = {
                "grant_type": "client_credentials",
                "client_id": self._credentials.client_id,
                "client_secret": self._credentials.client_secret,
                "scope": f"{self._environment.resource_manager_endpoint}/.default",
            }
            try:
                async with session.post(url, data=form) as resp:
                    payload = await _read_json(resp)
                    status = resp.status
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise TransientNetworkError(f"Token request failed: {exc}") from exc

            if status == 429 or status >= 500:
                raise TransientNetworkError(
                    f"Token request failed: HTTP {status}", status=status
                )
            if status != 200 or "access_token" not in payload:
                raise AuthenticationError(
                    f"Token request for tenant {tenant} failed: HTTP {status}, "
                    f"{payload.get('error', 'no access_token in response')}"
                )
            return payload

        payload = await _request_token()
        self._access_token = str(payload["access_token"])
        self._token_expires_at = time.time() + float(payload.get("expires_in", 3600))

    async def get_active_token(self) -> str:
        """Return a valid bearer token, acquiring or refreshing it first."""
        await self.ensure_valid_token()
        if not self._access_token:
            raise AuthenticationError("Unable to acquire an ARM token.")
        return self._access_token

    # ------------------------------
    # Request plumbing
    # ------------------------------
    def _resource_group_path(self, name: str) -> str:
        return f"/subscriptions/{quote(self.subscription_id)}/resourcegroups/{quote(name)}"

    def _deployment_path(self, resource_group: str, deployment_name: str) -> str:
        return (
            f"{self._resource_group_path(resource_group)}"
            f"/providers/Microsoft.Resources/deployments/{quote(deployment_name)}"
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[Dict[str, Any]] = None,
        expected: Tuple[int, ...] = (200,),
    ) -> Tuple[int, Dict[str, Any]]:
        """Send an authenticated ARM request, retrying transient failures.

        Returns:
            (status, decoded body) for any status in `expected`.

        Raises:
            DeployerError: The mapped error for any other status.
        """
        action = f"{method} {path}"

        @async_retry(
            retries=self._settings.api_retries,
            delay=self._settings.api_retry_delay,
            linear_backoff=True,
            retry_on=(TransientNetworkError,),
            noisy=True,
        )
        async def _send() -> Tuple[int, Dict[str, Any]]:
            token = await self.get_active_token()
            session = await self.ensure_session()
            url = f"{self._environment.resource_manager_endpoint}{path}"
            headers = {"Authorization": f"Bearer {token}"}
            params = {"api-version": self._environment.resource_api_version}
            try:
                async with session.request(
                    method, url, json=body, headers=headers, params=params
                ) as resp:
                    payload = await _read_json(resp)
                    status = resp.status
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise TransientNetworkError(f"{action} failed: {exc}") from exc

            if status in expected:
                return status, payload
            if status == 401:
                self._access_token = None
            raise error_for_status(status, payload, action)

        return await _send()

    # ------------------------------
    # Resource groups
    # ------------------------------
    async def get_resource_group(self, name: str) -> Optional[ResourceGroup]:
        """Fetch a resource group, or None if it does not exist."""
        status, payload = await self._request(
            "GET", self._resource_group_path(name), expected=(200, 404)
        )
        if status == 404:
            return None
        return ResourceGroup.from_arm(payload)

    async def ensure_resource_group(
        self,
        name: str,
        location: str,
        tags: Optional[Dict[str, str]] = None,
        managed_by: Optional[str] = None,
    ) -> ResourceGroup:
        """Create or update a resource group without clobbering its tags.

        The resulting tags are the requested ones overlaid by any tags the
        group already carries, so repeating the call converges.
        """
        existing = await self.get_resource_group(name)
        merged_tags = {**(tags or {}), **(existing.tags if existing else {})}

        body: Dict[str, Any] = {"location": location, "tags": merged_tags}
        if managed_by:
            body["managedBy"] = managed_by

        logger.info("Creating resource group: %s.", name)
        _, payload = await self._request(
            "PUT", self._resource_group_path(name), body=body, expected=(200, 201)
        )
        return ResourceGroup.from_arm(payload)

    async def delete_resource_group(self, name: str) -> None:
        """Request deletion of a resource group; does not wait for completion."""
        status, _ = await self._request(
            "DELETE", self._resource_group_path(name), expected=(200, 202, 204, 404)
        )
        if status == 404:
            logger.info("Resource group %s does not exist; nothing to delete.", name)
        else:
            logger.info("Deletion of resource group %s accepted.", name)

    # ------------------------------
    # Deployments
    # ------------------------------
    @staticmethod
    def _deployment_body(
        template: DeploymentTemplate, parameters: DeploymentParameters
    ) -> Dict[str, Any]:
        return {
            "properties": {
                "template": template,
                "parameters": parameters,
                "mode": "Incremental",
            }
        }

    async def validate_deployment(
        self,
        resource_group: str,
        deployment_name: str,
        template: DeploymentTemplate,
        parameters: DeploymentParameters,
    ) -> ValidationResult:
        """Dry-run a deployment.

        Raises:
            TemplateInvalidError: If ARM rejects the template, with its diagnostics.
        """
        status, payload = await self._request(
            "POST",
            f"{self._deployment_path(resource_group, deployment_name)}/validate",
            body=self._deployment_body(template, parameters),
            expected=(200, 400),
        )
        if status == 400 or payload.get("error"):
            raise TemplateInvalidError(
                f"Template invalid: {_error_message(payload)}",
                status=status,
                body=payload,
            )
        return ValidationResult.from_arm(payload)

    async def get_deployment(
        self, resource_group: str, deployment_name: str
    ) -> Optional[DeploymentResult]:
        """Fetch a deployment, or None if it does not exist."""
        status, payload = await self._request(
            "GET",
            self._deployment_path(resource_group, deployment_name),
            expected=(200, 404),
        )
        if status == 404:
            return None
        return DeploymentResult.from_arm(payload)

    async def list_failed_operations(
        self, resource_group: str, deployment_name: str
    ) -> List[str]:
        """Status messages of the failed operations of a deployment."""
        _, payload = await self._request(
            "GET",
            f"{self._deployment_path(resource_group, deployment_name)}/operations",
        )
        messages: List[str] = []
        for operation in payload.get("value", []):
            properties = operation.get("properties") or {}
            if ProvisioningState.parse(properties.get("provisioningState")) != (
                ProvisioningState.failed
            ):
                continue
            status_message = properties.get("statusMessage")
            messages.append(
                status_message
                if isinstance(status_message, str)
                else json.dumps(status_message)
            )
        return messages

    async def deploy_template(
        self,
        resource_group: str,
        deployment_name: str,
        template: DeploymentTemplate,
        parameters: DeploymentParameters,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> DeploymentResult:
        """Submit an incremental deployment and wait for a terminal state.

        Args:
            resource_group: Target resource group.
            deployment_name: Deployment name.
            template: ARM template document.
            parameters: Unwrapped parameters document.
            cancel: Setting this event aborts the wait within one poll interval.
            timeout: Seconds to wait; the configured deployment timeout if None.

        Returns:
            DeploymentResult: The succeeded deployment.

        Raises:
            DeploymentFailedError: If the deployment failed or was canceled remotely.
            CancellationError: If `cancel` was set during the wait.
            DeploymentTimeoutError: If no terminal state was reached in time.
        """
        if cancel is not None and cancel.is_set():
            raise CancellationError(
                f"Deployment {deployment_name} cancelled before submission."
            )

        logger.info(
            "Starting ARM Deployment (%s). This will take some time...", deployment_name
        )
        await self._request(
            "PUT",
            self._deployment_path(resource_group, deployment_name),
            body=self._deployment_body(template, parameters),
            expected=(200, 201),
        )
        result = await self._wait_for_deployment(
            resource_group,
            deployment_name,
            cancel,
            self._settings.timeout if timeout is None else timeout,
        )
        logger.info("Finished ARM Deployment (%s).", deployment_name)
        return result

    async def _wait_for_deployment(
        self,
        resource_group: str,
        deployment_name: str,
        cancel: Optional[asyncio.Event],
        timeout: float,
    ) -> DeploymentResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            if cancel is not None and cancel.is_set():
                raise CancellationError(f"Wait for deployment {deployment_name} cancelled.")

            deployment = await _unless_cancelled(
                self.get_deployment(resource_group, deployment_name),
                cancel,
                f"Wait for deployment {deployment_name} cancelled.",
            )
            if deployment is None:
                raise ControlPlaneError(
                    f"Deployment {deployment_name} not found after submission.",
                    status=404,
                )

            state = deployment.provisioning_state
            if state == ProvisioningState.succeeded:
                return deployment
            if state.is_terminal:
                await self._raise_deployment_failed(resource_group, deployment)

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise DeploymentTimeoutError(
                    f"Deployment {deployment_name} still {state.value} after {timeout}s."
                )
            logger.debug("Deployment %s is %s.", deployment_name, state.value)
            if await _cancel_requested(
                cancel, min(self._settings.poll_interval, remaining)
            ):
                raise CancellationError(f"Wait for deployment {deployment_name} cancelled.")

    async def _raise_deployment_failed(
        self, resource_group: str, deployment: DeploymentResult
    ) -> NoReturn:
        try:
            operations = await self.list_failed_operations(resource_group, deployment.name)
        except DeployerError as exc:
            logger.warning(
                "Could not list operations of deployment %s: %s", deployment.name, exc
            )
            operations = []
        detail = deployment.error or {}
        raise DeploymentFailedError(
            f"Deployment {deployment.name} {deployment.provisioning_state.value}: "
            f"{_error_message({'error': detail}) if detail else 'no error details'}"
            + (f"; failed operations: {operations}" if operations else ""),
            body={"error": detail, "failedOperations": operations},
        )


__all__ = ["AsyncArmClient", "error_for_status"]
