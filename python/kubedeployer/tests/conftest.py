"""Shared fixtures: credentials, a cluster spec and an in-process fake of the
ARM and identity-platform endpoints served by aiohttp's TestServer."""

from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from kubedeployer.models.cluster_spec import ClusterSpec
from kubedeployer.models.credentials import AzureCredentials
from kubedeployer.models.deployer_config import AzureEnvironment, DeploymentSettings
from kubedeployer.services.arm_client import AsyncArmClient

SUBSCRIPTION = "00000000-0000-0000-0000-000000000001"
TENANT = "tenant-123"
TOKEN = "fake-token"

_RG = "/subscriptions/{sub}/resourcegroups/{rg}"
_DEPLOYMENT = _RG + "/providers/Microsoft.Resources/deployments/{name}"


class FakeArm:
    """Just enough ARM to exercise the client: groups, deployments, tokens."""

    def __init__(self) -> None:
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.deployments: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.token_requests: List[str] = []
        self.reject_token = False
        self.validate_error: Optional[Dict[str, Any]] = None
        self.deployment_states: List[str] = ["Succeeded"]
        self.deployment_error: Optional[Dict[str, Any]] = None
        self.failed_operations: List[Dict[str, Any]] = []
        # statuses returned (and consumed) before normal handling of ARM calls
        self.injected_statuses: List[int] = []

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/{tenant}/oauth2/v2.0/token", self.token)
        app.router.add_get("/subscriptions/{sub}", self.discover_tenant)
        app.router.add_route("*", _RG, self.resource_group)
        app.router.add_post(_DEPLOYMENT + "/validate", self.validate)
        app.router.add_get(_DEPLOYMENT + "/operations", self.operations)
        app.router.add_route("*", _DEPLOYMENT, self.deployment)
        return app

    async def token(self, request: web.Request) -> web.Response:
        form = await request.post()
        self.token_requests.append(request.match_info["tenant"])
        if self.reject_token or form.get("grant_type") != "client_credentials":
            return web.json_response({"error": "invalid_client"}, status=400)
        return web.json_response(
            {"access_token": TOKEN, "expires_in": 3600, "token_type": "Bearer"}
        )

    async def discover_tenant(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"error": {"code": "AuthenticationFailed"}},
            status=401,
            headers={
                "WWW-Authenticate": (
                    f'Bearer authorization_uri="https://login.example/{TENANT}", '
                    'error="invalid_token"'
                )
            },
        )

    def _precheck(self, request: web.Request) -> Optional[web.Response]:
        self.calls.append((request.method, request.path))
        if request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return web.json_response({"error": {"code": "Unauthorized"}}, status=401)
        if self.injected_statuses:
            status = self.injected_statuses.pop(0)
            return web.json_response(
                {"error": {"code": "Injected", "message": f"status {status}"}},
                status=status,
            )
        return None

    async def resource_group(self, request: web.Request) -> web.Response:
        failure = self._precheck(request)
        if failure is not None:
            return failure
        name = request.match_info["rg"]
        if request.method == "GET":
            group = self.groups.get(name)
            if group is None:
                return web.json_response(
                    {"error": {"code": "ResourceGroupNotFound"}}, status=404
                )
            return web.json_response(group)
        if request.method == "PUT":
            body = await request.json()
            created = name not in self.groups
            self.groups[name] = {
                "id": f"/subscriptions/{SUBSCRIPTION}/resourceGroups/{name}",
                "name": name,
                "location": body["location"],
                "tags": body.get("tags", {}),
                "properties": {"provisioningState": "Succeeded"},
            }
            return web.json_response(self.groups[name], status=201 if created else 200)
        if request.method == "DELETE":
            if self.groups.pop(name, None) is None:
                return web.json_response({}, status=404)
            return web.Response(status=202)
        return web.Response(status=405)

    async def validate(self, request: web.Request) -> web.Response:
        failure = self._precheck(request)
        if failure is not None:
            return failure
        if self.validate_error is not None:
            return web.json_response({"error": self.validate_error}, status=400)
        return web.json_response(
            {
                "properties": {
                    "provisioningState": "Succeeded",
                    "validatedResources": [],
                }
            }
        )

    async def deployment(self, request: web.Request) -> web.Response:
        failure = self._precheck(request)
        if failure is not None:
            return failure
        key = (request.match_info["rg"], request.match_info["name"])
        if request.method == "PUT":
            body = await request.json()
            self.deployments[key] = {
                "body": body,
                "states": list(self.deployment_states),
            }
            return web.json_response(self._deployment_doc(key[1], "Accepted"), status=201)
        if request.method == "GET":
            record = self.deployments.get(key)
            if record is None:
                return web.json_response({"error": {"code": "DeploymentNotFound"}}, status=404)
            states = record["states"]
            state = states.pop(0) if len(states) > 1 else states[0]
            return web.json_response(self._deployment_doc(key[1], state))
        return web.Response(status=405)

    def _deployment_doc(self, name: str, state: str) -> Dict[str, Any]:
        properties: Dict[str, Any] = {
            "provisioningState": state,
            "timestamp": "2024-05-01T10:00:00.1234567Z",
            "outputs": {},
        }
        if state == "Failed" and self.deployment_error is not None:
            properties["error"] = self.deployment_error
        return {"id": f"deployments/{name}", "name": name, "properties": properties}

    async def operations(self, request: web.Request) -> web.Response:
        failure = self._precheck(request)
        if failure is not None:
            return failure
        return web.json_response({"value": self.failed_operations})


@pytest.fixture
def credentials() -> AzureCredentials:
    return AzureCredentials(
        client_id="client-id",
        client_secret="s3cr3t",
        subscription_id=SUBSCRIPTION,
    )


@pytest.fixture
def cluster_spec() -> ClusterSpec:
    return ClusterSpec(
        name="kt-1",
        resource_group="kt-1-rg",
        location="westus2",
        agent_count=2,
        admin_username="azureuser",
        ssh_public_key="ssh-rsa AAAAB3NzaC1yc2E test@example",
    )


@pytest.fixture
def fake_arm() -> FakeArm:
    return FakeArm()


@pytest_asyncio.fixture
async def arm_server(fake_arm: FakeArm) -> AsyncIterator[TestServer]:
    server = TestServer(fake_arm.app())
    await server.start_server()
    yield server
    await server.close()


def make_arm_client(
    server: TestServer, credentials: AzureCredentials, **settings: Any
) -> AsyncArmClient:
    base = f"http://{server.host}:{server.port}"
    environment = AzureEnvironment(
        name="FakeCloud", resource_manager_endpoint=base, authority_host=base
    )
    options: Dict[str, Any] = {
        "poll_interval": 0.05,
        "timeout": 5.0,
        "api_retries": 2,
        "api_retry_delay": 0.0,
    }
    options.update(settings)
    return AsyncArmClient(credentials, environment, DeploymentSettings(**options))


@pytest_asyncio.fixture
async def arm_client(
    arm_server: TestServer, credentials: AzureCredentials
) -> AsyncIterator[AsyncArmClient]:
    client = make_arm_client(arm_server, credentials)
    yield client
    await client.close()


@pytest_asyncio.fixture
async def arm_client_factory(
    arm_server: TestServer, credentials: AzureCredentials
) -> AsyncIterator[Callable[..., AsyncArmClient]]:
    clients: List[AsyncArmClient] = []

    def factory(**settings: Any) -> AsyncArmClient:
        client = make_arm_client(arm_server, credentials, **settings)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.close()
