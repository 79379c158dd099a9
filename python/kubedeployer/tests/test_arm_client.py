"""Tests for AsyncArmClient against the in-process fake ARM endpoint."""

import asyncio

import pytest

from kubedeployer.errors import (
    AuthenticationError,
    CancellationError,
    ConflictError,
    ControlPlaneError,
    DeploymentFailedError,
    DeploymentTimeoutError,
    TemplateInvalidError,
    TransientNetworkError,
)
from kubedeployer.models.arm import ProvisioningState
from kubedeployer.models.credentials import AzureCredentials
from kubedeployer.services.arm_client import error_for_status

from conftest import SUBSCRIPTION, TENANT, make_arm_client

TEMPLATE = {"$schema": "x", "resources": []}
PARAMETERS = {"location": {"value": "westus2"}}


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_discovers_tenant_when_not_configured(self, arm_client, fake_arm):
        await arm_client.authenticate()
        assert fake_arm.token_requests == [TENANT]
        assert await arm_client.get_active_token() == "fake-token"
        # the cached token is reused
        assert fake_arm.token_requests == [TENANT]

    @pytest.mark.asyncio
    async def test_configured_tenant_skips_discovery(self, arm_server, fake_arm):
        creds = AzureCredentials(
            client_id="c", client_secret="s", tenant_id="my-tenant", subscription_id=SUBSCRIPTION
        )
        client = make_arm_client(arm_server, creds)
        try:
            await client.authenticate()
        finally:
            await client.close()
        assert fake_arm.token_requests == ["my-tenant"]

    @pytest.mark.asyncio
    async def test_rejected_grant_is_authentication_error(self, arm_client, fake_arm):
        fake_arm.reject_token = True
        with pytest.raises(AuthenticationError) as exc_info:
            await arm_client.authenticate()
        assert "s3cr3t" not in str(exc_info.value)


class TestResourceGroups:
    @pytest.mark.asyncio
    async def test_ensure_twice_converges_with_existing_tags_winning(
        self, arm_client, fake_arm
    ):
        await arm_client.ensure_resource_group(
            "kt-1-rg", "westus2", {"owner": "first", "a": "1"}
        )
        group = await arm_client.ensure_resource_group(
            "kt-1-rg", "westus2", {"owner": "second", "b": "2"}
        )

        assert list(fake_arm.groups) == ["kt-1-rg"]
        assert group.tags == {"owner": "first", "a": "1", "b": "2"}
        assert fake_arm.groups["kt-1-rg"]["tags"] == group.tags
        assert group.provisioning_state == ProvisioningState.succeeded

    @pytest.mark.asyncio
    async def test_get_missing_group_returns_none(self, arm_client):
        assert await arm_client.get_resource_group("nope") is None

    @pytest.mark.asyncio
    async def test_delete_existing_and_missing_group(self, arm_client, fake_arm):
        await arm_client.ensure_resource_group("kt-1-rg", "westus2")
        await arm_client.delete_resource_group("kt-1-rg")
        assert fake_arm.groups == {}
        # already gone: accepted silently
        await arm_client.delete_resource_group("kt-1-rg")

    @pytest.mark.asyncio
    async def test_transient_status_is_retried(self, arm_client, fake_arm):
        fake_arm.injected_statuses = [503]
        assert await arm_client.get_resource_group("kt-1-rg") is None
        gets = [call for call in fake_arm.calls if call[0] == "GET"]
        assert len(gets) == 2

    @pytest.mark.asyncio
    async def test_conflict_is_not_retried(self, arm_client, fake_arm):
        fake_arm.injected_statuses = [409]
        with pytest.raises(ConflictError):
            await arm_client.ensure_resource_group("kt-1-rg", "westus2")
        assert len(fake_arm.calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_transient_error(self, arm_client, fake_arm):
        fake_arm.injected_statuses = [500, 502]
        with pytest.raises(TransientNetworkError):
            await arm_client.get_resource_group("kt-1-rg")


class TestDeployments:
    @pytest.mark.asyncio
    async def test_validation_failure_carries_provider_body(self, arm_client, fake_arm):
        fake_arm.validate_error = {
            "code": "InvalidTemplate",
            "message": "Deployment template validation failed",
        }
        with pytest.raises(TemplateInvalidError) as exc_info:
            await arm_client.validate_deployment("kt-1-rg", "kt-1", TEMPLATE, PARAMETERS)
        assert exc_info.value.status == 400
        assert exc_info.value.body["error"]["code"] == "InvalidTemplate"

    @pytest.mark.asyncio
    async def test_successful_validation(self, arm_client):
        result = await arm_client.validate_deployment("kt-1-rg", "kt-1", TEMPLATE, PARAMETERS)
        assert result.provisioning_state == ProvisioningState.succeeded

    @pytest.mark.asyncio
    async def test_deploy_waits_for_terminal_state(self, arm_client, fake_arm):
        fake_arm.deployment_states = ["Accepted", "Running", "Succeeded"]
        result = await arm_client.deploy_template("kt-1-rg", "kt-1", TEMPLATE, PARAMETERS)

        assert result.provisioning_state == ProvisioningState.succeeded
        assert result.timestamp is not None and result.timestamp.year == 2024
        body = fake_arm.deployments[("kt-1-rg", "kt-1")]["body"]
        assert body["properties"]["mode"] == "Incremental"
        assert body["properties"]["parameters"] == PARAMETERS
        gets = [c for c in fake_arm.calls if c[0] == "GET" and c[1].endswith("/kt-1")]
        assert len(gets) == 3

    @pytest.mark.asyncio
    async def test_failed_deployment_reports_operations(self, arm_client, fake_arm):
        fake_arm.deployment_states = ["Running", "Failed"]
        fake_arm.deployment_error = {"code": "QuotaExceeded", "message": "cores"}
        fake_arm.failed_operations = [
            {"properties": {"provisioningState": "Failed", "statusMessage": "vm quota"}},
            {"properties": {"provisioningState": "Succeeded", "statusMessage": "ok"}},
        ]
        with pytest.raises(DeploymentFailedError) as exc_info:
            await arm_client.deploy_template("kt-1-rg", "kt-1", TEMPLATE, PARAMETERS)
        assert exc_info.value.body["failedOperations"] == ["vm quota"]
        assert "QuotaExceeded" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_wait_times_out(self, arm_client, fake_arm):
        fake_arm.deployment_states = ["Running"]
        with pytest.raises(DeploymentTimeoutError):
            await arm_client.deploy_template(
                "kt-1-rg", "kt-1", TEMPLATE, PARAMETERS, timeout=0.2
            )

    @pytest.mark.asyncio
    async def test_cancel_interrupts_wait_within_poll_interval(
        self, arm_client_factory, fake_arm
    ):
        client = arm_client_factory(poll_interval=2.0, timeout=60.0)
        fake_arm.deployment_states = ["Running"]
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()

        loop.call_later(0.1, cancel.set)
        started = loop.time()
        with pytest.raises(CancellationError):
            await client.deploy_template(
                "kt-1-rg", "kt-1", TEMPLATE, PARAMETERS, cancel=cancel
            )
        assert loop.time() - started < 2.0

    @pytest.mark.asyncio
    async def test_cancel_interrupts_status_poll_backing_off(
        self, arm_client_factory, fake_arm
    ):
        client = arm_client_factory(
            poll_interval=1.0, timeout=60.0, api_retries=3, api_retry_delay=2.0
        )
        fake_arm.deployment_states = ["Running"]
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()

        # the second status poll (at ~1.0s) hits 503s and backs off for 2s
        loop.call_later(0.5, fake_arm.injected_statuses.extend, [503, 503])
        loop.call_later(1.2, cancel.set)
        started = loop.time()
        with pytest.raises(CancellationError):
            await client.deploy_template(
                "kt-1-rg", "kt-1", TEMPLATE, PARAMETERS, cancel=cancel
            )
        elapsed = loop.time() - started

        assert elapsed - 1.2 < 1.0
        assert fake_arm.injected_statuses == [503]

    @pytest.mark.asyncio
    async def test_preset_cancel_skips_submission(self, arm_client, fake_arm):
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(CancellationError):
            await arm_client.deploy_template(
                "kt-1-rg", "kt-1", TEMPLATE, PARAMETERS, cancel=cancel
            )
        assert fake_arm.deployments == {}

    @pytest.mark.asyncio
    async def test_get_missing_deployment_returns_none(self, arm_client):
        assert await arm_client.get_deployment("kt-1-rg", "missing") is None


@pytest.mark.parametrize(
    "status, expected",
    [
        (401, AuthenticationError),
        (403, AuthenticationError),
        (409, ConflictError),
        (429, TransientNetworkError),
        (503, TransientNetworkError),
        (404, ControlPlaneError),
    ],
)
def test_error_for_status(status, expected):
    error = error_for_status(status, {"error": {"code": "X", "message": "m"}}, "GET /x")
    assert type(error) is expected
    assert f"HTTP {status}" in str(error)
