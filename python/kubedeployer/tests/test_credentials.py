"""Tests for credential-file parsing and SSH key loading."""

import json

import pytest

from kubedeployer.errors import ConfigurationError, CredentialError
from kubedeployer.secrets.credentials import (
    load_credentials,
    parse_credentials,
    read_ssh_public_key,
)

KUBETEST_TOML = """
[Creds]
ClientID = "client-id"
ClientSecret = "very-secret"
TenantID = "tenant-id"
SubscriptionID = "sub-id"
StorageAccountName = "logs"
StorageAccountKey = "storage-secret"
"""


class TestParseCredentials:
    def test_kubetest_toml_layout(self):
        creds = parse_credentials(KUBETEST_TOML, "azure.toml")
        assert creds.client_id == "client-id"
        assert creds.tenant_id == "tenant-id"
        assert creds.subscription_id == "sub-id"
        assert creds.storage_account_name == "logs"
        assert "very-secret" not in repr(creds)
        assert "storage-secret" not in repr(creds)

    def test_flat_json(self):
        creds = parse_credentials(
            json.dumps(
                {
                    "client_id": "c",
                    "client_secret": "s",
                    "subscription_id": "sub",
                }
            ),
            "azure.json",
        )
        assert creds.tenant_id is None

    def test_unknown_extension_falls_back_to_toml(self):
        creds = parse_credentials(KUBETEST_TOML, "credentials")
        assert creds.client_id == "client-id"

    def test_legacy_tenant_spelling(self):
        creds = parse_credentials(
            '{"Creds": {"ClientID": "c", "ClientSecret": "s", '
            '"TennantID": "t", "SubscriptionID": "sub"}}',
            "azure.json",
        )
        assert creds.tenant_id == "t"

    def test_malformed_content(self):
        with pytest.raises(CredentialError):
            parse_credentials("{not json", "azure.json")

    def test_missing_field_does_not_leak_secret(self):
        with pytest.raises(CredentialError) as exc_info:
            parse_credentials(
                '[Creds]\nClientSecret = "very-secret"\nSubscriptionID = "sub"\n',
                "azure.toml",
            )
        assert "client_id" in str(exc_info.value)
        assert "very-secret" not in str(exc_info.value)
        assert exc_info.value.__cause__ is None


class TestLoadFromDisk:
    @pytest.mark.asyncio
    async def test_load_credentials(self, tmp_path):
        path = tmp_path / "azure.toml"
        path.write_text(KUBETEST_TOML)
        creds = await load_credentials(str(path))
        assert creds.client_secret == "very-secret"

    @pytest.mark.asyncio
    async def test_missing_credentials_file(self, tmp_path):
        with pytest.raises(CredentialError):
            await load_credentials(str(tmp_path / "nope.toml"))

    @pytest.mark.asyncio
    async def test_read_ssh_public_key(self, tmp_path):
        path = tmp_path / "id_rsa.pub"
        path.write_text("ssh-rsa AAAA user@host\n")
        assert await read_ssh_public_key(str(path)) == "ssh-rsa AAAA user@host"

    @pytest.mark.asyncio
    async def test_empty_or_missing_ssh_key(self, tmp_path):
        empty = tmp_path / "empty.pub"
        empty.write_text("\n")
        with pytest.raises(ConfigurationError):
            await read_ssh_public_key(str(empty))
        with pytest.raises(ConfigurationError):
            await read_ssh_public_key(str(tmp_path / "missing.pub"))
