"""
filename: kubedeployer/models/credentials.py

Provides the AzureCredentials pydantic model. Field aliases follow the key
names used in kubetest-style credential files (ClientID, TenantID, ...).
"""

from typing import Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class AzureCredentials(BaseModel):
    """Service principal and subscription for an Azure deployer.

    `tenant_id` may be left out; the ARM client then discovers it from the
    subscription. Secret fields are kept out of `repr`.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    client_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("client_id", "ClientID", "ClientId"),
        description="Azure application (client) ID",
    )
    client_secret: str = Field(
        ...,
        min_length=1,
        repr=False,
        validation_alias=AliasChoices("client_secret", "ClientSecret"),
        description="Azure client secret",
    )
    tenant_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("tenant_id", "TenantID", "TennantID"),
        description="Azure AD tenant ID",
    )
    subscription_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices(
            "subscription_id", "SubscriptionID", "SubscriptionId"
        ),
        description="Azure subscription ID",
    )
    storage_account_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("storage_account_name", "StorageAccountName"),
    )
    storage_account_key: Optional[str] = Field(
        default=None,
        repr=False,
        validation_alias=AliasChoices("storage_account_key", "StorageAccountKey"),
    )


__all__ = ["AzureCredentials"]
