"""
kubedeployer/secrets/credentials.py

Loads Azure credentials from a local TOML or JSON file. Both flat files and
the kubetest layout, where the values sit under a `Creds` table, are accepted:

    [Creds]
    ClientID = "..."
    ClientSecret = "..."
    TenantID = "..."
    SubscriptionID = "..."

Also reads the SSH public key installed on the cluster VMs.
"""

from __future__ import annotations

import json
import os
import tomllib
from typing import Any, Dict

import aiofiles
from pydantic import ValidationError

from kubedeployer.errors import ConfigurationError, CredentialError
from kubedeployer.models.credentials import AzureCredentials


def _parse_json(content: str) -> Any:
    return json.loads(content)


def _parse_toml(content: str) -> Any:
    return tomllib.loads(content)


def parse_credentials(content: str, source: str) -> AzureCredentials:
    """Parse credential file content; the format follows the file extension.

    Files that are neither `.toml` nor `.json` are tried as JSON, then TOML.

    Args:
        content: Raw file content.
        source: The file path, used for format detection and in errors.

    Raises:
        CredentialError: If the content does not parse or validate. The
            message never includes secret values.
    """
    extension = os.path.splitext(source)[1].lower()
    parsers = {
        ".json": [_parse_json],
        ".toml": [_parse_toml],
    }.get(extension, [_parse_json, _parse_toml])

    raw: Any = None
    errors = []
    for parser in parsers:
        try:
            raw = parser(content)
            break
        except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
            errors.append(f"{parser.__name__.lstrip('_')}: {exc}")
    else:
        raise CredentialError(
            f"Error parsing credentials file {source}: {'; '.join(errors)}"
        )

    if not isinstance(raw, dict):
        raise CredentialError(f"Credentials file {source} must contain a mapping.")
    data: Dict[str, Any] = raw.get("Creds", raw)
    if not isinstance(data, dict):
        raise CredentialError(f"'Creds' in {source} must be a table/object.")

    try:
        return AzureCredentials.model_validate(data)
    except ValidationError as exc:
        missing = ", ".join(
            ".".join(str(part) for part in err["loc"]) for err in exc.errors()
        )
        raise CredentialError(
            f"Credentials file {source} is missing or has invalid fields: {missing}"
        ) from None


async def load_credentials(path: str) -> AzureCredentials:
    """Read and parse the credential file at `path`.

    Raises:
        CredentialError: If the file cannot be read or parsed.
    """
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
    except OSError as exc:
        raise CredentialError(f"Error reading credentials file {path}: {exc}") from exc
    return parse_credentials(content, path)


async def read_ssh_public_key(path: str) -> str:
    """Return the stripped content of an SSH public key file.

    Raises:
        ConfigurationError: If the file is missing, unreadable or empty.
    """
    try:
        async with aiofiles.open(os.path.expanduser(path), "r", encoding="utf-8") as f:
            key = (await f.read()).strip()
    except OSError as exc:
        raise ConfigurationError(f"Error reading SSH key {path}: {exc}") from exc
    if not key:
        raise ConfigurationError(f"SSH key file {path} is empty.")
    return key


__all__ = ["load_credentials", "parse_credentials", "read_ssh_public_key"]
