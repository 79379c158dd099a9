"""
kubedeployer/deployment/templates.py

Template builders: turn a ClusterSpec into an ARM deployment template and its
parameters, either by running an external generator executable (acs-engine
style `generate` command) or by calling an in-process generator library.

Both strategies write their inputs and outputs to the working directory and
read the documents back through one loader, so a document that is not a JSON
object fails here, before anything is sent to the control plane.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional, Protocol, Tuple

import aiofiles
from pydantic import BaseModel, Field, ValidationError

from kubedeployer.errors import GenerationError, ParseError
from kubedeployer.models.api_model import (
    ApiModel,
    api_model_from_spec,
    apply_spec_overrides,
)
from kubedeployer.models.arm import DeploymentParameters, DeploymentTemplate
from kubedeployer.models.cluster_spec import ClusterSpec
from kubedeployer.models.credentials import AzureCredentials
from kubedeployer.models.validator import require_json_object
from kubedeployer.utils.async_command_runner import CommandError, run_command
from kubedeployer.utils.kubectl import KUBECONFIG_DIR

logger = logging.getLogger(__name__)

API_MODEL_FILE = "kubernetes.json"
TEMPLATE_FILE = "azuredeploy.json"
PARAMETERS_FILE = "azuredeploy.parameters.json"


class GeneratedArtifacts(BaseModel):
    """What an in-process generator hands back.

    Attributes:
        template: The ARM template.
        parameters: The parameters document, with or without the top-level
            `parameters` wrapper.
        certificates: TLS material keyed by file name.
        kubeconfigs: kubeconfig content keyed by location.
    """

    template: Dict[str, Any]
    parameters: Dict[str, Any]
    certificates: Dict[str, str] = Field(default_factory=dict)
    kubeconfigs: Dict[str, str] = Field(default_factory=dict)


class TemplateGenerator(Protocol):
    """An in-process template-generation library."""

    def generate(self, api_model: Dict[str, Any]) -> GeneratedArtifacts: ...


async def _write_text(path: str, content: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(content)


async def _write_json(path: str, document: Any) -> None:
    try:
        content = json.dumps(document, indent=2)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"Cannot serialise {os.path.basename(path)}: {exc}") from exc
    await _write_text(path, content)


async def _read_json_file(path: str, what: str) -> Dict[str, Any]:
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
    except OSError as exc:
        raise ParseError(f"Error reading {what} file: {exc}") from exc
    try:
        decoded = json.loads(content)
    except ValueError as exc:
        raise ParseError(f"Error unmarshalling {what}: {exc}") from exc
    return require_json_object(decoded, what)


class _BaseTemplateBuilder:
    """Shared API-model composition and document loading."""

    requires_tool = False

    def __init__(
        self,
        workdir: str,
        credentials: AzureCredentials,
        api_model_path: Optional[str] = None,
    ) -> None:
        self.workdir = workdir
        self._credentials = credentials
        self._api_model_path = api_model_path

    async def compose_api_model(self, spec: ClusterSpec) -> ApiModel:
        """The API model for `spec`, starting from a user file when configured."""
        if self._api_model_path:
            logger.info("Loading API model from %s.", self._api_model_path)
            document = await _read_json_file(self._api_model_path, "API model")
            try:
                base = ApiModel.from_document(document)
            except ValidationError as exc:
                raise ParseError(f"Invalid API model {self._api_model_path}: {exc}") from exc
        else:
            base = api_model_from_spec(spec, self._credentials)
        return apply_spec_overrides(base, spec, self._credentials)

    async def load_documents(self) -> Tuple[DeploymentTemplate, DeploymentParameters]:
        """Read the template and unwrap the parameters file's `parameters` object."""
        template = await _read_json_file(
            os.path.join(self.workdir, TEMPLATE_FILE), "ARM template"
        )
        parameters_file = await _read_json_file(
            os.path.join(self.workdir, PARAMETERS_FILE), "ARM parameters"
        )
        if "parameters" not in parameters_file:
            raise ParseError("ARM parameters file has no top-level 'parameters' object.")
        parameters = require_json_object(parameters_file["parameters"], "ARM parameters")
        return template, parameters


class ToolTemplateBuilder(_BaseTemplateBuilder):
    """Generates templates with an external executable.

    Runs `<tool> generate <workdir>/kubernetes.json --output-directory <workdir>`.
    """

    requires_tool = True

    def __init__(
        self,
        workdir: str,
        credentials: AzureCredentials,
        api_model_path: Optional[str] = None,
        command_timeout: float = 600.0,
    ) -> None:
        super().__init__(workdir, credentials, api_model_path)
        self._command_timeout = command_timeout

    async def build(
        self, spec: ClusterSpec, tool_path: Optional[str] = None
    ) -> Tuple[DeploymentTemplate, DeploymentParameters]:
        if not tool_path:
            raise GenerationError("No template generator executable available.")

        model = await self.compose_api_model(spec)
        api_model_path = os.path.join(self.workdir, API_MODEL_FILE)
        await _write_json(api_model_path, model.to_document())

        logger.info("Generating ARM templates with %s.", tool_path)
        try:
            await run_command(
                [tool_path, "generate", api_model_path, "--output-directory", self.workdir],
                timeout=self._command_timeout,
            )
        except CommandError as exc:
            raise GenerationError(f"Failed to generate ARM templates: {exc}") from exc
        return await self.load_documents()


class LibraryTemplateBuilder(_BaseTemplateBuilder):
    """Generates templates by calling an in-process TemplateGenerator.

    The generated template, parameters, certificates and kubeconfigs are
    persisted to the working directory the same way the tool would leave them.
    """

    def __init__(
        self,
        workdir: str,
        credentials: AzureCredentials,
        generator: TemplateGenerator,
        api_model_path: Optional[str] = None,
    ) -> None:
        super().__init__(workdir, credentials, api_model_path)
        self._generator = generator

    async def build(
        self, spec: ClusterSpec, tool_path: Optional[str] = None
    ) -> Tuple[DeploymentTemplate, DeploymentParameters]:
        model = await self.compose_api_model(spec)
        document = model.to_document()
        await _write_json(os.path.join(self.workdir, API_MODEL_FILE), document)

        try:
            artifacts = await asyncio.to_thread(self._generator.generate, document)
        except Exception as exc:
            raise GenerationError(f"Template generator failed: {exc}") from exc

        await self._persist(artifacts)
        return await self.load_documents()

    async def _persist(self, artifacts: GeneratedArtifacts) -> None:
        parameters = (
            artifacts.parameters
            if "parameters" in artifacts.parameters
            else {"parameters": artifacts.parameters}
        )
        await _write_json(os.path.join(self.workdir, TEMPLATE_FILE), artifacts.template)
        await _write_json(os.path.join(self.workdir, PARAMETERS_FILE), parameters)

        for file_name, pem in artifacts.certificates.items():
            await _write_text(
                os.path.join(self.workdir, os.path.basename(file_name)), pem
            )
        for location, kubeconfig in artifacts.kubeconfigs.items():
            await _write_text(
                os.path.join(
                    self.workdir,
                    KUBECONFIG_DIR,
                    f"kubeconfig.{os.path.basename(location)}.json",
                ),
                kubeconfig,
            )


__all__ = [
    "API_MODEL_FILE",
    "PARAMETERS_FILE",
    "TEMPLATE_FILE",
    "GeneratedArtifacts",
    "LibraryTemplateBuilder",
    "TemplateGenerator",
    "ToolTemplateBuilder",
]
