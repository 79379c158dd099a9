# kubedeployer/models/cli_settings.py

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class KubedeploySettings(BaseSettings):
    """
    Defaults for the kubedeploy CLI, read from environment variables prefixed
    with `KUBEDEPLOY_`, e.g. `KUBEDEPLOY_CONFIG=/etc/kubedeploy/deploy.yaml`.
    Command-line flags take precedence.
    """

    config: Optional[str] = None  # KUBEDEPLOY_CONFIG
    workdir: Optional[str] = None  # KUBEDEPLOY_WORKDIR
    log_level: str = "INFO"  # KUBEDEPLOY_LOG_LEVEL

    model_config = SettingsConfigDict(env_prefix="KUBEDEPLOY_")
