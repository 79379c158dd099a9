#!/usr/bin/env python3
"""
kubedeployer/cli/kubedeploy.py

Drives one cluster's lifecycle from a YAML deployer config.

Usage example:
  python -m kubedeployer.cli.kubedeploy up --config deploy.yaml --workdir /tmp/kt-1
  python -m kubedeployer.cli.kubedeploy is-up --config deploy.yaml --workdir /tmp/kt-1
  python -m kubedeployer.cli.kubedeploy dump-logs --config deploy.yaml \
      --workdir /tmp/kt-1 --local-path ./logs
  python -m kubedeployer.cli.kubedeploy created --config deploy.yaml
  python -m kubedeployer.cli.kubedeploy down --config deploy.yaml
"""

import argparse
import asyncio
import logging
import sys
from typing import NoReturn

from kubedeployer.deployment.orchestrator import ClusterOrchestrator
from kubedeployer.deployment.provider_deploy import new_deployer
from kubedeployer.errors import ConfigurationError
from kubedeployer.models.cli_settings import KubedeploySettings
from kubedeployer.models.deployer_config import DeployerConfig, load_deployer_config


def build_parser(settings: KubedeploySettings) -> argparse.ArgumentParser:
    """
    Build the argument parser; `settings` supplies environment defaults.
    """
    parser = argparse.ArgumentParser(
        prog="kubedeploy",
        description="Bring a Kubernetes test cluster up or down on Azure.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=False,
        help=f"Log at DEBUG level (default: {settings.log_level}).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_command(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--config",
            default=settings.config,
            required=settings.config is None,
            help="Path to the deployer YAML config (default: $KUBEDEPLOY_CONFIG).",
        )
        sub.add_argument(
            "--workdir",
            default=settings.workdir,
            help="Working directory; overrides the config so commands can share it.",
        )
        return sub

    add_command("up", "Provision the cluster and export its kubeconfig.").set_defaults(
        func=_up
    )
    add_command("down", "Delete the cluster's resource group.").set_defaults(func=_down)
    add_command("is-up", "Check that the cluster has Ready nodes.").set_defaults(
        func=_is_up
    )
    created = add_command("created", "Print when the cluster was created.")
    created.add_argument("--name", help="Cluster or resource group name (default: cluster name).")
    created.set_defaults(func=_created)
    dump = add_command("dump-logs", "Collect cluster state with kubectl.")
    dump.add_argument("--local-path", required=True, help="Directory to write the dump to.")
    dump.add_argument("--remote-path", default="", help="Ignored; remote upload is not supported.")
    dump.set_defaults(func=_dump_logs)
    return parser


def main() -> NoReturn:
    """
    Entry point for the `kubedeploy` command.
    """
    settings = KubedeploySettings()
    args = build_parser(settings).parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(args.func(args))
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    else:
        sys.exit(0)


async def _load_config(args: argparse.Namespace) -> DeployerConfig:
    config = await load_deployer_config(args.config)
    if args.workdir:
        config = config.model_copy(update={"workdir": args.workdir})
    return config


async def _open(args: argparse.Namespace) -> ClusterOrchestrator:
    deployer = await new_deployer(await _load_config(args))
    if not isinstance(deployer, ClusterOrchestrator):
        raise ConfigurationError(f"Unsupported deployer type: {type(deployer).__name__}")
    return deployer


async def _up(args: argparse.Namespace) -> None:
    async with await _open(args) as deployer:
        await deployer.up()
        print(f"workdir: {deployer.workdir}")
        print(f"kubeconfig: {deployer.kubeconfig_path}")


async def _down(args: argparse.Namespace) -> None:
    async with await _open(args) as deployer:
        await deployer.down()


async def _is_up(args: argparse.Namespace) -> None:
    async with await _open(args) as deployer:
        deployer.adopt_kubeconfig()
        await deployer.is_up()
        print(f"Cluster {deployer.spec.name} is up.")


async def _created(args: argparse.Namespace) -> None:
    async with await _open(args) as deployer:
        created = await deployer.get_cluster_created(args.name or deployer.spec.name)
        print(created.isoformat())


async def _dump_logs(args: argparse.Namespace) -> None:
    async with await _open(args) as deployer:
        deployer.adopt_kubeconfig()
        await deployer.dump_cluster_logs(args.local_path, args.remote_path)


if __name__ == "__main__":
    main()
