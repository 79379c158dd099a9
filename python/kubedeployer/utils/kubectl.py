"""
kubedeployer/utils/kubectl.py

Helpers around the kubeconfig a deployment leaves in the working directory
and the `kubectl` calls made against it: locating and exporting the
kubeconfig, listing nodes and dumping cluster state for log collection.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

from kubedeployer.errors import ClusterNotUpError, ParseError
from kubedeployer.models.validator import require_json_object
from kubedeployer.utils.async_command_runner import run_command

logger = logging.getLogger(__name__)

KUBECONFIG_DIR = "kubeconfig"


def find_kubeconfig(workdir: str, location: Optional[str] = None) -> str:
    """Locate the kubeconfig generated for a deployment.

    Prefers `kubeconfig.<location>.json`; otherwise the first file by name.

    Args:
        workdir: The working directory holding the `kubeconfig/` folder.
        location: The cluster's region, if known.

    Returns:
        str: Absolute path of the kubeconfig file.

    Raises:
        FileNotFoundError: If no kubeconfig file exists.
    """
    kubeconfig_dir = os.path.join(workdir, KUBECONFIG_DIR)
    try:
        candidates = sorted(
            entry
            for entry in os.listdir(kubeconfig_dir)
            if os.path.isfile(os.path.join(kubeconfig_dir, entry))
        )
    except FileNotFoundError:
        candidates = []
    if not candidates:
        raise FileNotFoundError(f"No kubeconfig found under {kubeconfig_dir}")

    preferred = f"kubeconfig.{location}.json" if location else None
    chosen = preferred if preferred in candidates else candidates[0]
    return os.path.abspath(os.path.join(kubeconfig_dir, chosen))


def export_kubeconfig(path: str, env_var: str = "KUBECONFIG") -> None:
    """Point downstream tooling at `path` through the environment."""
    logger.info("Setting %s env variable: kubeconfig path: %s.", env_var, path)
    os.environ[env_var] = path


def _node_is_ready(node: Dict[str, Any]) -> bool:
    conditions = node.get("status", {}).get("conditions", [])
    return any(
        c.get("type") == "Ready" and c.get("status") == "True" for c in conditions
    )


async def get_nodes(kubeconfig: str) -> List[Dict[str, Any]]:
    """Return the node objects reported by the cluster.

    Raises:
        CommandError: If kubectl fails.
        ParseError: If kubectl output is not a JSON object.
    """
    output = await run_command(
        ["kubectl", "--kubeconfig", kubeconfig, "get", "nodes", "-o", "json"],
        sensitive=False,
        retries=2,
    )
    try:
        parsed = require_json_object(json.loads(output), "kubectl node list")
    except json.JSONDecodeError as exc:
        raise ParseError(f"kubectl returned invalid JSON: {exc}") from exc
    items = parsed.get("items", [])
    return [item for item in items if isinstance(item, dict)]


async def check_cluster_up(kubeconfig: str) -> List[str]:
    """Check that the cluster answers and has at least one Ready node.

    Returns:
        List[str]: Names of the Ready nodes.

    Raises:
        ClusterNotUpError: If no node is Ready.
    """
    nodes = await get_nodes(kubeconfig)
    ready = [
        node.get("metadata", {}).get("name", "")
        for node in nodes
        if _node_is_ready(node)
    ]
    if not ready:
        raise ClusterNotUpError(
            f"Cluster has {len(nodes)} node(s) but none is Ready."
        )
    logger.info("%d of %d node(s) Ready.", len(ready), len(nodes))
    return ready


async def dump_cluster_info(kubeconfig: str, output_dir: str) -> None:
    """Write `kubectl cluster-info dump` for all namespaces into `output_dir`."""
    os.makedirs(output_dir, exist_ok=True)
    await run_command(
        [
            "kubectl",
            "--kubeconfig",
            kubeconfig,
            "cluster-info",
            "dump",
            "--all-namespaces",
            "--output-directory",
            output_dir,
        ],
        sensitive=False,
    )


__all__ = [
    "KUBECONFIG_DIR",
    "check_cluster_up",
    "dump_cluster_info",
    "export_kubeconfig",
    "find_kubeconfig",
    "get_nodes",
]
