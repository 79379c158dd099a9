"""
kubedeployer/utils/async_command_runner.py

Runs local tools (acs-engine, kubectl) in an asyncio subprocess. A failing
exit code becomes a CommandError, and transient failures can be retried.

Usage example:
    from kubedeployer.utils.async_command_runner import run_command, CommandError

    try:
        nodes_json = await run_command(
            ["kubectl", "--kubeconfig", path, "get", "nodes", "-o", "json"],
            retries=1,
        )
    except CommandError as err:
        logger.error("kubectl failed: %s", err)
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from kubedeployer.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Represents a failure when executing a local command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured stderr, empty when the command is sensitive.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    retries: int = 1,
    retry_delay: float = 1.0,
    timeout: Optional[float] = None,
) -> str:
    """
    Execute a command in a subprocess and return its stripped stdout.

    When `sensitive=True` the command line, stdout and stderr are left out of
    the raised error, since generator invocations carry service principal
    material in their input files.

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error.
        retries (int):
            Total attempts before giving up. Defaults to 1 (no retry).
        retry_delay (float):
            Delay in seconds between attempts. Defaults to 1.0.
        timeout (Optional[float]):
            Seconds to wait for the process before killing it.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command cannot be started, times out, or exits
            non-zero on every attempt.
    """

    @async_retry(retries=retries, delay=retry_delay, retry_on=(CommandError,))
    async def _inner_run_command() -> str:
        logger.debug("Running %s", command[0] if sensitive else " ".join(command))

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CommandError(f"Unable to start {command[0]}: {exc}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CommandError(
                f"{command[0]} did not finish within {timeout} seconds."
            ) from exc

        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode == 0:
            return stdout_str

        if sensitive:
            raise CommandError(
                f"{command[0]} failed with return code {proc.returncode}.",
                proc.returncode,
            )
        raise CommandError(
            f"Command failed with return code {proc.returncode}."
            f"\nCommand: {' '.join(command)}"
            f"\nStdout: {stdout_str}"
            f"\nStderr: {stderr_str}",
            proc.returncode,
            stderr_str,
        )

    return await _inner_run_command()
