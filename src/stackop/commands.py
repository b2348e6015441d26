"""External command execution for the helm and az CLIs."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess

logger = logging.getLogger(__name__)

# Timeout constants (seconds)
COMMAND_TIMEOUT_SECONDS = 300

# Output captured into logs and errors is truncated to this many characters
MAX_OUTPUT_CHARS = 800


class CommandError(Exception):
    """Raised when an external command fails.

    Attributes:
        returncode: Process exit code, None if it never ran or timed out.
        retryable: Whether running the same command again may succeed. Only
            timeouts are; a non-zero exit is a verdict from the tool itself.
    """

    def __init__(
        self, message: str, *, returncode: int | None = None, retryable: bool = False
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.retryable = retryable


def require_tools(*names: str) -> list[str]:
    """Return the subset of names that are not on PATH."""
    return [name for name in names if shutil.which(name) is None]


def run_command(
    cmd: list[str],
    *,
    timeout: int = COMMAND_TIMEOUT_SECONDS,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a command and capture its output.

    Args:
        cmd: Command and arguments.
        timeout: Command timeout in seconds.
        env: Environment variables (merged with current env).

    Returns:
        CompletedProcess result (returncode 0).

    Raises:
        CommandError: If the command fails, times out, or is not installed.
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    logger.debug("Running command", extra={"command": " ".join(cmd)})
    try:
        result = subprocess.run(
            cmd,
            env=full_env,
            timeout=timeout,
            capture_output=True,
            text=True,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandError(
            f"Command timed out after {timeout}s: {' '.join(cmd)}", retryable=True
        ) from e
    except FileNotFoundError as e:
        raise CommandError(f"Command not found: {cmd[0]}", retryable=False) from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()[:MAX_OUTPUT_CHARS]
        logger.warning(
            "Command failed",
            extra={"command": cmd[0], "returncode": result.returncode, "stderr": stderr},
        )
        raise CommandError(
            f"{cmd[0]} failed (rc={result.returncode}): {stderr}",
            returncode=result.returncode,
            retryable=False,
        )
    return result


async def run_command_async(
    cmd: list[str],
    *,
    timeout: int = COMMAND_TIMEOUT_SECONDS,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a command in the default executor so the event loop keeps going."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(
        None, lambda: run_command(cmd, timeout=timeout, env=env)
    )
