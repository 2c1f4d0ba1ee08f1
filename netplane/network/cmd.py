"""Bounded-time async command execution for switch tooling."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from netplane.errors import CommandTimeoutError, ExternalToolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


CommandRunner = Callable[[list[str]], Awaitable[CommandResult]]


async def run_cmd(cmd: list[str], timeout: float) -> CommandResult:
    """Run a command asynchronously under a hard deadline.

    Args:
        cmd: Command and arguments as list
        timeout: Seconds before the process is killed

    Returns:
        CommandResult with decoded stdout/stderr

    Raises:
        CommandTimeoutError: If the deadline passed; the process is killed
            and reaped before raising
        ExternalToolError: If the executable could not be started
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ExternalToolError(
            f"Failed to execute {cmd[0]}",
            command=cmd,
            stderr=str(e),
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning(f"Timeout after {timeout}s: {' '.join(cmd)}")
        raise CommandTimeoutError(
            f"{cmd[0]} did not finish within {timeout}s",
            command=cmd,
            timeout=timeout,
        ) from None
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    return CommandResult(
        returncode=process.returncode or 0,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


def make_runner(timeout: float) -> CommandRunner:
    """Bind run_cmd to a fixed deadline."""

    async def _runner(cmd: list[str]) -> CommandResult:
        return await run_cmd(cmd, timeout=timeout)

    return _runner
