"""
External command execution for updater steps.

Commands run through asyncio subprocesses with stdout and stderr merged so
that output can be forwarded line by line while the command is running.
Every command runs under a deadline; on expiry the process is killed.
"""

import os
import time
import logging
import asyncio
from typing import AsyncIterator, List, Optional

from .errors import CommandFailedError, CommandTimeoutError

logger = logging.getLogger(__name__)

# Output kept for the error message of a failed command
OUTPUT_TAIL_LINES = 20

# npm and pip can print very long progress lines
STREAM_LIMIT = 1024 * 1024


async def stream_command(
    command: List[str],
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
    env: Optional[dict] = None,
) -> AsyncIterator[str]:
    """
    Run a command and yield its output lines as they are produced.

    Args:
        command: Program and arguments (no shell)
        cwd: Working directory
        timeout: Deadline in seconds for the whole command, None for no limit
        env: Extra environment variables

    Yields:
        str: Output lines without trailing newline

    Raises:
        CommandFailedError: If the command cannot be started or exits non-zero
        CommandTimeoutError: If the deadline expires
    """
    logger.info(f"Executing: {' '.join(command)} (cwd={cwd})")

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env={**os.environ, **(env or {})},
            limit=STREAM_LIMIT,
        )
    except OSError as e:
        logger.error(f"Failed to start {command[0]}: {e}")
        raise CommandFailedError(command, 127, str(e))

    deadline = time.monotonic() + timeout if timeout else None
    tail: List[str] = []

    try:
        while True:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
            raw = await asyncio.wait_for(process.stdout.readline(), timeout=remaining)
            if not raw:
                break
            line = raw.decode('utf-8', errors='replace').rstrip('\r\n')
            tail.append(line)
            del tail[:-OUTPUT_TAIL_LINES]
            yield line

        remaining = None if deadline is None else max(deadline - time.monotonic(), 0.01)
        returncode = await asyncio.wait_for(process.wait(), timeout=remaining)
    except asyncio.TimeoutError:
        logger.error(f"Command timed out after {timeout}s: {' '.join(command)}")
        await _kill(process)
        raise CommandTimeoutError(command, timeout)
    finally:
        # Consumer stopped early or was cancelled
        if process.returncode is None:
            await _kill(process)

    if returncode != 0:
        logger.warning(f"Command {' '.join(command)} returned code {returncode}")
        raise CommandFailedError(command, returncode, '\n'.join(tail[-5:]))


async def run_command(
    command: List[str],
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
) -> str:
    """Run a command to completion and return its combined output."""
    lines = []
    async for line in stream_command(command, cwd=cwd, timeout=timeout):
        lines.append(line)
    return '\n'.join(lines)


async def _kill(process):
    try:
        process.kill()
    except ProcessLookupError:
        return
    try:
        await process.wait()
    except Exception as e:
        logger.warning(f"Error reaping killed process {process.pid}: {e}")
