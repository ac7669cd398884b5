"""Async subprocess helpers shared by git, tmux and the isolation backends."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from orchestra.errors import CommandError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60


async def run(
    *cmd: str,
    cwd: Path | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    stdin: bytes | None = None,
) -> tuple[int, str, str]:
    """Run a command without blocking the event loop.

    Returns (returncode, stdout, stderr). The process is killed if it
    outlives *timeout* and the TimeoutError propagates.
    """
    logger.debug("exec: %s (cwd=%s)", " ".join(cmd), cwd)
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=str(cwd) if cwd else None,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(stdin), timeout=timeout
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode or 0,
        (stdout_bytes or b"").decode(errors="replace"),
        (stderr_bytes or b"").decode(errors="replace"),
    )


async def run_checked(
    *cmd: str,
    cwd: Path | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    stdin: bytes | None = None,
) -> str:
    """Like :func:`run` but raise CommandError on a non-zero exit.

    Returns stdout.
    """
    rc, out, err = await run(*cmd, cwd=cwd, timeout=timeout, stdin=stdin)
    if rc != 0:
        raise CommandError(cmd, rc, err)
    return out
