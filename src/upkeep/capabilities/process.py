"""Bounded external command execution.

Every external program (git, pnpm, systemctl, journalctl, crontab) is run
through ``run_command``, which never raises for process failures: a missing
binary, a timeout or a non-zero exit all come back as a ``CommandResult``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60


@dataclass
class CommandResult:
    """Outcome of one external command."""

    ok: bool
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    error_code: Optional[str] = None  # "command_not_found" | "timeout" | "failed"

    @property
    def output(self) -> str:
        return (self.stdout + ("\n" + self.stderr if self.stderr else "")).strip()


async def run_command(
    cmd: list[str],
    cwd: Optional[str | Path] = None,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    input_text: Optional[str] = None,
) -> CommandResult:
    """
    Run ``cmd`` and wait at most ``timeout_seconds``.

    Args:
        cmd: Program and arguments
        cwd: Working directory
        timeout_seconds: Hard limit; the process is killed when exceeded
        input_text: Optional text written to stdin

    Returns:
        CommandResult (ok is True only for exit status 0)
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, NotADirectoryError) as exc:
        logger.debug("command_not_found", command=cmd, error=str(exc))
        return CommandResult(
            ok=False,
            returncode=None,
            stderr=str(exc),
            error_code="command_not_found",
        )

    try:
        stdout_b, stderr_b = await asyncio.wait_for(
            process.communicate(input_text.encode() if input_text is not None else None),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("command_timeout", command=cmd, timeout_seconds=timeout_seconds)
        return CommandResult(
            ok=False,
            returncode=None,
            stderr=f"timed out after {timeout_seconds}s",
            error_code="timeout",
        )

    stdout = stdout_b.decode("utf-8", errors="replace")
    stderr = stderr_b.decode("utf-8", errors="replace").strip()
    if process.returncode != 0:
        logger.debug(
            "command_failed",
            command=cmd,
            returncode=process.returncode,
            stderr=stderr[-500:],
        )
        return CommandResult(
            ok=False,
            returncode=process.returncode,
            stdout=stdout,
            stderr=stderr,
            error_code="failed",
        )

    return CommandResult(ok=True, returncode=0, stdout=stdout, stderr=stderr)
