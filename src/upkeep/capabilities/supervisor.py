"""Service supervisor capability.

Restarts go through systemd when the unit is known to it; otherwise matching
processes are terminated and the start command is relaunched detached from
this (short-lived) process.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Optional, Protocol

import psutil
import structlog

from .process import run_command

logger = structlog.get_logger(__name__)

SYSTEMCTL_TIMEOUT_SECONDS = 30
TERMINATE_GRACE_SECONDS = 5


class ServiceSupervisor(Protocol):
    """Lifecycle control for the managed service."""

    async def restart(self) -> str: ...

    async def stop(self) -> str: ...

    async def start(self) -> str: ...

    async def process_running(self) -> bool: ...


def find_processes(pattern: str) -> list[psutil.Process]:
    """Processes whose name or command line matches ``pattern`` (excluding this one)."""
    regex = re.compile(pattern, re.IGNORECASE)
    own_pid = psutil.Process().pid
    matches: list[psutil.Process] = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        try:
            if proc.info["pid"] == own_pid:
                continue
            cmdline = " ".join(proc.info.get("cmdline") or [])
            name = proc.info.get("name") or ""
            if regex.search(cmdline) or regex.search(name):
                matches.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return matches


def port_listening(port: int) -> bool:
    """True when some local TCP socket is listening on ``port``."""
    try:
        connections = psutil.net_connections(kind="tcp")
    except (psutil.AccessDenied, OSError) as exc:
        logger.debug("net_connections_unavailable", error=str(exc))
        return False
    return any(
        conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port
        for conn in connections
    )


def rss_mb(processes: list[psutil.Process]) -> int:
    """Summed resident memory of ``processes`` in MB."""
    total = 0
    for proc in processes:
        try:
            total += proc.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return total // (1024 * 1024)


def terminate_processes(processes: list[psutil.Process], grace_seconds: float = TERMINATE_GRACE_SECONDS) -> int:
    """SIGTERM, then SIGKILL whatever survives ``grace_seconds``. Returns the number signalled."""
    signalled: list[psutil.Process] = []
    for proc in processes:
        try:
            proc.terminate()
            signalled.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    _, alive = psutil.wait_procs(signalled, timeout=grace_seconds)
    for proc in alive:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return len(signalled)


class SystemdServiceSupervisor:
    """systemd-first supervisor with a manual kill/relaunch fallback."""

    def __init__(
        self,
        unit: str,
        process_pattern: str,
        start_command: list[str],
        install_dir: str | Path,
        port: int,
    ):
        self.unit = unit
        self.process_pattern = process_pattern
        self.start_command = start_command
        self.install_dir = Path(install_dir)
        self.port = port

    async def _systemctl(self, verb: str) -> bool:
        result = await run_command(["systemctl", verb, self.unit], timeout_seconds=SYSTEMCTL_TIMEOUT_SECONDS)
        return result.ok

    async def process_running(self) -> bool:
        return bool(await asyncio.to_thread(find_processes, self.process_pattern))

    async def _terminate(self) -> int:
        processes = await asyncio.to_thread(find_processes, self.process_pattern)
        return await asyncio.to_thread(terminate_processes, processes)

    async def _launch(self) -> Optional[int]:
        cmd = [arg.format(port=self.port) for arg in self.start_command]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self.install_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as exc:
            logger.error("service_launch_failed", command=cmd, error=str(exc))
            return None
        logger.info("service_launched", command=cmd, pid=process.pid)
        return process.pid

    async def restart(self) -> str:
        """Restart the service; returns "systemd", "manual" or "failed"."""
        if await self._systemctl("restart"):
            logger.info("service_restart_issued", method="systemd", unit=self.unit)
            return "systemd"
        await self._terminate()
        await asyncio.sleep(2)
        pid = await self._launch()
        if pid is None:
            return "failed"
        logger.info("service_restart_issued", method="manual", pid=pid)
        return "manual"

    async def stop(self) -> str:
        if await self._systemctl("stop"):
            logger.info("service_stopped", method="systemd", unit=self.unit)
            return "systemd"
        count = await self._terminate()
        logger.info("service_stopped", method="manual", processes=count)
        return "manual"

    async def start(self) -> str:
        """Start the service; returns "systemd", "running", "manual" or "failed"."""
        if await self._systemctl("start"):
            logger.info("service_started", method="systemd", unit=self.unit)
            return "systemd"
        if await self.process_running():
            logger.info("service_already_running", pattern=self.process_pattern)
            return "running"
        pid = await self._launch()
        return "manual" if pid is not None else "failed"
