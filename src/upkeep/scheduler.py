"""Registers the watchdog check with the host scheduler.

Preference order: system systemd timer (root), user systemd timer (when the
user manager answers), crontab entry. Uninstall removes all three.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Sequence

import structlog

from .capabilities.process import run_command

logger = structlog.get_logger(__name__)

UNIT_NAME = "upkeep-watchdog"
CRON_MARKER = "# upkeep-watchdog"
SYSTEM_UNIT_DIR = Path("/etc/systemd/system")
USER_UNIT_DIR = Path("~/.config/systemd/user")
SYSTEMCTL_TIMEOUT_SECONDS = 30

SYSTEM = "systemd-system"
USER = "systemd-user"
CRON = "cron"


def render_service_unit(exec_start: Sequence[str], environment: dict[str, str]) -> str:
    lines = [
        "[Unit]",
        "Description=upkeep service watchdog",
        "After=network.target",
        "[Service]",
        "Type=oneshot",
    ]
    lines += [f'Environment="{key}={value}"' for key, value in sorted(environment.items())]
    lines += [f"ExecStart={' '.join(exec_start)}", ""]
    return "\n".join(lines)


def render_timer_unit(interval_seconds: int) -> str:
    return "\n".join(
        [
            "[Unit]",
            "Description=upkeep service watchdog timer",
            "[Timer]",
            "OnBootSec=120",
            f"OnUnitActiveSec={interval_seconds}",
            "AccuracySec=10",
            "[Install]",
            "WantedBy=timers.target",
            "",
        ]
    )


def cron_schedule(interval_seconds: int) -> str:
    """Cron time fields for ``interval_seconds``.

    Cron resolves to whole minutes, so the interval rounds down with a one
    minute floor; an hour or more runs hourly. ``*/N`` restarts at each hour.
    """
    minutes = max(1, interval_seconds // 60)
    if minutes >= 60:
        return "0 * * * *"
    if minutes == 1:
        return "* * * * *"
    return f"*/{minutes} * * * *"


def render_cron_line(
    exec_start: Sequence[str], environment: dict[str, str], log_path: Path, interval_seconds: int = 60
) -> str:
    env = " ".join(f"{key}={value}" for key, value in sorted(environment.items()))
    command = " ".join(exec_start)
    prefix = f"{env} " if env else ""
    return f"{cron_schedule(interval_seconds)} {prefix}{command} >> {log_path} 2>&1 {CRON_MARKER}"


def strip_cron_entries(crontab: str) -> str:
    kept = [line for line in crontab.splitlines() if CRON_MARKER not in line]
    return "\n".join(kept) + ("\n" if kept else "")


class WatchdogScheduler:
    """Install, remove and inspect the periodic ``watchdog check`` job."""

    def __init__(
        self,
        exec_start: Sequence[str],
        state_dir: Path,
        interval_seconds: int = 60,
        environment: Optional[dict[str, str]] = None,
        system_unit_dir: Path = SYSTEM_UNIT_DIR,
        user_unit_dir: Path = USER_UNIT_DIR,
        is_root: Optional[bool] = None,
    ):
        self.exec_start = list(exec_start)
        self.state_dir = Path(state_dir)
        self.interval_seconds = interval_seconds
        self.environment = environment or {}
        self.system_unit_dir = Path(system_unit_dir)
        self.user_unit_dir = Path(user_unit_dir).expanduser()
        self.is_root = os.geteuid() == 0 if is_root is None else is_root

    @property
    def cron_log(self) -> Path:
        return self.state_dir / "watchdog-cron.log"

    async def _systemctl(self, *args: str, user: bool = False) -> bool:
        cmd = ["systemctl", "--user", *args] if user else ["systemctl", *args]
        result = await run_command(cmd, timeout_seconds=SYSTEMCTL_TIMEOUT_SECONDS)
        return result.ok

    async def user_manager_available(self) -> bool:
        return await self._systemctl("status", user=True)

    def _write_units(self, unit_dir: Path) -> None:
        unit_dir.mkdir(parents=True, exist_ok=True)
        (unit_dir / f"{UNIT_NAME}.service").write_text(
            render_service_unit(self.exec_start, self.environment), encoding="utf-8"
        )
        (unit_dir / f"{UNIT_NAME}.timer").write_text(render_timer_unit(self.interval_seconds), encoding="utf-8")

    async def _enable_timer(self, user: bool) -> None:
        await self._systemctl("daemon-reload", user=user)
        await self._systemctl("enable", f"{UNIT_NAME}.timer", user=user)
        await self._systemctl("start", f"{UNIT_NAME}.timer", user=user)

    async def _read_crontab(self) -> str:
        result = await run_command(["crontab", "-l"], timeout_seconds=SYSTEMCTL_TIMEOUT_SECONDS)
        # No crontab yet exits non-zero
        return result.stdout if result.ok else ""

    async def _write_crontab(self, content: str) -> bool:
        result = await run_command(["crontab", "-"], input_text=content, timeout_seconds=SYSTEMCTL_TIMEOUT_SECONDS)
        if not result.ok:
            logger.warning("crontab_write_failed", error_code=result.error_code, stderr=result.stderr)
        return result.ok

    async def install(self) -> str:
        """Register the job with the best available scheduler; returns its kind."""
        if self.is_root:
            self._write_units(self.system_unit_dir)
            await self._enable_timer(user=False)
            kind = SYSTEM
        elif await self.user_manager_available():
            self._write_units(self.user_unit_dir)
            await self._enable_timer(user=True)
            user = os.environ.get("USER", "")
            if user:
                await run_command(["loginctl", "enable-linger", user], timeout_seconds=SYSTEMCTL_TIMEOUT_SECONDS)
            kind = USER
        else:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            existing = strip_cron_entries(await self._read_crontab())
            line = render_cron_line(self.exec_start, self.environment, self.cron_log, self.interval_seconds)
            if not await self._write_crontab(existing + line + "\n"):
                raise OSError("could not write crontab")
            kind = CRON
        logger.info("watchdog_scheduled", kind=kind, interval_seconds=self.interval_seconds)
        return kind

    async def uninstall(self) -> list[str]:
        """Remove every registration; returns the kinds that were present."""
        removed = []

        crontab = await self._read_crontab()
        if CRON_MARKER in crontab:
            if await self._write_crontab(strip_cron_entries(crontab)):
                removed.append(CRON)

        for user, unit_dir, kind in ((True, self.user_unit_dir, USER), (False, self.system_unit_dir, SYSTEM)):
            if not user and not self.is_root:
                continue
            await self._systemctl("stop", f"{UNIT_NAME}.timer", user=user)
            await self._systemctl("disable", f"{UNIT_NAME}.timer", user=user)
            found = False
            for suffix in (".service", ".timer"):
                path = unit_dir / f"{UNIT_NAME}{suffix}"
                if path.exists():
                    path.unlink()
                    found = True
            if found:
                await self._systemctl("daemon-reload", user=user)
                removed.append(kind)

        logger.info("watchdog_unscheduled", removed=removed)
        return removed

    async def status(self) -> Optional[str]:
        """Kind of the active registration, or None."""
        if await self._systemctl("is-active", f"{UNIT_NAME}.timer", user=True):
            return USER
        if await self._systemctl("is-active", f"{UNIT_NAME}.timer"):
            return SYSTEM
        if CRON_MARKER in await self._read_crontab():
            return CRON
        return None
