"""Remedial actions against the managed service: restart and rollback."""

from __future__ import annotations

import asyncio
import shutil
import time
from enum import Enum
from pathlib import Path
from typing import Optional

import structlog

from ..capabilities.packages import PackageManager
from ..capabilities.supervisor import ServiceSupervisor
from ..capabilities.vcs import VersionControl
from ..gateway.console import Reporter
from ..observability.probe import HealthProbe
from ..persistence.events import EventLog
from ..persistence.state import RecoveryAction, ServiceStatus, StateStore
from ..snapshots.store import Snapshot, SnapshotStore

logger = structlog.get_logger(__name__)

STOP_SETTLE_SECONDS = 2


class Outcome(str, Enum):
    RECOVERED = "recovered"
    STILL_DOWN = "still_down"
    NO_SNAPSHOT = "no_snapshot"


class RecoveryActuator:
    """
    Executes restart and rollback, records the result in the event log and
    keeps the watchdog record consistent.

    ``last_action`` and ``last_action_at`` are always written together, before
    the action starts. A successful action resets ``consecutive_failures``.
    """

    def __init__(
        self,
        state: StateStore,
        events: EventLog,
        probe: HealthProbe,
        supervisor: ServiceSupervisor,
        vcs: VersionControl,
        packages: PackageManager,
        snapshots: SnapshotStore,
        config_file: Path,
        restart_timeout_seconds: int = 60,
        settle_seconds: float = 10,
        reporter: Optional[Reporter] = None,
    ):
        self.state = state
        self.events = events
        self.probe = probe
        self.supervisor = supervisor
        self.vcs = vcs
        self.packages = packages
        self.snapshots = snapshots
        self.config_file = Path(config_file)
        self.restart_timeout_seconds = restart_timeout_seconds
        self.settle_seconds = settle_seconds
        self.reporter = reporter or Reporter(quiet=True)

    async def _stamp_action(self, action: RecoveryAction) -> None:
        await self.state.update(last_action=action, last_action_at=int(time.time()))

    async def restart(self) -> Outcome:
        """Restart the service and wait for HTTP health."""
        self.reporter.info("Action: restarting service...")
        await self._stamp_action(RecoveryAction.RESTART)

        method = await self.supervisor.restart()
        self.reporter.info(f"Restart issued ({method})")
        logger.info("restart_issued", method=method)

        self.reporter.info(f"Waiting up to {self.restart_timeout_seconds}s for the service...")
        if await self.probe.wait_for_http(self.restart_timeout_seconds):
            await self.state.update(consecutive_failures=0, status=ServiceStatus.RECOVERED)
            await self.events.record("RESTART_SUCCESS", "Service recovered after restart")
            self.reporter.ok("Service recovered after restart")
            return Outcome.RECOVERED

        await self.events.record("RESTART_FAILED", "Service failed to recover after restart")
        self.reporter.fail("Service still down after restart")
        return Outcome.STILL_DOWN

    async def restore_revision(self, snapshot: Snapshot, reinstall: bool = False) -> bool:
        """Check out the snapshot's revision, optionally reinstalling dependencies.

        Returns False if any step failed; failures are logged, never raised.
        """
        ok = True
        if snapshot.revision:
            result = await self.vcs.checkout(snapshot.revision)
            if result.ok:
                self.reporter.ok(f"Checked out {snapshot.revision[:12]}")
            else:
                ok = False
                logger.warning("rollback_checkout_failed", revision=snapshot.revision, output=result.output[-500:])
                self.reporter.warn(f"Checkout of {snapshot.revision[:12]} failed")
        else:
            logger.warning("rollback_no_revision", snapshot_id=snapshot.id)
            self.reporter.warn("Snapshot has no recorded revision; code left as is")

        if reinstall:
            result = await self.packages.install()
            if result.ok:
                self.reporter.ok("Dependencies reinstalled")
            else:
                ok = False
                logger.warning("rollback_install_failed", error_code=result.error_code, output=result.output[-500:])
                self.reporter.warn("Dependency install failed")
        return ok

    def restore_config(self, snapshot: Snapshot) -> bool:
        """Copy the snapshot's configuration back byte-for-byte."""
        if snapshot.config_copy is None:
            logger.warning("rollback_no_config_copy", snapshot_id=snapshot.id)
            self.reporter.warn("Snapshot has no configuration copy")
            return False
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(snapshot.config_copy, self.config_file)
        except OSError as exc:
            logger.warning("rollback_config_restore_failed", error=str(exc))
            self.reporter.warn(f"Config restore failed: {exc}")
            return False
        self.reporter.ok(f"Config restored to {self.config_file}")
        return True

    async def rollback(self) -> Outcome:
        """
        Restore the latest snapshot and bring the service back up.

        With no latest snapshot nothing is touched: the event log gets
        ROLLBACK_FAILED and the counter and last_action stay as they were.
        Individual step failures are logged and the sequence continues.
        """
        snapshot = self.snapshots.latest()
        if snapshot is None:
            self.reporter.fail("No snapshot available for rollback")
            await self.events.record("ROLLBACK_FAILED", "No snapshot available")
            return Outcome.NO_SNAPSHOT

        self.reporter.info(f"Action: rolling back to {snapshot.id} (v{snapshot.version})...")
        await self._stamp_action(RecoveryAction.ROLLBACK)
        logger.info("rollback_started", snapshot_id=snapshot.id, revision=snapshot.revision)

        method = await self.supervisor.stop()
        self.reporter.info(f"Service stopped ({method})")
        await asyncio.sleep(STOP_SETTLE_SECONDS)

        await self.restore_revision(snapshot, reinstall=True)

        if self.packages.has_build_script():
            result = await self.packages.build()
            if result.ok:
                self.reporter.ok("Build complete")
            else:
                logger.warning("rollback_build_failed", error_code=result.error_code, output=result.output[-500:])
                self.reporter.warn("Build failed")

        self.restore_config(snapshot)

        method = await self.supervisor.start()
        self.reporter.info(f"Service start issued ({method})")

        await asyncio.sleep(self.settle_seconds)
        if await self.probe.check_http():
            await self.state.update(consecutive_failures=0, status=ServiceStatus.ROLLED_BACK)
            await self.events.record(
                "ROLLBACK_SUCCESS", f"Service recovered after rollback to {snapshot.version}"
            )
            self.reporter.ok("Service recovered after rollback")
            return Outcome.RECOVERED

        await self.events.record("ROLLBACK_FAILED", "Service still down after rollback")
        self.reporter.fail("Service still down after rollback. Manual intervention needed.")
        return Outcome.STILL_DOWN
