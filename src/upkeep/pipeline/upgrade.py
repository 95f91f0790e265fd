"""Guarded upgrade of the managed service.

Phases:
    check    preflight; errors block the upgrade, warnings do not
    upgrade  snapshot, stop, pull, install, build, then verify
    verify   compare the running install against the latest snapshot
    rollback restore the latest snapshot (same sequence as the watchdog's)

Each phase prints to the console Reporter as it goes and returns a report
object; exit codes are derived from those reports by the CLI.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

import psutil
import structlog

from ..capabilities.errors import CapabilityError
from ..capabilities.packages import PackageManager
from ..capabilities.supervisor import ServiceSupervisor
from ..capabilities.vcs import VersionControl
from ..gateway.console import Reporter
from ..observability.probe import HealthProbe
from ..recovery.actuator import Outcome, RecoveryActuator
from ..snapshots.inventory import (
    broken_symlinks,
    extract_channels,
    extract_primary_model,
    load_config,
    scan_plugin_artifacts,
)
from ..snapshots.store import Snapshot, SnapshotStore
from .heuristics import RenameHint, error_lines, is_breaking_change, tail_lines

logger = structlog.get_logger(__name__)

MAX_INCOMING_LISTED = 20
LOG_TAIL_LINES = 50
LOG_ERRORS_SHOWN = 5
ROLLBACK_RECOMMENDATION = "upgrade may have problems, rollback recommended (run 'upkeep guard rollback')"


@dataclass
class PhaseReport:
    """Findings of one phase, by severity."""

    name: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class UpgradeReport:
    """Result of ``upgrade``: how far it got and whether it succeeded."""

    success: bool
    stage: str
    dry_run: bool = False
    preflight: Optional[PhaseReport] = None
    verification: Optional[PhaseReport] = None
    snapshot_id: Optional[str] = None
    old_version: Optional[str] = None
    new_version: Optional[str] = None
    rollback_outcome: Optional[Outcome] = None

    @property
    def exit_code(self) -> int:
        if self.success:
            return 0
        return 2 if self.stage == "preflight" else 1


class UpgradePipeline:
    def __init__(
        self,
        snapshots: SnapshotStore,
        actuator: RecoveryActuator,
        vcs: VersionControl,
        packages: PackageManager,
        supervisor: ServiceSupervisor,
        probe: HealthProbe,
        install_dir: Path,
        config_file: Path,
        rename_hint: Optional[RenameHint] = None,
        min_free_disk_mb: int = 500,
        verify_timeout_seconds: int = 30,
        log_files: Sequence[Path] = (),
        critical_modules: Sequence[str] = (),
        reporter: Optional[Reporter] = None,
    ):
        self.snapshots = snapshots
        self.actuator = actuator
        self.vcs = vcs
        self.packages = packages
        self.supervisor = supervisor
        self.probe = probe
        self.install_dir = Path(install_dir)
        self.config_file = Path(config_file)
        self.rename_hint = rename_hint
        self.min_free_disk_mb = min_free_disk_mb
        self.verify_timeout_seconds = verify_timeout_seconds
        self.log_files = [Path(p) for p in log_files]
        self.critical_modules = list(critical_modules)
        self.reporter = reporter or Reporter(quiet=True)

    # ------------------------------------------------------------------
    # Reporting helpers
    # ------------------------------------------------------------------

    def _error(self, phase: PhaseReport, message: str) -> None:
        phase.errors.append(message)
        self.reporter.fail(message)

    def _warn(self, phase: PhaseReport, message: str) -> None:
        phase.warnings.append(message)
        self.reporter.warn(message)

    def _info(self, phase: PhaseReport, message: str) -> None:
        phase.infos.append(message)
        self.reporter.info(message)

    def _free_disk_mb(self) -> Optional[int]:
        path = self.install_dir
        while not path.exists() and path != path.parent:
            path = path.parent
        try:
            return int(psutil.disk_usage(str(path)).free // (1024 * 1024))
        except OSError:
            return None

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    async def snapshot(self) -> Snapshot:
        """Capture a snapshot and print what it holds."""
        self.reporter.info("Taking system snapshot...")
        snap = await self.snapshots.snapshot()
        self.reporter.ok(f"Version: {snap.version}")
        if snap.revision:
            self.reporter.ok(f"Git commit: {snap.revision[:12]}")
        else:
            self.reporter.info("No git checkout; revision not recorded")
        if snap.config_copy:
            self.reporter.ok("Config backed up")
        else:
            self.reporter.warn(f"Config file not found: {self.config_file}")
        if snap.lockfile_copy:
            self.reporter.ok(f"Lockfile backed up ({snap.lockfile_copy.name})")
        self.reporter.ok(f"Plugin files: {len(snap.plugin_artifacts)}")
        self.reporter.ok(f"Symlinks: {len(snap.symlinks)}")
        self.reporter.ok(f"Service: {snap.service_status}")
        self.reporter.ok(f"Channels: {', '.join(snap.channels) or 'none'}")
        self.reporter.ok(f"Primary model: {snap.primary_model or 'not set'}")
        self.reporter.ok(f"Snapshot saved: {snap.path}")
        return snap

    # ------------------------------------------------------------------
    # Preflight
    # ------------------------------------------------------------------

    async def check(self) -> PhaseReport:
        """Pre-upgrade checks. Errors block an upgrade; warnings do not."""
        phase = PhaseReport(name="preflight")
        self.reporter.section("Pre-flight checks")

        latest = self.snapshots.latest()
        if latest is None:
            self._error(phase, "No snapshot found. Run 'upkeep guard snapshot' first.")
        else:
            self.reporter.ok(f"Snapshot found: {latest.id}")

        if not self.config_file.is_file():
            self._error(phase, f"Config file not found: {self.config_file}")
        else:
            try:
                load_config(self.config_file)
            except (OSError, ValueError) as exc:
                self._error(phase, f"Config file does not parse: {exc}")
            else:
                self.reporter.ok(f"Config file: {self.config_file}")

        if self.vcs.is_repo():
            status = await self.vcs.status()
            if status is None:
                self._warn(phase, "Could not read git working tree status")
            elif status["dirty_count"]:
                self._warn(phase, f"Git repo has {status['dirty_count']} uncommitted changes")
            else:
                self.reporter.ok("Git repo clean")

        free_mb = self._free_disk_mb()
        if free_mb is not None and free_mb > self.min_free_disk_mb:
            self.reporter.ok(f"Disk space: {free_mb}MB available")
        else:
            self._warn(phase, f"Low disk space: {free_mb if free_mb is not None else '?'}MB")

        version = self.packages.read_version()
        if version:
            self.reporter.ok(f"Current version: {version}")
        else:
            self._error(phase, "Cannot read current version")
        phase.details["version"] = version

        reachability = await self.probe.reachability()
        if reachability == "running":
            self.reporter.ok("Service is responding")
        elif reachability == "process-found":
            self._warn(phase, "Service process found but not responding on HTTP")
        else:
            self._warn(phase, "Service not running (will need manual start after upgrade)")

        if self.vcs.is_repo():
            await self.vcs.fetch()
            incoming = await self.vcs.incoming()
            if incoming is None:
                self._warn(phase, "Could not compare with upstream")
            elif incoming:
                phase.details["incoming"] = incoming
                self._info(phase, f"Remote is {len(incoming)} commits ahead")
                self.reporter.info("Incoming changes:")
                for subject in incoming[:MAX_INCOMING_LISTED]:
                    self.reporter.line(f"    {subject}")
                breaking = [s for s in incoming if is_breaking_change(s)]
                if breaking:
                    self._warn(
                        phase,
                        f"{len(breaking)} commits mention breaking/rename/migration, read the changelog",
                    )
            else:
                self._info(phase, "Already up to date")

        tool = self.packages.name()
        if tool:
            self.reporter.ok(f"{tool} available")
        else:
            self._error(phase, "No package manager found (need pnpm or npm)")

        self.reporter.line()
        if phase.errors:
            self.reporter.fail(
                f"Pre-flight: {len(phase.errors)} errors, {len(phase.warnings)} warnings. "
                "Fix errors before upgrading"
            )
        elif phase.warnings:
            self.reporter.warn(f"Pre-flight: 0 errors, {len(phase.warnings)} warnings. Proceed with caution")
        else:
            self.reporter.ok("Pre-flight: all clear")
        logger.info("preflight_finished", errors=len(phase.errors), warnings=len(phase.warnings))
        return phase

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------

    async def upgrade(self, dry_run: bool = False) -> UpgradeReport:
        """
        Run the guarded upgrade.

        Raises:
            CapabilityError: no latest snapshot to fall back to
        """
        self.reporter.info("Starting safe upgrade...")
        if dry_run:
            self.reporter.info("(dry run: no changes will be made)")

        if self.snapshots.latest() is None:
            self.reporter.fail("No snapshot. Run 'upkeep guard snapshot' first!")
            raise CapabilityError(
                code="no_snapshot",
                message="No snapshot to fall back to; run 'upkeep guard snapshot' first",
            )

        preflight = await self.check()
        if not preflight.ok:
            self.reporter.fail("Pre-flight failed. Fix errors first.")
            return UpgradeReport(success=False, stage="preflight", dry_run=dry_run, preflight=preflight)
        if dry_run:
            self.reporter.ok("Dry run complete. Would proceed with upgrade.")
            return UpgradeReport(success=True, stage="preflight", dry_run=True, preflight=preflight)

        self.reporter.section("Fresh snapshot")
        snap = await self.snapshot()
        report = UpgradeReport(
            success=False,
            stage="snapshot",
            preflight=preflight,
            snapshot_id=snap.id,
            old_version=snap.version,
        )

        self.reporter.section("Stopping service")
        method = await self.supervisor.stop()
        self.reporter.ok(f"Service stopped ({method})")

        self.reporter.section("Pulling upstream")
        report.stage = "pull"
        pull = await self.vcs.pull()
        if not pull.ok:
            self.reporter.fail("git pull failed!")
            logger.error("upgrade_pull_failed", error_code=pull.error_code, output=pull.output[-500:])
            await self.actuator.restore_revision(snap)
            await self.supervisor.start()
            return report
        report.new_version = self.packages.read_version() or "unknown"
        self.reporter.ok(f"Pulled. New version: {report.new_version}")

        self.reporter.section("Install dependencies and build")
        report.stage = "install"
        install = await self.packages.install()
        if not install.ok:
            self.reporter.fail("Dependency install failed! Restoring previous revision...")
            logger.error("upgrade_install_failed", error_code=install.error_code, output=install.output[-500:])
            await self.actuator.restore_revision(snap, reinstall=True)
            await self.supervisor.start()
            return report
        self.reporter.ok("Dependencies installed")

        if self.packages.has_build_script():
            report.stage = "build"
            build = await self.packages.build()
            if not build.ok:
                self.reporter.fail("Build failed! Rolling back...")
                logger.error("upgrade_build_failed", error_code=build.error_code, output=build.output[-500:])
                report.rollback_outcome = await self.actuator.rollback()
                return report
            self.reporter.ok("Build complete")

        report.stage = "verify"
        report.verification = await self.verify(snap)
        report.success = report.verification.ok
        logger.info(
            "upgrade_finished",
            success=report.success,
            old_version=report.old_version,
            new_version=report.new_version,
        )
        return report

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def _verify_plugins(self, phase: PhaseReport, snap: Snapshot) -> None:
        current = scan_plugin_artifacts(self.install_dir)
        before = set(snap.plugin_artifacts)
        after = set(current)
        removed = sorted(before - after)
        added = sorted(after - before)
        phase.details["plugins_removed"] = removed
        phase.details["plugins_added"] = added
        if removed:
            self._warn(phase, f"{len(removed)} plugin files removed/renamed")
            for path in removed:
                self.reporter.line(f"    - {path}")
                hint = self.rename_hint.suggest(path, current) if self.rename_hint else None
                if hint:
                    self.reporter.line(f"      possible rename: {hint} (may need symlink)")
        if added:
            self._info(phase, f"{len(added)} new plugin files added")

    def _verify_config(self, phase: PhaseReport, snap: Snapshot) -> None:
        try:
            config = load_config(self.config_file)
        except (OSError, ValueError) as exc:
            self._error(phase, f"Config: unreadable or invalid JSON ({exc})")
            return
        self.reporter.ok("Config: valid JSON")

        present = set(extract_channels(config))
        for channel in snap.channels:
            if channel in present:
                self.reporter.ok(f"Channel '{channel}' still in config")
            else:
                self._error(phase, f"Channel '{channel}' missing from config!")

        model = extract_primary_model(config)
        if model is None:
            self._error(phase, "No primary model configured!")
            return
        self.reporter.ok(f"Primary model: {model}")
        if snap.primary_model and snap.primary_model != model:
            self._warn(phase, f"Model changed: {snap.primary_model} -> {model}")

    def _verify_logs(self, phase: PhaseReport) -> None:
        logfile = next((p for p in self.log_files if p.is_file()), None)
        if logfile is None:
            return
        try:
            lines = tail_lines(logfile, LOG_TAIL_LINES)
        except OSError as exc:
            logger.debug("service_log_unreadable", path=str(logfile), error=str(exc))
            return
        errors = error_lines(lines)
        if errors:
            self._warn(phase, f"{len(errors)} error lines in recent service logs")
            for line in errors[-LOG_ERRORS_SHOWN:]:
                self.reporter.line(f"    {line}")
        else:
            self.reporter.ok("No errors in recent logs")

    async def verify(self, snap: Optional[Snapshot] = None) -> PhaseReport:
        """Post-upgrade verification against ``snap`` (default: latest)."""
        phase = PhaseReport(name="verify")
        self.reporter.section("Post-upgrade verification")

        snap = snap or self.snapshots.latest()
        if snap is None:
            self._error(phase, "No snapshot to compare against")
        else:
            new_version = self.packages.read_version() or "unknown"
            if snap.version != new_version:
                self._info(phase, f"Version: {snap.version} -> {new_version}")
            else:
                self._info(phase, f"Version unchanged: {new_version}")
            self._verify_plugins(phase, snap)
            self._verify_config(phase, snap)

        broken = broken_symlinks(self.install_dir)
        for link, target in broken:
            self._error(phase, f"Broken symlink: {link} -> {target}")
        if not broken:
            self.reporter.ok("No broken symlinks")

        for module in self.critical_modules:
            if (self.install_dir / "node_modules" / module).is_dir():
                self.reporter.ok(f"Module: {module}")
            else:
                self._info(phase, f"Module not found: {module} (may not be required)")

        self.reporter.info("Starting service...")
        await self.supervisor.start()
        if await self.probe.wait_for_http(self.verify_timeout_seconds):
            self.reporter.ok("Service started and responding")
        elif await self.supervisor.process_running():
            self._error(phase, "Service process running but not responding on HTTP")
        else:
            self._error(phase, "Service failed to start!")

        self._verify_logs(phase)

        self.reporter.line()
        if phase.errors:
            self.reporter.fail(f"Verification: {len(phase.errors)} errors, {len(phase.warnings)} warnings")
            self.reporter.fail(ROLLBACK_RECOMMENDATION)
            phase.details["recommendation"] = ROLLBACK_RECOMMENDATION
        elif phase.warnings:
            self.reporter.warn(f"Verification: 0 errors, {len(phase.warnings)} warnings. Check warnings above")
        else:
            self.reporter.ok("Verification: all clear")
        logger.info("verification_finished", errors=len(phase.errors), warnings=len(phase.warnings))
        return phase

    # ------------------------------------------------------------------
    # Rollback / status
    # ------------------------------------------------------------------

    async def rollback(self) -> Outcome:
        return await self.actuator.rollback()

    async def status(self) -> dict[str, Any]:
        """Current install versus the latest snapshot, plus every snapshot."""
        self.reporter.section("Upgrade guard status")
        info: dict[str, Any] = {
            "version": self.packages.read_version() or "unknown",
            "revision": await self.vcs.head(),
        }
        self.reporter.info(f"Current version: {info['version']}")
        if info["revision"]:
            self.reporter.info(f"Current commit: {info['revision'][:12]}")

        latest = self.snapshots.latest()
        info["latest"] = latest
        if latest is not None:
            self.reporter.line()
            self.reporter.info(f"Latest snapshot: {latest.id} ({latest.created_label})")
            self.reporter.info(f"  Version: {latest.version}")
            self.reporter.info(f"  Commit: {(latest.revision or 'unknown')[:12]}")
            self.reporter.info(f"  Channels: {', '.join(latest.channels) or 'none'}")
            self.reporter.info(f"  Model: {latest.primary_model or 'unknown'}")
            self.reporter.info(f"  Service was: {latest.service_status}")
        else:
            self.reporter.warn("No snapshot taken yet")

        if self.vcs.is_repo():
            await self.vcs.fetch()
            incoming = await self.vcs.incoming()
            info["upstream_commits"] = len(incoming) if incoming is not None else None
            self.reporter.line()
            if incoming:
                self.reporter.warn(f"{len(incoming)} commits available upstream")
            elif incoming is None:
                self.reporter.warn("Could not compare with upstream")
            else:
                self.reporter.ok("Up to date with remote")

        snapshots = self.snapshots.list()
        info["snapshots"] = snapshots
        self.reporter.line()
        self.reporter.info("All snapshots:")
        for snap in snapshots:
            self.reporter.line(f"  {snap.id}  v{snap.version}")
        if not snapshots:
            self.reporter.line("  (none)")
        return info
