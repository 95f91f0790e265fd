"""Command-line entry points.

    upkeep watchdog {check,install,uninstall,status}
    upkeep guard {snapshot,check,upgrade [--dry-run],verify,rollback,status}

Exit codes: 0 healthy/success, 1 unhealthy or recoverable failure,
2 unrecoverable precondition (no snapshot, preflight errors, bad config).
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import structlog

from . import __version__
from .capabilities.errors import CapabilityError
from .capabilities.packages import NodePackageManager
from .capabilities.supervisor import SystemdServiceSupervisor
from .capabilities.vcs import GitVersionControl
from .config.manager import ConfigManager, initialize_config
from .gateway.alerts import AlertGate, TelegramNotifier
from .gateway.console import Reporter
from .observability.log_setup import configure_logging
from .observability.metrics import MetricsTrend
from .observability.probe import HealthProbe, ProbeSettings
from .persistence.db import DatabaseManager
from .persistence.events import EventLog, format_event
from .persistence.state import StateStore
from .pipeline.heuristics import NamingSwapHint
from .pipeline.upgrade import UpgradePipeline
from .recovery.actuator import Outcome, RecoveryActuator
from .recovery.escalator import FailureEscalator
from .scheduler import WatchdogScheduler
from .snapshots.store import SnapshotStore

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PRECONDITION = 2

DB_FILENAME = "upkeep.db"
SNAPSHOTS_DIRNAME = "snapshots"


@dataclass
class Components:
    """Everything a command needs, wired from one configuration."""

    config: ConfigManager
    reporter: Reporter
    state: StateStore
    events: EventLog
    metrics: MetricsTrend
    probe: HealthProbe
    snapshots: SnapshotStore
    actuator: RecoveryActuator
    escalator: FailureEscalator
    pipeline: UpgradePipeline
    scheduler: WatchdogScheduler


def build_components(config: ConfigManager, db: DatabaseManager, reporter: Reporter) -> Components:
    install_dir = config.path("paths.install_dir")
    config_file = config.path("paths.config_file")
    state_dir = config.path("paths.state_dir")

    state = StateStore(db)
    events = EventLog(db)
    metrics = MetricsTrend(db, max_samples=config.get("metrics.max_samples"))
    probe = HealthProbe(ProbeSettings.from_config(config))

    vcs = GitVersionControl(install_dir, remote=config.get("guard.remote"), branch=config.get("guard.branch"))
    packages = NodePackageManager(install_dir, timeout_seconds=config.get("guard.install_timeout_seconds"))
    supervisor = SystemdServiceSupervisor(
        unit=config.get("service.systemd_unit"),
        process_pattern=config.get("service.process_pattern"),
        start_command=list(config.get("service.start_command")),
        install_dir=install_dir,
        port=config.get("service.port"),
    )
    snapshots = SnapshotStore(
        state_dir / SNAPSHOTS_DIRNAME, install_dir, config_file, vcs, packages, probe.reachability
    )
    actuator = RecoveryActuator(
        state=state,
        events=events,
        probe=probe,
        supervisor=supervisor,
        vcs=vcs,
        packages=packages,
        snapshots=snapshots,
        config_file=config_file,
        restart_timeout_seconds=config.get("watchdog.restart_timeout_seconds"),
        settle_seconds=config.get("watchdog.rollback_settle_seconds"),
        reporter=reporter,
    )

    notifier = None
    if config.get("alerts.telegram_bot_token") and config.get("alerts.telegram_chat_id"):
        notifier = TelegramNotifier(config.get("alerts.telegram_bot_token"), config.get("alerts.telegram_chat_id"))
    alerts = AlertGate(
        state,
        notifier,
        enabled=config.get("alerts.enabled"),
        cooldown_seconds=config.get("alerts.cooldown_seconds"),
        warn_cooldown_seconds=config.get("alerts.warn_cooldown_seconds"),
    )

    escalator = FailureEscalator(
        probe=probe,
        state=state,
        actuator=actuator,
        metrics=metrics,
        alerts=alerts,
        fail_threshold=config.get("watchdog.fail_threshold"),
        cooldown_seconds=config.get("watchdog.cooldown_seconds"),
        growth_warn_pct=config.get("metrics.growth_warn_pct"),
        reporter=reporter,
    )
    pipeline = UpgradePipeline(
        snapshots=snapshots,
        actuator=actuator,
        vcs=vcs,
        packages=packages,
        supervisor=supervisor,
        probe=probe,
        install_dir=install_dir,
        config_file=config_file,
        rename_hint=NamingSwapHint(config.get("guard.rename_from"), config.get("guard.rename_to")),
        min_free_disk_mb=config.get("guard.min_free_disk_mb"),
        verify_timeout_seconds=config.get("guard.verify_timeout_seconds"),
        log_files=[Path(os.path.expanduser(p)) for p in config.get("service.log_files")],
        critical_modules=config.get("guard.critical_modules"),
        reporter=reporter,
    )

    environment = {}
    if config.config_file.exists():
        environment["UPKEEP_CONFIG"] = str(config.config_file.resolve())
    scheduler = WatchdogScheduler(
        exec_start=[sys.executable, "-m", "upkeep", "watchdog", "check"],
        state_dir=state_dir,
        interval_seconds=config.get("watchdog.interval_seconds"),
        environment=environment,
    )

    return Components(
        config=config,
        reporter=reporter,
        state=state,
        events=events,
        metrics=metrics,
        probe=probe,
        snapshots=snapshots,
        actuator=actuator,
        escalator=escalator,
        pipeline=pipeline,
        scheduler=scheduler,
    )


def _format_ts(value: Optional[int]) -> str:
    if value is None:
        return "never"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


async def watchdog_status(c: Components) -> int:
    r = c.reporter
    r.section("Watchdog status")
    if await c.state.exists():
        state = await c.state.load()
        r.info(f"Status: {state.status.value if state.status else 'unknown'}")
        r.info(f"Last check: {_format_ts(state.last_check_at)}")
        r.info(f"Last healthy: {_format_ts(state.last_healthy_at)}")
        r.info(f"Consecutive failures: {state.consecutive_failures}")
        r.info(f"Last action: {state.last_action.value} ({_format_ts(state.last_action_at)})")
        if state.last_issues:
            r.info(f"Last issues: {', '.join(state.last_issues)}")
    else:
        r.info("No watchdog state yet (run 'upkeep watchdog check' first)")

    summary = await c.metrics.summary()
    if summary is not None:
        latest = summary["latest"]
        r.line()
        r.info(f"Metrics: {summary['samples']} samples")
        r.info(
            f"  Latest: mem {latest.mem_used_pct:.0f}%, disk {latest.disk_used_pct:.0f}%, "
            f"service {latest.service_rss_mb}MB, aux {latest.aux_proc_mb}MB"
        )
        r.info(f"  Service RSS range: {summary['service_rss_min_mb']}-{summary['service_rss_max_mb']}MB")
        if summary["growth_pct"] is not None:
            r.info(f"  Service RSS growth: {summary['growth_pct']:.1f}%")

    r.line()
    kind = await c.scheduler.status()
    if kind:
        r.ok(f"Timer: active ({kind})")
    else:
        r.warn("Timer: not installed")

    recent = await c.events.tail(10)
    if recent:
        r.line()
        r.info("Recent events:")
        for entry in recent:
            r.line(f"  {format_event(entry)}")
    return EXIT_OK


async def run_watchdog(command: str, c: Components) -> int:
    if command == "check":
        report = await c.escalator.run_cycle()
        return report.exit_code
    if command == "install":
        kind = await c.scheduler.install()
        c.reporter.ok(f"Watchdog installed ({kind}, every {c.scheduler.interval_seconds}s)")
        return EXIT_OK
    if command == "uninstall":
        removed = await c.scheduler.uninstall()
        c.reporter.ok(f"Watchdog uninstalled ({', '.join(removed) or 'nothing registered'})")
        return EXIT_OK
    return await watchdog_status(c)


async def run_guard(command: str, c: Components, dry_run: bool = False) -> int:
    if command == "snapshot":
        await c.pipeline.snapshot()
        return EXIT_OK
    if command == "check":
        phase = await c.pipeline.check()
        return EXIT_OK if phase.ok else EXIT_PRECONDITION
    if command == "upgrade":
        report = await c.pipeline.upgrade(dry_run=dry_run)
        return report.exit_code
    if command == "verify":
        phase = await c.pipeline.verify()
        return EXIT_OK if phase.ok else EXIT_FAILED
    if command == "rollback":
        outcome = await c.pipeline.rollback()
        if outcome is Outcome.NO_SNAPSHOT:
            return EXIT_PRECONDITION
        return EXIT_OK if outcome is Outcome.RECOVERED else EXIT_FAILED
    await c.pipeline.status()
    return EXIT_OK


async def _run(args: argparse.Namespace, config: ConfigManager) -> int:
    db = DatabaseManager(config.path("paths.state_dir") / DB_FILENAME)
    await db.init_db()
    try:
        components = build_components(config, db, Reporter(quiet=args.quiet))
        if args.group == "watchdog":
            return await run_watchdog(args.command, components)
        return await run_guard(args.command, components, dry_run=getattr(args, "dry_run", False))
    finally:
        await db.close()


def _add_common_options(parser: argparse.ArgumentParser, suppress: bool = False) -> None:
    # Accepted before or after the group name.
    defaults = {"default": argparse.SUPPRESS} if suppress else {}
    parser.add_argument("--config", type=Path, help="TOML configuration file (default: $UPKEEP_CONFIG)", **defaults)
    parser.add_argument("--env-file", type=Path, help=".env file to load before the environment", **defaults)
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress console report", **defaults)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="upkeep",
        description="Service watchdog and guarded upgrades",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    _add_common_options(parser)

    groups = parser.add_subparsers(dest="group", required=True)

    watchdog = groups.add_parser("watchdog", help="Health checks with restart/rollback escalation")
    _add_common_options(watchdog, suppress=True)
    wd_commands = watchdog.add_subparsers(dest="command", required=True)
    wd_commands.add_parser("check", help="Run one health check cycle")
    wd_commands.add_parser("install", help="Register the periodic check with the host scheduler")
    wd_commands.add_parser("uninstall", help="Remove every scheduler registration")
    wd_commands.add_parser("status", help="Show watchdog state, metrics and recent events")

    guard = groups.add_parser("guard", help="Snapshot, upgrade, verify and roll back")
    _add_common_options(guard, suppress=True)
    guard_commands = guard.add_subparsers(dest="command", required=True)
    guard_commands.add_parser("snapshot", help="Capture current state")
    guard_commands.add_parser("check", help="Pre-upgrade checks")
    upgrade = guard_commands.add_parser("upgrade", help="Guarded upgrade")
    upgrade.add_argument("--dry-run", action="store_true", help="Stop after preflight")
    guard_commands.add_parser("verify", help="Post-upgrade verification")
    guard_commands.add_parser("rollback", help="Restore the latest snapshot")
    guard_commands.add_parser("status", help="Current install versus latest snapshot")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = initialize_config(args.config, args.env_file)
    except (OSError, ValueError) as e:
        print(f"upkeep: configuration error: {e}", file=sys.stderr)
        return EXIT_PRECONDITION

    configure_logging(config.get("logging.level"), config.path("logging.file_path"))
    logger.debug("command_started", group=args.group, command=args.command)

    try:
        return asyncio.run(_run(args, config))
    except CapabilityError as e:
        logger.error("command_precondition_failed", **e.to_dict())
        print(f"upkeep: {e}", file=sys.stderr)
        return EXIT_PRECONDITION


def watchdog_main() -> int:
    return main(["watchdog", *sys.argv[1:]])


def guard_main() -> int:
    return main(["guard", *sys.argv[1:]])
