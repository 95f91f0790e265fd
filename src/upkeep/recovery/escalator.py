"""Failure escalation for one watchdog cycle.

Liveness (process + HTTP) drives a counter of consecutive failed checks. At
the threshold the escalator acts: restart first, rollback once a restart has
already been tried and failures reach twice the threshold. A cooldown keeps
actions at least ``cooldown_seconds`` apart.

Resource sampling runs alongside as an advisory channel. It feeds the
metrics log and alerts but never moves the failure counter.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog

from ..gateway.alerts import AlertGate, AlertLevel
from ..gateway.console import Reporter
from ..observability.metrics import MetricsTrend
from ..observability.models import IssueCode, ProbeResult, ResourceReport
from ..observability.probe import HealthProbe
from ..persistence.state import RecoveryAction, ServiceStatus, StateStore
from .actuator import Outcome, RecoveryActuator

logger = structlog.get_logger(__name__)

_OK_STATUSES = (ServiceStatus.HEALTHY, ServiceStatus.RECOVERED, ServiceStatus.ROLLED_BACK)


@dataclass
class CycleReport:
    """What one watchdog cycle saw and did."""

    probe: ProbeResult
    status: ServiceStatus
    consecutive_failures: int
    issues: set[IssueCode] = field(default_factory=set)
    resources: Optional[ResourceReport] = None
    action: Optional[RecoveryAction] = None
    outcome: Optional[Outcome] = None
    cooldown_remaining: Optional[int] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.status in _OK_STATUSES else 1


class FailureEscalator:
    def __init__(
        self,
        probe: HealthProbe,
        state: StateStore,
        actuator: RecoveryActuator,
        metrics: MetricsTrend,
        alerts: AlertGate,
        fail_threshold: int = 3,
        cooldown_seconds: int = 300,
        growth_warn_pct: float = 20,
        reporter: Optional[Reporter] = None,
    ):
        self.probe = probe
        self.state = state
        self.actuator = actuator
        self.metrics = metrics
        self.alerts = alerts
        self.fail_threshold = fail_threshold
        self.cooldown_seconds = cooldown_seconds
        self.growth_warn_pct = growth_warn_pct
        self.reporter = reporter or Reporter(quiet=True)

    def choose_action(self, last_action: RecoveryAction, failures: int) -> RecoveryAction:
        if last_action != RecoveryAction.RESTART or failures < 2 * self.fail_threshold:
            return RecoveryAction.RESTART
        return RecoveryAction.ROLLBACK

    def _report_probe(self, result: ProbeResult) -> None:
        if result.process_up:
            self.reporter.ok("Process: running")
        else:
            self.reporter.fail("Process: not found")
        if result.http_up:
            self.reporter.ok("HTTP: responding")
        else:
            self.reporter.fail("HTTP: not responding")
        if result.aux_channel_ok:
            self.reporter.ok("Channel: OK")
        else:
            self.reporter.warn("Channel: errors detected")

    async def check_resources(self, now: int) -> Optional[ResourceReport]:
        """Sample, record and classify resources; alert on breaches."""
        try:
            report = await self.probe.sample_resources()
        except Exception as exc:  # noqa: BLE001
            logger.debug("resource_sampling_failed", error=str(exc))
            self.reporter.warn("Resources: sampling failed")
            return None

        sample = report.sample
        # Growth is measured against history, before this sample joins it
        report.growth_pct = await self.metrics.detect_growth(sample.service_rss_mb)
        await self.metrics.record(sample)

        if report.growth_pct is not None and report.growth_pct > self.growth_warn_pct:
            report.warnings.append(
                f"service_rss grew {report.growth_pct:.0f}% over the last samples (possible leak)"
            )

        self.reporter.info(
            f"Resources: mem {sample.mem_used_pct:.0f}% ({sample.mem_avail_mb}MB free), "
            f"disk {sample.disk_used_pct:.0f}%, service {sample.service_rss_mb}MB, "
            f"aux {sample.aux_proc_mb}MB"
        )
        for message in report.criticals:
            self.reporter.fail(f"Resource critical: {message}")
        for message in report.warnings:
            self.reporter.warn(f"Resource warning: {message}")

        if report.aux_restarted:
            await self.state.set("last_resource_cleanup_at", now)
            self.reporter.warn("Auxiliary processes terminated (memory critical)")

        if report.criticals:
            await self.alerts.send(AlertLevel.CRITICAL, "; ".join(report.criticals), now=now)
        elif report.warnings:
            await self.alerts.send(AlertLevel.WARNING, "; ".join(report.warnings), now=now)
        return report

    async def run_cycle(self) -> CycleReport:
        """Run one check and, when warranted, one recovery action."""
        now = int(time.time())
        self.reporter.section(f"Watchdog check {datetime.fromtimestamp(now):%Y-%m-%d %H:%M:%S}")

        result = await self.probe.probe()
        self._report_probe(result)
        resources = await self.check_resources(now)
        issues = set(result.issues)
        if resources is not None:
            issues |= resources.issues

        if result.healthy:
            await self.state.update(
                status=ServiceStatus.HEALTHY,
                consecutive_failures=0,
                last_healthy_at=now,
                last_check_at=now,
                last_issues=issues,
            )
            self.reporter.ok("Service healthy")
            logger.info("watchdog_healthy", issues=sorted(i.value for i in issues))
            return CycleReport(
                probe=result,
                status=ServiceStatus.HEALTHY,
                consecutive_failures=0,
                issues=issues,
                resources=resources,
            )

        state = await self.state.load()
        failures = state.consecutive_failures + 1
        await self.state.update(
            consecutive_failures=failures,
            last_check_at=now,
            status=ServiceStatus.UNHEALTHY,
            last_issues=issues,
        )
        self.reporter.warn(f"Unhealthy! Consecutive failures: {failures} / {self.fail_threshold}")
        logger.warning(
            "watchdog_unhealthy",
            consecutive_failures=failures,
            threshold=self.fail_threshold,
            issues=sorted(i.value for i in issues),
        )
        report = CycleReport(
            probe=result,
            status=ServiceStatus.UNHEALTHY,
            consecutive_failures=failures,
            issues=issues,
            resources=resources,
        )

        if failures < self.fail_threshold:
            return report

        self.reporter.fail(f"Threshold reached ({failures} failures). Taking action...")
        if state.last_action_at is not None:
            elapsed = now - state.last_action_at
            if elapsed < self.cooldown_seconds:
                report.cooldown_remaining = self.cooldown_seconds - elapsed
                self.reporter.warn(
                    f"Last action was {elapsed}s ago (cooldown: {self.cooldown_seconds}s). Waiting..."
                )
                logger.info("recovery_cooldown", elapsed_seconds=elapsed, cooldown_seconds=self.cooldown_seconds)
                return report

        action = self.choose_action(state.last_action, failures)
        if action is RecoveryAction.RESTART:
            outcome = await self.actuator.restart()
        else:
            outcome = await self.actuator.rollback()
        report.action = action
        report.outcome = outcome
        logger.info("recovery_action_finished", action=action.value, outcome=outcome.value)

        if outcome is Outcome.RECOVERED:
            report.consecutive_failures = 0
            report.status = (
                ServiceStatus.RECOVERED if action is RecoveryAction.RESTART else ServiceStatus.ROLLED_BACK
            )
            await self.alerts.send(AlertLevel.CRITICAL, f"service down, recovered by {action.value}", now=now)
        else:
            await self.alerts.send(
                AlertLevel.CRITICAL,
                f"service down after {failures} checks, {action.value} result: {outcome.value}",
                now=now,
            )
        return report
