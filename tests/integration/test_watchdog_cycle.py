"""Integration tests for the watchdog cycle: counter, cooldown and escalation."""

import pytest

from upkeep.gateway.alerts import AlertGate
from upkeep.gateway.console import Reporter
from upkeep.observability.models import IssueCode, MetricSample, ResourceReport
from upkeep.persistence.state import RecoveryAction, ServiceStatus
from upkeep.recovery.actuator import Outcome
from upkeep.recovery.escalator import FailureEscalator


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, text):
        self.sent.append(text)
        return True


def _escalator(probe, state, actuator, metrics, alerts, cooldown_seconds=0):
    return FailureEscalator(
        probe=probe,
        state=state,
        actuator=actuator,
        metrics=metrics,
        alerts=alerts,
        fail_threshold=3,
        cooldown_seconds=cooldown_seconds,
        reporter=Reporter(quiet=True),
    )


@pytest.fixture
def down(probe):
    probe.process_up = probe.http_up = False
    return probe


@pytest.mark.asyncio
async def test_healthy_cycle_resets_counter(probe, state, actuator, metrics, alerts):
    await state.set("consecutive_failures", 2)
    report = await _escalator(probe, state, actuator, metrics, alerts).run_cycle()
    record = await state.load()
    assert report.exit_code == 0
    assert record.status is ServiceStatus.HEALTHY
    assert record.consecutive_failures == 0
    assert record.last_healthy_at == record.last_check_at
    assert await metrics.count() == 1


@pytest.mark.asyncio
async def test_channel_errors_do_not_count(probe, state, actuator, metrics, alerts):
    probe.aux_ok = False
    report = await _escalator(probe, state, actuator, metrics, alerts).run_cycle()
    assert report.exit_code == 0
    assert report.issues == {IssueCode.TELEGRAM_ERRORS}
    assert (await state.load()).last_issues == ["telegram_errors"]


@pytest.mark.asyncio
async def test_below_threshold_no_action(down, state, actuator, metrics, alerts, supervisor):
    escalator = _escalator(down, state, actuator, metrics, alerts)
    for expected in (1, 2):
        report = await escalator.run_cycle()
        assert report.consecutive_failures == expected
        assert report.exit_code == 1
        assert report.action is None
    assert supervisor.calls == []


@pytest.mark.asyncio
async def test_restart_at_threshold_recovers(down, state, actuator, metrics, alerts):
    escalator = _escalator(down, state, actuator, metrics, alerts)
    await escalator.run_cycle()
    await escalator.run_cycle()
    down.recovers = True

    report = await escalator.run_cycle()

    assert report.action is RecoveryAction.RESTART
    assert report.outcome is Outcome.RECOVERED
    assert report.status is ServiceStatus.RECOVERED
    assert report.exit_code == 0
    record = await state.load()
    assert record.consecutive_failures == 0
    assert record.status is ServiceStatus.RECOVERED


@pytest.mark.asyncio
async def test_cooldown_defers_second_action(down, state, actuator, metrics, alerts, supervisor):
    escalator = _escalator(down, state, actuator, metrics, alerts, cooldown_seconds=300)
    for _ in range(3):
        await escalator.run_cycle()
    assert supervisor.calls == ["restart"]

    report = await escalator.run_cycle()

    assert report.action is None
    assert 0 < report.cooldown_remaining <= 300
    assert report.consecutive_failures == 4
    assert supervisor.calls == ["restart"]


@pytest.mark.asyncio
async def test_escalates_to_rollback_without_snapshot(down, state, actuator, metrics, alerts, supervisor):
    escalator = _escalator(down, state, actuator, metrics, alerts)
    actions = []
    for _ in range(6):
        actions.append((await escalator.run_cycle()).action)

    assert actions == [None, None, RecoveryAction.RESTART, RecoveryAction.RESTART,
                       RecoveryAction.RESTART, RecoveryAction.ROLLBACK]
    assert supervisor.calls == ["restart", "restart", "restart"]
    record = await state.load()
    assert record.consecutive_failures == 6
    assert record.last_action is RecoveryAction.RESTART


@pytest.mark.asyncio
async def test_rollback_recovers_from_snapshot(probe, state, actuator, metrics, alerts, snapshots, vcs):
    snap = await snapshots.snapshot()
    vcs.revision = "d" * 40
    probe.process_up = probe.http_up = False
    escalator = _escalator(probe, state, actuator, metrics, alerts)

    for _ in range(5):
        await escalator.run_cycle()
    report = await escalator.run_cycle()

    assert report.action is RecoveryAction.ROLLBACK
    assert report.outcome is Outcome.RECOVERED
    assert report.status is ServiceStatus.ROLLED_BACK
    assert report.exit_code == 0
    assert vcs.revision == snap.revision
    record = await state.load()
    assert record.consecutive_failures == 0
    assert record.status is ServiceStatus.ROLLED_BACK


@pytest.mark.asyncio
async def test_recovery_sends_critical_alert(down, state, actuator, metrics):
    notifier = RecordingNotifier()
    gate = AlertGate(state, notifier, enabled=True, hostname="box1")
    escalator = _escalator(down, state, actuator, metrics, gate)
    down.recovers = True
    await state.set("consecutive_failures", 2)

    await escalator.run_cycle()

    assert notifier.sent == ["[CRITICAL] box1: service down, recovered by restart"]


@pytest.mark.asyncio
async def test_resource_breach_is_advisory(probe, state, actuator, metrics, alerts):
    sample = MetricSample(
        timestamp=1700000000,
        mem_used_pct=95.0,
        mem_avail_mb=100,
        disk_used_pct=50.0,
        service_rss_mb=300,
        aux_proc_mb=3000,
    )
    probe.resources = ResourceReport(sample=sample, criticals=["memory 95% >= 90%"], aux_restarted=True)

    report = await _escalator(probe, state, actuator, metrics, alerts).run_cycle()

    assert report.exit_code == 0
    assert IssueCode.RESOURCE_CRIT in report.issues
    record = await state.load()
    assert record.consecutive_failures == 0
    assert record.last_resource_cleanup_at is not None


@pytest.mark.asyncio
async def test_sampling_failure_does_not_break_cycle(probe, state, actuator, metrics, alerts):
    async def broken():
        raise RuntimeError("psutil unavailable")

    probe.sample_resources = broken
    report = await _escalator(probe, state, actuator, metrics, alerts).run_cycle()
    assert report.resources is None
    assert report.exit_code == 0
