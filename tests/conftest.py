"""Shared fixtures and in-memory fakes for the capability interfaces."""

import json
from pathlib import Path
from typing import Optional

import pytest

from upkeep.capabilities.process import CommandResult
from upkeep.gateway.alerts import AlertGate
from upkeep.observability.metrics import MetricsTrend
from upkeep.observability.models import IssueCode, MetricSample, ProbeResult, ResourceReport
from upkeep.persistence.db import DatabaseManager
from upkeep.persistence.events import EventLog
from upkeep.persistence.state import StateStore
from upkeep.recovery.actuator import RecoveryActuator
from upkeep.snapshots.store import SnapshotStore

OK = CommandResult(ok=True, returncode=0)


class FakeVCS:
    def __init__(self, revision: Optional[str] = "a" * 40, repo: bool = True):
        self.revision = revision
        self.repo = repo
        self.dirty_count = 0
        self.incoming_subjects: list[str] = []
        self.pull_result = OK
        self.pulled_revision = "b" * 40
        self.checkouts: list[str] = []
        self.pulls = 0

    def is_repo(self) -> bool:
        return self.repo

    async def head(self):
        return self.revision if self.repo else None

    async def head_summary(self):
        return f"{self.revision[:7]} current release" if self.repo else None

    async def status(self):
        return {
            "branch": "main",
            "ahead": 0,
            "behind": len(self.incoming_subjects),
            "changed": [f"file{i}" for i in range(self.dirty_count)],
            "untracked": [],
            "dirty_count": self.dirty_count,
        }

    async def fetch(self):
        return OK

    async def incoming(self):
        return list(self.incoming_subjects)

    async def pull(self):
        self.pulls += 1
        if self.pull_result.ok:
            self.revision = self.pulled_revision
        return self.pull_result

    async def checkout(self, revision: str):
        self.checkouts.append(revision)
        self.revision = revision
        return OK


class FakePackages:
    def __init__(self, install_dir: Path, version: Optional[str] = "1.0.0", tool: Optional[str] = "pnpm"):
        self.install_dir = install_dir
        self.version = version
        self.tool = tool
        self.build_script = True
        self.install_result = OK
        self.build_result = OK
        self.installs = 0
        self.builds = 0

    def name(self):
        return self.tool

    def read_version(self):
        return self.version

    def lockfile(self):
        path = self.install_dir / "pnpm-lock.yaml"
        return path if path.is_file() else None

    def has_build_script(self):
        return self.build_script

    async def install(self):
        self.installs += 1
        return self.install_result

    async def build(self):
        self.builds += 1
        return self.build_result


class FakeProbe:
    """Scriptable stand-in for HealthProbe."""

    def __init__(self):
        self.process_up = True
        self.http_up = True
        self.aux_ok = True
        self.recovers = False
        self.resources: Optional[ResourceReport] = None
        self.rss_mb = 300

    async def probe(self):
        issues = set()
        if not self.process_up:
            issues.add(IssueCode.PROCESS_DOWN)
        if not self.http_up:
            issues.add(IssueCode.HTTP_DOWN)
        if not self.aux_ok:
            issues.add(IssueCode.TELEGRAM_ERRORS)
        return ProbeResult(self.process_up, self.http_up, self.aux_ok, issues)

    async def sample_resources(self):
        if self.resources is not None:
            return self.resources
        sample = MetricSample(
            timestamp=1700000000,
            mem_used_pct=40.0,
            mem_avail_mb=4000,
            disk_used_pct=50.0,
            service_rss_mb=self.rss_mb,
            aux_proc_mb=0,
        )
        return ResourceReport(sample=sample)

    async def check_http(self):
        return self.http_up

    async def wait_for_http(self, timeout_seconds, interval_seconds=1.0):
        if self.recovers:
            self.process_up = self.http_up = True
        return self.http_up

    async def reachability(self):
        if self.http_up:
            return "running"
        return "process-found" if self.process_up else "not-running"


class FakeSupervisor:
    def __init__(self, probe: Optional[FakeProbe] = None):
        self.probe = probe
        self.calls: list[str] = []
        self.running = False
        self.start_brings_up = True

    async def restart(self):
        self.calls.append("restart")
        return "manual"

    async def stop(self):
        self.calls.append("stop")
        if self.probe is not None:
            self.probe.process_up = self.probe.http_up = False
        return "manual"

    async def start(self):
        self.calls.append("start")
        if self.probe is not None and self.start_brings_up:
            self.probe.process_up = self.probe.http_up = True
        return "manual"

    async def process_running(self):
        return self.running


@pytest.fixture(autouse=True)
def no_stop_settle(monkeypatch):
    monkeypatch.setattr("upkeep.recovery.actuator.STOP_SETTLE_SECONDS", 0)


@pytest.fixture
async def db(tmp_path):
    manager = DatabaseManager(tmp_path / "state" / "upkeep.db")
    await manager.init_db()
    yield manager
    await manager.close()


@pytest.fixture
def state(db):
    return StateStore(db)


@pytest.fixture
def events(db):
    return EventLog(db)


@pytest.fixture
def metrics(db):
    return MetricsTrend(db, max_samples=1440)


@pytest.fixture
def install_dir(tmp_path):
    path = tmp_path / "install"
    path.mkdir()
    (path / "package.json").write_text(json.dumps({"version": "1.0.0", "scripts": {"build": "tsc"}}))
    (path / "pnpm-lock.yaml").write_text("lockfileVersion: '6.0'\n")
    return path


@pytest.fixture
def service_config(tmp_path):
    path = tmp_path / "home" / "openclaw.json"
    path.parent.mkdir(parents=True)
    path.write_text(
        json.dumps(
            {
                "telegram": {"botToken": "x"},
                "channels": [{"type": "discord"}],
                "agents": {"primaryModel": "claude-sonnet"},
            },
            indent=2,
        )
    )
    return path


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def vcs():
    return FakeVCS()


@pytest.fixture
def packages(install_dir):
    return FakePackages(install_dir)


@pytest.fixture
def supervisor(probe):
    return FakeSupervisor(probe)


@pytest.fixture
def snapshots(tmp_path, install_dir, service_config, vcs, packages, probe):
    return SnapshotStore(tmp_path / "state" / "snapshots", install_dir, service_config, vcs, packages, probe.reachability)


@pytest.fixture
def actuator(state, events, probe, supervisor, vcs, packages, snapshots, service_config):
    return RecoveryActuator(
        state=state,
        events=events,
        probe=probe,
        supervisor=supervisor,
        vcs=vcs,
        packages=packages,
        snapshots=snapshots,
        config_file=service_config,
        restart_timeout_seconds=1,
        settle_seconds=0,
    )


@pytest.fixture
def alerts(state):
    return AlertGate(state, notifier=None, enabled=False)
