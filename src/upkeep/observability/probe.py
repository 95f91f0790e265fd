"""Liveness checks and resource sampling for the managed service.

Design principles:
- Every check is bounded by a timeout and reports failure instead of raising
- probe() is read-only
- sample_resources() has exactly one side effect: terminating the auxiliary
  browser process group when its aggregate memory is critical
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from pathlib import Path

import httpx
import psutil
import structlog

from ..capabilities.process import run_command
from ..capabilities.supervisor import find_processes, port_listening, rss_mb, terminate_processes
from ..config.manager import ConfigManager
from .models import IssueCode, MetricSample, ProbeResult, ResourceReport, ResourceThresholds

logger = structlog.get_logger(__name__)

JOURNAL_TIMEOUT_SECONDS = 15


@dataclass
class ProbeSettings:
    """Everything the probe needs to know about the service."""

    host: str = "127.0.0.1"
    port: int = 18789
    health_paths: list[str] = field(default_factory=lambda: ["/healthz", "/"])
    http_timeout_seconds: float = 10
    process_pattern: str = r"openclaw.*gateway|clawdbot.*gateway"
    systemd_unit: str = "clawdbot.service"
    install_dir: Path = Path("/opt/clawdbot")
    config_file: Path = Path("~/.openclaw/openclaw.json")
    channel_name: str = "telegram"
    channel_error_pattern: str = r"telegram.*error|telegram.*disconnect|grammY.*error|ETELEGRAM"
    channel_error_threshold: int = 3
    channel_window_minutes: int = 2
    aux_process_pattern: str = r"chrome|chromium|headless_shell"
    thresholds: ResourceThresholds = field(default_factory=ResourceThresholds)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @classmethod
    def from_config(cls, config: ConfigManager) -> "ProbeSettings":
        return cls(
            host=config.get("service.host"),
            port=config.get("service.port"),
            health_paths=list(config.get("service.health_paths")),
            http_timeout_seconds=config.get("service.http_timeout_seconds"),
            process_pattern=config.get("service.process_pattern"),
            systemd_unit=config.get("service.systemd_unit"),
            install_dir=config.path("paths.install_dir"),
            config_file=config.path("paths.config_file"),
            channel_name=config.get("channel.name"),
            channel_error_pattern=config.get("channel.error_pattern"),
            channel_error_threshold=config.get("channel.error_threshold"),
            channel_window_minutes=config.get("channel.window_minutes"),
            aux_process_pattern=config.get("resources.aux_process_pattern"),
            thresholds=ResourceThresholds(
                mem_warn_pct=config.get("resources.mem_warn_pct"),
                mem_crit_pct=config.get("resources.mem_crit_pct"),
                disk_warn_pct=config.get("resources.disk_warn_pct"),
                disk_crit_pct=config.get("resources.disk_crit_pct"),
                service_rss_warn_mb=config.get("resources.service_rss_warn_mb"),
                service_rss_crit_mb=config.get("resources.service_rss_crit_mb"),
                aux_warn_mb=config.get("resources.aux_warn_mb"),
                aux_crit_mb=config.get("resources.aux_crit_mb"),
            ),
        )


def count_error_lines(text: str, pattern: str) -> int:
    regex = re.compile(pattern, re.IGNORECASE)
    return sum(1 for line in text.splitlines() if regex.search(line))


def _classify(
    label: str,
    value: float,
    warn: float,
    crit: float,
    unit: str,
    warnings: list[str],
    criticals: list[str],
) -> None:
    if value >= crit:
        criticals.append(f"{label} {value:.0f}{unit} >= {crit}{unit}")
    elif value >= warn:
        warnings.append(f"{label} {value:.0f}{unit} >= {warn}{unit}")


class HealthProbe:
    """Independent liveness checks plus resource sampling."""

    def __init__(self, settings: ProbeSettings):
        self.settings = settings

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def check_process(self) -> bool:
        """Service process found by pattern, or its port is bound."""
        try:
            if await asyncio.to_thread(find_processes, self.settings.process_pattern):
                return True
            return await asyncio.to_thread(port_listening, self.settings.port)
        except Exception as exc:  # noqa: BLE001
            logger.debug("process_check_failed", error=str(exc))
            return False

    async def check_http(self) -> bool:
        """Any configured health path answers without an HTTP error."""
        async with httpx.AsyncClient(timeout=self.settings.http_timeout_seconds) as client:
            for path in self.settings.health_paths:
                url = f"{self.settings.base_url}{path}"
                try:
                    response = await client.get(url)
                except httpx.HTTPError as exc:
                    logger.debug("http_check_failed", url=url, error=str(exc))
                    continue
                if not response.is_error:
                    return True
                logger.debug("http_check_status", url=url, status_code=response.status_code)
        return False

    def channel_configured(self) -> bool:
        try:
            raw = self.settings.config_file.read_bytes()
        except OSError:
            return False
        # Raw bytes: the file need not be valid UTF-8.
        return f'"{self.settings.channel_name}"'.encode() in raw

    async def check_aux_channel(self) -> bool:
        """Recent journal error count for the auxiliary channel stays within threshold.

        Skipped (reported healthy) when the channel is not configured or the
        journal cannot be read.
        """
        if not self.channel_configured():
            return True
        result = await run_command(
            [
                "journalctl",
                "-u",
                self.settings.systemd_unit,
                "--since",
                f"{self.settings.channel_window_minutes} minutes ago",
                "--no-pager",
            ],
            timeout_seconds=JOURNAL_TIMEOUT_SECONDS,
        )
        if not result.ok:
            logger.debug("channel_journal_unavailable", error_code=result.error_code)
            return True
        errors = count_error_lines(result.stdout, self.settings.channel_error_pattern)
        if errors > self.settings.channel_error_threshold:
            logger.info(
                "channel_errors_detected",
                channel=self.settings.channel_name,
                error_lines=errors,
                threshold=self.settings.channel_error_threshold,
            )
            return False
        return True

    async def probe(self) -> ProbeResult:
        """Run all liveness checks. Never mutates state."""
        process_up, http_up, aux_ok = await asyncio.gather(
            self.check_process(),
            self.check_http(),
            self.check_aux_channel(),
        )
        issues: set[IssueCode] = set()
        if not process_up:
            issues.add(IssueCode.PROCESS_DOWN)
        if not http_up:
            issues.add(IssueCode.HTTP_DOWN)
        if not aux_ok:
            issues.add(IssueCode.TELEGRAM_ERRORS)
        result = ProbeResult(
            process_up=process_up,
            http_up=http_up,
            aux_channel_ok=aux_ok,
            issues=issues,
        )
        logger.debug(
            "probe_completed",
            process_up=process_up,
            http_up=http_up,
            aux_channel_ok=aux_ok,
        )
        return result

    async def wait_for_http(self, timeout_seconds: float, interval_seconds: float = 1.0) -> bool:
        """Poll HTTP health until it answers or ``timeout_seconds`` elapse."""
        deadline = time.monotonic() + timeout_seconds
        while True:
            if await self.check_http():
                return True
            if time.monotonic() + interval_seconds > deadline:
                return False
            await asyncio.sleep(interval_seconds)

    async def reachability(self) -> str:
        """Service status label: running, process-found or not-running."""
        if await self.check_http():
            return "running"
        if await self.check_process():
            return "process-found"
        return "not-running"

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def _collect_sample(self) -> tuple[MetricSample, list[psutil.Process]]:
        memory = psutil.virtual_memory()
        mem_used_pct = (memory.total - memory.available) / memory.total * 100 if memory.total else 0.0
        try:
            disk_used_pct = psutil.disk_usage(str(self.settings.install_dir)).percent
        except OSError:
            disk_used_pct = psutil.disk_usage("/").percent
        service_procs = find_processes(self.settings.process_pattern)
        aux_procs = find_processes(self.settings.aux_process_pattern)
        sample = MetricSample(
            timestamp=int(time.time()),
            mem_used_pct=round(mem_used_pct, 1),
            mem_avail_mb=int(memory.available // (1024 * 1024)),
            disk_used_pct=round(float(disk_used_pct), 1),
            service_rss_mb=rss_mb(service_procs),
            aux_proc_mb=rss_mb(aux_procs),
        )
        return sample, aux_procs

    def classify(self, sample: MetricSample) -> tuple[list[str], list[str]]:
        """Compare each metric with its warn/critical thresholds."""
        t = self.settings.thresholds
        warnings: list[str] = []
        criticals: list[str] = []
        _classify("memory", sample.mem_used_pct, t.mem_warn_pct, t.mem_crit_pct, "%", warnings, criticals)
        _classify("disk", sample.disk_used_pct, t.disk_warn_pct, t.disk_crit_pct, "%", warnings, criticals)
        _classify("service_rss", sample.service_rss_mb, t.service_rss_warn_mb, t.service_rss_crit_mb,
                  "MB", warnings, criticals)
        _classify("aux_processes", sample.aux_proc_mb, t.aux_warn_mb, t.aux_crit_mb, "MB", warnings, criticals)
        return warnings, criticals

    async def sample_resources(self) -> ResourceReport:
        """Sample and classify resources; terminate the auxiliary group on a critical breach."""
        sample, aux_procs = await asyncio.to_thread(self._collect_sample)
        warnings, criticals = self.classify(sample)
        report = ResourceReport(sample=sample, warnings=warnings, criticals=criticals)

        if sample.aux_proc_mb >= self.settings.thresholds.aux_crit_mb and aux_procs:
            count = await asyncio.to_thread(terminate_processes, aux_procs)
            report.aux_restarted = count > 0
            logger.warning(
                "aux_processes_restarted",
                processes=count,
                aux_proc_mb=sample.aux_proc_mb,
                threshold_mb=self.settings.thresholds.aux_crit_mb,
            )

        logger.debug(
            "resources_sampled",
            mem_used_pct=sample.mem_used_pct,
            disk_used_pct=sample.disk_used_pct,
            service_rss_mb=sample.service_rss_mb,
            aux_proc_mb=sample.aux_proc_mb,
            warnings=len(warnings),
            criticals=len(criticals),
        )
        return report
