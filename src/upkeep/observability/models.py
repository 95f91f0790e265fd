"""Observability data models.

Plain dataclasses exchanged between the probe, the metrics log and the
escalator. Nothing here touches the network or the database.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class IssueCode(str, Enum):
    PROCESS_DOWN = "process_down"
    HTTP_DOWN = "http_down"
    TELEGRAM_ERRORS = "telegram_errors"
    RESOURCE_WARN = "resource_warn"
    RESOURCE_CRIT = "resource_crit"


@dataclass
class ProbeResult:
    """Liveness signals from one probe run."""

    process_up: bool
    http_up: bool
    aux_channel_ok: bool
    issues: set[IssueCode] = field(default_factory=set)

    @property
    def healthy(self) -> bool:
        # The auxiliary channel is advisory only.
        return self.process_up and self.http_up


@dataclass(frozen=True)
class MetricSample:
    """One resource sample, as stored in the metrics log."""

    timestamp: int  # Unix epoch seconds
    mem_used_pct: float
    mem_avail_mb: int
    disk_used_pct: float
    service_rss_mb: int
    aux_proc_mb: int


@dataclass
class ResourceReport:
    """Resource sample plus its classification against thresholds."""

    sample: MetricSample
    warnings: list[str] = field(default_factory=list)
    criticals: list[str] = field(default_factory=list)
    aux_restarted: bool = False
    growth_pct: Optional[float] = None

    @property
    def issues(self) -> set[IssueCode]:
        issues: set[IssueCode] = set()
        if self.warnings:
            issues.add(IssueCode.RESOURCE_WARN)
        if self.criticals:
            issues.add(IssueCode.RESOURCE_CRIT)
        return issues


@dataclass
class ResourceThresholds:
    """Warn/critical limits for each sampled metric."""

    mem_warn_pct: int = 80
    mem_crit_pct: int = 90
    disk_warn_pct: int = 80
    disk_crit_pct: int = 90
    service_rss_warn_mb: int = 1024
    service_rss_crit_mb: int = 2048
    aux_warn_mb: int = 1024
    aux_crit_mb: int = 2048
