"""Observability subsystem for upkeep.

probe: liveness checks and resource sampling
metrics: bounded resource sample log and growth heuristic
log_setup: structlog configuration
"""

from .metrics import MetricsTrend
from .models import IssueCode, MetricSample, ProbeResult, ResourceReport, ResourceThresholds
from .probe import HealthProbe, ProbeSettings

__all__ = [
    "HealthProbe",
    "IssueCode",
    "MetricSample",
    "MetricsTrend",
    "ProbeResult",
    "ProbeSettings",
    "ResourceReport",
    "ResourceThresholds",
]
