"""Guarded upgrade pipeline: preflight, upgrade, verify, rollback."""

from .heuristics import NamingSwapHint, RenameHint, is_breaking_change
from .upgrade import PhaseReport, UpgradePipeline, UpgradeReport

__all__ = [
    "NamingSwapHint",
    "PhaseReport",
    "RenameHint",
    "UpgradePipeline",
    "UpgradeReport",
    "is_breaking_change",
]
