"""Failure escalation and remedial actions."""

from .actuator import Outcome, RecoveryActuator
from .escalator import CycleReport, FailureEscalator

__all__ = ["CycleReport", "FailureEscalator", "Outcome", "RecoveryActuator"]
