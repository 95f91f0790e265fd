"""Operator-facing output: console report and Telegram alerts."""

from .alerts import AlertGate, AlertLevel, Notifier, TelegramNotifier
from .console import Reporter

__all__ = ["AlertGate", "AlertLevel", "Notifier", "Reporter", "TelegramNotifier"]
