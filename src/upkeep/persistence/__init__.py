# Persistence Layer - SQLite state record, metrics log and event log

from .db import DatabaseManager
from .events import EventLog, format_event
from .migrate import apply_migrations
from .state import RecoveryAction, ServiceStatus, StateStore, WatchdogState

__all__ = [
    "DatabaseManager",
    "EventLog",
    "format_event",
    "apply_migrations",
    "RecoveryAction",
    "ServiceStatus",
    "StateStore",
    "WatchdogState",
]
