"""upkeep: watchdog and guarded upgrades for a long-running service."""

__version__ = "0.1.0"
