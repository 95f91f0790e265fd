"""Snapshot capture and lookup."""

from .store import Snapshot, SnapshotStore

__all__ = ["Snapshot", "SnapshotStore"]
