"""Filesystem and configuration inventories captured in snapshots."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

PLUGIN_SUFFIXES = (".plugin.json", ".plugin.js", ".plugin.mjs")
CHANNEL_KEYS = ("telegram", "discord", "slack", "whatsapp", "signal")


def _walk(root: Path):
    # os.walk does not descend into symlinked directories but still lists them in dirnames.
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        for name in dirnames + filenames:
            yield Path(dirpath) / name


def scan_plugin_artifacts(root: Path) -> list[str]:
    """Sorted paths of plugin manifests and modules under ``root``."""
    if not root.is_dir():
        return []
    return sorted(
        str(path)
        for path in _walk(root)
        if path.name.endswith(PLUGIN_SUFFIXES) and (path.is_file() or path.is_symlink())
    )


def scan_symlinks(root: Path) -> list[str]:
    """Sorted paths of every symbolic link under ``root``."""
    if not root.is_dir():
        return []
    return sorted(str(path) for path in _walk(root) if path.is_symlink())


def broken_symlinks(root: Path) -> list[tuple[str, str]]:
    """(link, target) for links under ``root`` whose target no longer exists."""
    broken = []
    for link in scan_symlinks(root):
        if not os.path.exists(link):
            try:
                target = os.readlink(link)
            except OSError:
                target = "?"
            broken.append((link, target))
    return broken


def load_config(path: Path) -> dict[str, Any]:
    """Parse the service configuration file.

    Raises:
        OSError: file missing or unreadable
        ValueError: not valid JSON, or not a JSON object
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("configuration root is not a JSON object")
    return data


def extract_channels(config: dict[str, Any]) -> list[str]:
    """Messaging channels enabled in the configuration."""
    channels = {key for key in CHANNEL_KEYS if config.get(key)}
    declared = config.get("channels")
    if declared is not None:
        entries = declared if isinstance(declared, list) else [declared]
        for entry in entries:
            if isinstance(entry, dict) and entry.get("type"):
                channels.add(str(entry["type"]))
    return sorted(channels)


def extract_primary_model(config: dict[str, Any]) -> Optional[str]:
    agents = config.get("agents")
    model = None
    if isinstance(agents, dict):
        model = agents.get("primaryModel")
    if not model:
        model = config.get("primaryModel")
    return str(model) if model else None
