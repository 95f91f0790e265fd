"""Point-in-time captures of the service's on-disk state.

Layout under the snapshots directory::

    snapshot-YYYYmmdd-HHMMSS/       one directory per capture, never modified
        manifest.json               version, revision, status, channels, model
        config.json                 copy of the service configuration
        <lockfile>                  copy of the dependency lockfile
        plugin-files.txt            sorted plugin artifact inventory
        symlinks.txt                sorted symlink inventory
    latest -> snapshot-...          the single rollback target
"""

from __future__ import annotations

import json
import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional

import structlog

from ..capabilities.packages import PackageManager
from ..capabilities.vcs import VersionControl
from .inventory import (
    extract_channels,
    extract_primary_model,
    load_config,
    scan_plugin_artifacts,
    scan_symlinks,
)

logger = structlog.get_logger(__name__)

SNAPSHOT_PREFIX = "snapshot-"
LATEST_LINK = "latest"
MANIFEST = "manifest.json"
CONFIG_COPY = "config.json"
PLUGIN_INVENTORY = "plugin-files.txt"
SYMLINK_INVENTORY = "symlinks.txt"


@dataclass(frozen=True)
class Snapshot:
    """A captured snapshot as read back from disk."""

    id: str
    path: Path
    created_at: float
    version: str
    revision: Optional[str]
    revision_summary: Optional[str]
    service_status: str
    channels: tuple[str, ...] = ()
    primary_model: Optional[str] = None
    config_copy: Optional[Path] = None
    lockfile_copy: Optional[Path] = None
    plugin_artifacts: tuple[str, ...] = field(default_factory=tuple)
    symlinks: tuple[str, ...] = field(default_factory=tuple)

    @property
    def created_label(self) -> str:
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _write_lines(path: Path, lines: list[str]) -> None:
    path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")


def _read_lines(path: Path) -> tuple[str, ...]:
    try:
        return tuple(line for line in path.read_text(encoding="utf-8").splitlines() if line)
    except OSError:
        return ()


class SnapshotStore:
    """Captures, lists and resolves snapshots in ``root``."""

    def __init__(
        self,
        root: str | Path,
        install_dir: str | Path,
        config_file: str | Path,
        vcs: VersionControl,
        packages: PackageManager,
        reachability: Callable[[], Awaitable[str]],
    ):
        self.root = Path(root)
        self.install_dir = Path(install_dir)
        self.config_file = Path(config_file)
        self.vcs = vcs
        self.packages = packages
        self.reachability = reachability

    @property
    def latest_link(self) -> Path:
        return self.root / LATEST_LINK

    def _new_snapshot_dir(self) -> Path:
        base = f"{SNAPSHOT_PREFIX}{datetime.now().strftime('%Y%m%d-%H%M%S')}"
        candidate = self.root / base
        suffix = 1
        # Same-second collision: append a counter
        while candidate.exists():
            candidate = self.root / f"{base}-{suffix}"
            suffix += 1
        candidate.mkdir(parents=True)
        return candidate

    async def snapshot(self) -> Snapshot:
        """Capture current state and repoint ``latest`` at it.

        Missing optional inputs (no git checkout, no config, no lockfile) are
        recorded as absent.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        snap_dir = self._new_snapshot_dir()

        version = self.packages.read_version() or "unknown"
        revision = await self.vcs.head()
        revision_summary = await self.vcs.head_summary()

        config_copied = False
        channels: list[str] = []
        primary_model: Optional[str] = None
        if self.config_file.is_file():
            shutil.copyfile(self.config_file, snap_dir / CONFIG_COPY)
            config_copied = True
            try:
                config = load_config(self.config_file)
            except (OSError, ValueError) as exc:
                logger.warning("snapshot_config_unparseable", config_file=str(self.config_file), error=str(exc))
            else:
                channels = extract_channels(config)
                primary_model = extract_primary_model(config)
        else:
            logger.warning("snapshot_config_missing", config_file=str(self.config_file))

        lockfile_name: Optional[str] = None
        lockfile = self.packages.lockfile()
        if lockfile is not None:
            shutil.copyfile(lockfile, snap_dir / lockfile.name)
            lockfile_name = lockfile.name

        plugin_artifacts = scan_plugin_artifacts(self.install_dir)
        symlinks = scan_symlinks(self.install_dir)
        _write_lines(snap_dir / PLUGIN_INVENTORY, plugin_artifacts)
        _write_lines(snap_dir / SYMLINK_INVENTORY, symlinks)

        service_status = await self.reachability()

        manifest = {
            "id": snap_dir.name,
            "created_at": time.time(),
            "version": version,
            "revision": revision,
            "revision_summary": revision_summary,
            "service_status": service_status,
            "channels": channels,
            "primary_model": primary_model,
            "config_file": str(self.config_file),
            "config_copied": config_copied,
            "lockfile": lockfile_name,
        }
        with open(snap_dir / MANIFEST, "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)

        self._repoint_latest(snap_dir)

        logger.info(
            "snapshot_created",
            snapshot_id=snap_dir.name,
            version=version,
            revision=revision,
            plugin_artifacts=len(plugin_artifacts),
            symlinks=len(symlinks),
            service_status=service_status,
        )
        return self.load(snap_dir)

    def _repoint_latest(self, snap_dir: Path) -> None:
        tmp_link = self.root / f".{LATEST_LINK}.{os.getpid()}"
        if tmp_link.is_symlink() or tmp_link.exists():
            tmp_link.unlink()
        os.symlink(snap_dir.name, tmp_link)
        os.replace(tmp_link, self.latest_link)

    def load(self, snap_dir: Path) -> Snapshot:
        """Read a snapshot directory back into a Snapshot.

        Raises:
            OSError / ValueError: manifest missing or corrupt
        """
        with open(snap_dir / MANIFEST, encoding="utf-8") as f:
            manifest = json.load(f)
        config_copy = snap_dir / CONFIG_COPY
        lockfile_name = manifest.get("lockfile")
        return Snapshot(
            id=manifest.get("id", snap_dir.name),
            path=snap_dir,
            created_at=float(manifest.get("created_at", 0)),
            version=manifest.get("version") or "unknown",
            revision=manifest.get("revision"),
            revision_summary=manifest.get("revision_summary"),
            service_status=manifest.get("service_status") or "unknown",
            channels=tuple(manifest.get("channels") or ()),
            primary_model=manifest.get("primary_model"),
            config_copy=config_copy if config_copy.is_file() else None,
            lockfile_copy=(snap_dir / lockfile_name) if lockfile_name else None,
            plugin_artifacts=_read_lines(snap_dir / PLUGIN_INVENTORY),
            symlinks=_read_lines(snap_dir / SYMLINK_INVENTORY),
        )

    def latest(self) -> Optional[Snapshot]:
        """The snapshot ``latest`` points at, or None."""
        if not self.latest_link.is_symlink():
            return None
        target = self.latest_link.resolve()
        try:
            return self.load(target)
        except (OSError, ValueError) as exc:
            logger.warning("latest_snapshot_unreadable", target=str(target), error=str(exc))
            return None

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        snap_dir = self.root / snapshot_id
        if not snapshot_id.startswith(SNAPSHOT_PREFIX) or not snap_dir.is_dir():
            return None
        try:
            return self.load(snap_dir)
        except (OSError, ValueError):
            return None

    def list(self) -> list[Snapshot]:
        """All readable snapshots, newest first. Nothing is pruned."""
        if not self.root.is_dir():
            return []
        snapshots = []
        for snap_dir in self.root.glob(f"{SNAPSHOT_PREFIX}*"):
            if not snap_dir.is_dir() or snap_dir.is_symlink():
                continue
            try:
                snapshots.append(self.load(snap_dir))
            except (OSError, ValueError) as exc:
                logger.warning("snapshot_unreadable", path=str(snap_dir), error=str(exc))
        snapshots.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return snapshots
