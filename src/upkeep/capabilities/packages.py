"""Dependency installer capability (pnpm, falling back to npm)."""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Optional, Protocol

import structlog

from .process import CommandResult, run_command

logger = structlog.get_logger(__name__)

LOCKFILES = ("pnpm-lock.yaml", "package-lock.json")


class PackageManager(Protocol):
    """Installs dependencies and runs the build for the service checkout."""

    def name(self) -> Optional[str]: ...

    def read_version(self) -> Optional[str]: ...

    def lockfile(self) -> Optional[Path]: ...

    def has_build_script(self) -> bool: ...

    async def install(self) -> CommandResult: ...

    async def build(self) -> CommandResult: ...


class NodePackageManager:
    """pnpm/npm driver for a Node service checkout."""

    def __init__(self, install_dir: str | Path, timeout_seconds: int = 600):
        self.install_dir = Path(install_dir)
        self.timeout_seconds = timeout_seconds

    def name(self) -> Optional[str]:
        for candidate in ("pnpm", "npm"):
            if shutil.which(candidate):
                return candidate
        return None

    def _manifest(self) -> Optional[dict]:
        manifest = self.install_dir / "package.json"
        try:
            with open(manifest, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.debug("package_manifest_unreadable", path=str(manifest), error=str(exc))
            return None
        return data if isinstance(data, dict) else None

    def read_version(self) -> Optional[str]:
        manifest = self._manifest()
        if manifest is None:
            return None
        version = manifest.get("version")
        return str(version) if version else None

    def lockfile(self) -> Optional[Path]:
        for name in LOCKFILES:
            candidate = self.install_dir / name
            if candidate.is_file():
                return candidate
        return None

    def has_build_script(self) -> bool:
        manifest = self._manifest() or {}
        scripts = manifest.get("scripts")
        return isinstance(scripts, dict) and "build" in scripts

    def _missing(self) -> CommandResult:
        return CommandResult(
            ok=False,
            returncode=None,
            stderr="No package manager found (need pnpm or npm)",
            error_code="command_not_found",
        )

    async def install(self) -> CommandResult:
        tool = self.name()
        if tool is None:
            return self._missing()
        result = await run_command([tool, "install"], cwd=self.install_dir, timeout_seconds=self.timeout_seconds)
        logger.info("dependencies_installed", tool=tool, ok=result.ok, error_code=result.error_code)
        return result

    async def build(self) -> CommandResult:
        tool = self.name()
        if tool is None:
            return self._missing()
        result = await run_command([tool, "run", "build"], cwd=self.install_dir, timeout_seconds=self.timeout_seconds)
        logger.info("build_finished", tool=tool, ok=result.ok, error_code=result.error_code)
        return result
