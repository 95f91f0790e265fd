"""Version control capability (git)."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol

import structlog

from .process import CommandResult, run_command

logger = structlog.get_logger(__name__)


class VersionControl(Protocol):
    """Operations the snapshot and upgrade code needs from a checkout."""

    def is_repo(self) -> bool: ...

    async def head(self) -> Optional[str]: ...

    async def head_summary(self) -> Optional[str]: ...

    async def status(self) -> Optional[dict]: ...

    async def fetch(self) -> CommandResult: ...

    async def incoming(self) -> Optional[list[str]]: ...

    async def pull(self) -> CommandResult: ...

    async def checkout(self, revision: str) -> CommandResult: ...


def parse_porcelain_v2(output: str) -> dict:
    """Parse ``git status --porcelain=v2 --branch`` output."""
    branch = "HEAD"
    ahead = 0
    behind = 0
    changed: list[str] = []
    untracked: list[str] = []

    for raw_line in output.splitlines():
        line = raw_line.rstrip("\n")
        if not line:
            continue
        if line.startswith("# branch.head "):
            branch = line[len("# branch.head "):].strip()
            continue
        if line.startswith("# branch.ab "):
            for part in line[len("# branch.ab "):].strip().split():
                if part.startswith("+"):
                    ahead = int(part[1:])
                elif part.startswith("-"):
                    behind = int(part[1:])
            continue
        if line.startswith("#"):
            continue
        if line.startswith("? "):
            untracked.append(line[2:].strip())
            continue
        # Ordinary, rename/copy and unmerged records have 8, 9 and 10 metadata fields.
        fields_before_path = {"1 ": 8, "2 ": 9, "u ": 10}.get(line[:2])
        if fields_before_path is not None:
            parts = line.split(" ", fields_before_path)
            if len(parts) <= fields_before_path:
                continue
            path = parts[fields_before_path].split("\t", 1)[0]
            if path not in changed:
                changed.append(path)

    return {
        "branch": branch,
        "ahead": ahead,
        "behind": behind,
        "changed": changed,
        "untracked": untracked,
        "dirty_count": len(changed) + len(untracked),
    }


class GitVersionControl:
    """Drives the git CLI in the service's install directory."""

    def __init__(
        self,
        repo_path: str | Path,
        remote: str = "origin",
        branch: str = "main",
        timeout_seconds: int = 60,
    ):
        self.repo_path = Path(repo_path)
        self.remote = remote
        self.branch = branch
        self.timeout_seconds = timeout_seconds

    @property
    def upstream(self) -> str:
        return f"{self.remote}/{self.branch}"

    def is_repo(self) -> bool:
        return (self.repo_path / ".git").exists()

    async def _git(self, *args: str, timeout_seconds: Optional[int] = None) -> CommandResult:
        return await run_command(
            ["git", "-C", str(self.repo_path), *args],
            timeout_seconds=timeout_seconds or self.timeout_seconds,
        )

    async def head(self) -> Optional[str]:
        if not self.is_repo():
            return None
        result = await self._git("rev-parse", "HEAD", timeout_seconds=10)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def head_summary(self) -> Optional[str]:
        if not self.is_repo():
            return None
        result = await self._git("log", "--oneline", "-1", timeout_seconds=10)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def status(self) -> Optional[dict]:
        """Parsed working tree status, or None when git is unavailable."""
        if not self.is_repo():
            return None
        result = await self._git("status", "--porcelain=v2", "--branch", timeout_seconds=30)
        if not result.ok:
            logger.warning("git_status_failed", repo_path=str(self.repo_path), stderr=result.stderr)
            return None
        return parse_porcelain_v2(result.stdout)

    async def fetch(self) -> CommandResult:
        result = await self._git("fetch", self.remote)
        if not result.ok:
            logger.warning("git_fetch_failed", repo_path=str(self.repo_path), stderr=result.stderr)
        return result

    async def incoming(self) -> Optional[list[str]]:
        """One-line subjects of commits on the upstream branch not yet in HEAD."""
        result = await self._git("log", "--format=%h %s", f"HEAD..{self.upstream}", timeout_seconds=30)
        if not result.ok:
            return None
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def pull(self) -> CommandResult:
        result = await self._git("pull", self.remote, self.branch)
        logger.info("git_pull", repo_path=str(self.repo_path), ok=result.ok, stderr=result.stderr[-500:])
        return result

    async def checkout(self, revision: str) -> CommandResult:
        result = await self._git("checkout", revision)
        logger.info("git_checkout", repo_path=str(self.repo_path), revision=revision, ok=result.ok)
        return result
