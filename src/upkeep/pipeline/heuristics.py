"""Text heuristics used by preflight and verification."""

from __future__ import annotations

import os
import re
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

BREAKING_CHANGE = re.compile(r"break|rename|migration|deprecat", re.IGNORECASE)
LOG_ERROR = re.compile(r"error|fatal|crash|ENOENT|MODULE_NOT_FOUND", re.IGNORECASE)


def is_breaking_change(subject: str) -> bool:
    """Commit subject mentions a breaking change, rename, migration or deprecation."""
    return bool(BREAKING_CHANGE.search(subject))


def error_lines(lines: Iterable[str]) -> list[str]:
    return [line for line in lines if LOG_ERROR.search(line)]


def tail_lines(path: Path, count: int = 50) -> list[str]:
    with open(path, encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=count)]


class RenameHint(Protocol):
    """Suggests the current path a removed plugin artifact may have moved to."""

    def suggest(self, removed: str, current: Sequence[str]) -> Optional[str]: ...


@dataclass
class NamingSwapHint:
    """Looks for the same file name with one project name swapped for the other."""

    rename_from: str
    rename_to: str

    def _swap(self, name: str) -> str:
        placeholder = "\0"
        return (
            name.replace(self.rename_from, placeholder)
            .replace(self.rename_to, self.rename_from)
            .replace(placeholder, self.rename_to)
        )

    def suggest(self, removed: str, current: Sequence[str]) -> Optional[str]:
        name = os.path.basename(removed)
        alt = self._swap(name)
        if alt == name:
            return None
        for path in current:
            if os.path.basename(path) == alt:
                return path
        return None
