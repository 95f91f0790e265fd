"""Human-readable terminal report.

Structured events go through structlog; this is only what an operator sees
when running a command by hand (or in the scheduler's captured output).
"""

from __future__ import annotations

import sys
from typing import Optional, TextIO

MARKERS = {
    "info": "[info]",
    "ok": "[ ok ]",
    "warn": "[warn]",
    "fail": "[FAIL]",
}


class Reporter:
    """Line-oriented console output with a severity marker per line."""

    def __init__(self, stream: Optional[TextIO] = None, quiet: bool = False):
        self.stream = stream
        self.quiet = quiet
        self.lines: list[str] = []

    def _emit(self, text: str) -> None:
        self.lines.append(text)
        if self.quiet:
            return
        stream = self.stream or sys.stdout
        print(text, file=stream, flush=True)

    def _mark(self, kind: str, message: str) -> None:
        self._emit(f"{MARKERS[kind]} {message}")

    def info(self, message: str) -> None:
        self._mark("info", message)

    def ok(self, message: str) -> None:
        self._mark("ok", message)

    def warn(self, message: str) -> None:
        self._mark("warn", message)

    def fail(self, message: str) -> None:
        self._mark("fail", message)

    def section(self, title: str) -> None:
        self._emit("")
        self._emit(f"== {title} ==")

    def line(self, text: str = "") -> None:
        self._emit(text)
