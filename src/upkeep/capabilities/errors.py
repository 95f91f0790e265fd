"""Structured error raised for unrecoverable preconditions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class CapabilityError(Exception):
    """Structured error for operations that cannot proceed."""

    code: str
    message: str
    details: dict[str, Any] | None = None
    retryable: bool = False

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details or {},
            "retryable": self.retryable,
        }
