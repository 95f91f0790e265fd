"""
Operator alerts over Telegram.

Alerts are rate limited per severity using timestamps in the watchdog state
record: critical alerts by ``last_alert_at``, warnings by
``last_warn_alert_at``.
"""

from __future__ import annotations

import socket
import time
from enum import Enum
from typing import Optional, Protocol

import structlog
from telegram import Bot
from telegram.error import TelegramError

from ..persistence.state import StateStore

logger = structlog.get_logger(__name__)

TELEGRAM_MAX_LENGTH = 4096


class AlertLevel(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"


class Notifier(Protocol):
    async def send(self, text: str) -> bool: ...


def split_message(text: str, max_length: int = TELEGRAM_MAX_LENGTH) -> list[str]:
    """
    Split text on line boundaries into chunks under Telegram's size limit.

    Examples:
        >>> split_message("short")
        ['short']
    """
    if len(text) <= max_length:
        return [text]

    chunks = []
    current = ""
    for line in text.split("\n"):
        # Hard-wrap single lines longer than the limit
        while len(line) > max_length:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:max_length])
            line = line[max_length:]
        if len(current) + len(line) + 1 > max_length:
            if current:
                chunks.append(current)
            current = line
        else:
            current = current + "\n" + line if current else line
    if current:
        chunks.append(current)
    return chunks


class TelegramNotifier:
    """Sends alert text to one chat through the Bot API."""

    def __init__(self, token: str, chat_id: str):
        self.token = token
        self.chat_id = chat_id

    async def send(self, text: str) -> bool:
        """
        Deliver ``text`` to the configured chat.

        Returns:
            True if every chunk was accepted, False otherwise
        """
        try:
            async with Bot(self.token) as bot:
                for chunk in split_message(text):
                    await bot.send_message(chat_id=self.chat_id, text=chunk)
        except TelegramError as e:
            logger.error(
                "alert_send_error",
                chat_id=self.chat_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        logger.info("alert_sent", chat_id=self.chat_id)
        return True


class AlertGate:
    """Cooldown and enable-flag gate in front of a Notifier."""

    def __init__(
        self,
        state: StateStore,
        notifier: Optional[Notifier],
        enabled: bool = False,
        cooldown_seconds: int = 300,
        warn_cooldown_seconds: int = 1800,
        hostname: Optional[str] = None,
    ):
        self.state = state
        self.notifier = notifier
        self.enabled = enabled and notifier is not None
        self.cooldown_seconds = cooldown_seconds
        self.warn_cooldown_seconds = warn_cooldown_seconds
        self.hostname = hostname or socket.gethostname()

    def _gate(self, level: AlertLevel) -> tuple[str, int]:
        if level is AlertLevel.CRITICAL:
            return "last_alert_at", self.cooldown_seconds
        return "last_warn_alert_at", self.warn_cooldown_seconds

    async def send(self, level: AlertLevel, text: str, now: Optional[int] = None) -> bool:
        """Send unless disabled or still inside the level's cooldown."""
        if not self.enabled:
            return False
        now = int(time.time()) if now is None else now
        field_name, cooldown = self._gate(level)
        last = await self.state.get(field_name)
        if last is not None and now - int(last) < cooldown:
            logger.debug("alert_suppressed", level=level.value, seconds_since_last=now - int(last))
            return False

        prefix = "CRITICAL" if level is AlertLevel.CRITICAL else "WARNING"
        delivered = await self.notifier.send(f"[{prefix}] {self.hostname}: {text}")
        if delivered:
            await self.state.set(field_name, now)
        return delivered
