"""
Alert sinks.

An AlertSink has one operation, ``notify(text) -> bool``. Sinks never raise
for delivery problems: they log and return False so a failed notification
can not abort a monitor cycle.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Protocol

import aiohttp

from .config import AlertsConfig

logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    async def notify(self, text: str) -> bool:
        ...


class LoggingAlertSink:
    """Writes alerts to the log."""

    def __init__(self, log_level: int = logging.WARNING):
        self._level = log_level

    async def notify(self, text: str) -> bool:
        logger.log(self._level, f"[ALERT] {text}")
        return True


class MemoryAlertSink:
    """Keeps alerts in memory; optionally fails every delivery."""

    def __init__(self, fail: bool = False):
        self.messages: List[str] = []
        self.fail = fail

    async def notify(self, text: str) -> bool:
        if self.fail:
            return False
        self.messages.append(text)
        return True

    def clear(self) -> None:
        self.messages.clear()


class TelegramAlertSink:
    """
    Sends alerts to a Telegram chat through the Bot API ``sendMessage``.

    Example:
        sink = TelegramAlertSink(token, chat_id)
        ok = await sink.notify("*Operator Warning*")
        await sink.close()
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        api_base: str = "https://api.telegram.org",
        timeout: float = 10.0,
        parse_mode: Optional[str] = "Markdown",
    ):
        if not bot_token or not chat_id:
            raise ValueError("bot_token and chat_id are required")
        self._url = f"{api_base.rstrip('/')}/bot{bot_token}/sendMessage"
        self._chat_id = chat_id
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._parse_mode = parse_mode
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def notify(self, text: str) -> bool:
        body = {
            "chat_id": self._chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if self._parse_mode:
            body["parse_mode"] = self._parse_mode

        logger.debug(f"Sending Telegram message (length {len(text)})")
        try:
            session = await self._get_session()
            async with session.post(self._url, json=body) as resp:
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            logger.error("Telegram sendMessage timed out")
            return False
        except (aiohttp.ClientError, ValueError) as exc:
            logger.error(f"Telegram sendMessage failed: {exc}")
            return False

        if resp.status != 200 or not isinstance(payload, dict) or not payload.get("ok"):
            description = payload.get("description") if isinstance(payload, dict) else payload
            logger.error(f"Telegram rejected message: status={resp.status} {description}")
            return False
        return True

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def create_alert_sink(config: AlertsConfig) -> AlertSink:
    """Build the sink selected by configuration."""
    if config.sink == "telegram":
        return TelegramAlertSink(
            config.telegram_bot_token or "",
            config.telegram_chat_id or "",
            api_base=config.telegram_api_base,
            timeout=config.timeout_seconds,
        )
    return LoggingAlertSink()
