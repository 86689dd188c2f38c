"""Telegram notifier for operational alerts."""

import asyncio
from typing import Any, Optional, Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)


SEVERITY_EMOJI = {
    "CRITICAL": "🔴",
    "WARN": "🟡",
    "INFO": "🔵",
}


class AlertNotifier(Protocol):
    async def send_alert(
        self, title: str, severity: str, details: Optional[dict[str, Any]] = None
    ) -> bool:
        ...


class TelegramNotifier:
    """
    Sends operational alerts to Telegram.

    HTML formatted, retried once on 429/5xx/transport errors, truncated
    to the Telegram message limit.
    """

    TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"
    MAX_MESSAGE_LENGTH = 4000  # Telegram limit is ~4096

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout: float = 10.0,
        enabled: bool = True,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout
        self.enabled = enabled

    async def send_alert(
        self, title: str, severity: str, details: Optional[dict[str, Any]] = None
    ) -> bool:
        """Send an alert. Returns True if Telegram accepted the message."""
        if not self.enabled:
            logger.debug("telegram_disabled", title=title)
            return False

        message = self._format_message(title, severity, details or {})
        if len(message) > self.MAX_MESSAGE_LENGTH:
            message = (
                message[: self.MAX_MESSAGE_LENGTH - 50] + "\n\n<i>(truncated...)</i>"
            )
        return await self._send(message, title)

    def _format_message(self, title: str, severity: str, details: dict[str, Any]) -> str:
        lines: list[str] = []
        emoji = SEVERITY_EMOJI.get(severity, "⚪")
        lines.append(f"{emoji} <b>{self._escape_html(title)}</b>")
        lines.append("━" * 20)
        lines.append(f"Severity: <code>{severity}</code>")

        for key, value in details.items():
            if isinstance(value, (list, dict)):
                continue
            lines.append(f"• {self._escape_html(str(key))}: {self._escape_html(str(value)[:200])}")

        return "\n".join(lines)

    def _escape_html(self, text: str) -> str:
        """Escape HTML special characters."""
        return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")

    async def _send(self, message: str, title: str) -> bool:
        """Send message to Telegram with retry."""
        payload = {
            "chat_id": self.chat_id,
            "text": message,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        url = self.TELEGRAM_API.format(token=self.bot_token)

        for attempt in range(2):  # Retry once
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=payload)

                if resp.status_code == 200:
                    logger.info("telegram_sent", title=title)
                    return True

                if resp.status_code == 400:
                    # Bad request - don't retry
                    logger.warning(
                        "telegram_bad_request", title=title, response=resp.text[:200]
                    )
                    return False

                logger.warning(
                    "telegram_error", title=title, status=resp.status_code, attempt=attempt
                )
            except httpx.HTTPError as e:
                logger.warning(
                    "telegram_exception", title=title, error=str(e), attempt=attempt
                )

            if attempt == 0:
                await asyncio.sleep(1)

        logger.error("telegram_failed", title=title)
        return False


def get_telegram_notifier(settings) -> Optional[TelegramNotifier]:
    """Configured notifier, or None when Telegram is not set up."""
    if not settings.telegram_bot_token or not settings.telegram_chat_id:
        return None
    return TelegramNotifier(
        bot_token=settings.telegram_bot_token,
        chat_id=settings.telegram_chat_id,
        enabled=settings.telegram_enabled,
    )
