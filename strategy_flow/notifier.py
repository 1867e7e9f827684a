"""
Notification delivery for notify nodes.

The Telegram notifier talks to the Bot API ``sendMessage`` endpoint; the
logging notifier is used when notifications are switched off so that flows
still run end to end in local setups.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from strategy_flow.settings import AppSettings


LOGGER = logging.getLogger(__name__)
SEVERITY_PREFIXES = {
    "info": "ℹ️",
    "success": "✅",
    "warning": "⚠️",
    "error": "🚨",
}
PARSE_MODES = {"markdown": "Markdown", "markdownv2": "MarkdownV2", "html": "HTML"}


class NotificationError(RuntimeError):
    """Raised when a message cannot be delivered."""


class Notifier(Protocol):
    async def send(
        self,
        text: str,
        *,
        chat_id: str | None = None,
        parse_mode: str | None = None,
        severity: str = "info",
    ) -> str | None: ...


def normalize_parse_mode(parse_mode: str | None) -> str | None:
    if not parse_mode:
        return None
    return PARSE_MODES.get(parse_mode.strip().lower())


def decorate_message(text: str, severity: str) -> str:
    prefix = SEVERITY_PREFIXES.get((severity or "").lower())
    if not prefix:
        return text
    return f"{prefix} {text}"


class TelegramNotifier:
    def __init__(
        self,
        *,
        bot_token: str,
        default_chat_id: str = "",
        api_base: str = "https://api.telegram.org",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._bot_token = bot_token
        self._default_chat_id = default_chat_id
        self._api_base = api_base.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def send(
        self,
        text: str,
        *,
        chat_id: str | None = None,
        parse_mode: str | None = None,
        severity: str = "info",
    ) -> str | None:
        if not self._bot_token:
            raise NotificationError("Telegram bot token is not configured.")
        target = (chat_id or self._default_chat_id or "").strip()
        if not target:
            raise NotificationError("No Telegram chat id configured for this message.")

        payload: dict[str, Any] = {
            "chat_id": target,
            "text": decorate_message(text, severity),
        }
        mode = normalize_parse_mode(parse_mode)
        if mode:
            payload["parse_mode"] = mode

        url = f"{self._api_base}/bot{self._bot_token}/sendMessage"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise NotificationError(f"Telegram request failed: {exc.__class__.__name__}") from exc

        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> str | None:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if response.status_code >= 400 or not data.get("ok", False):
            detail = data.get("description") or response.text
            raise NotificationError(f"Telegram API error (HTTP {response.status_code}): {detail}")

        message_id = (data.get("result") or {}).get("message_id")
        return str(message_id) if message_id is not None else None


class LoggingNotifier:
    """Writes messages to the log instead of delivering them."""

    async def send(
        self,
        text: str,
        *,
        chat_id: str | None = None,
        parse_mode: str | None = None,
        severity: str = "info",
    ) -> str | None:
        LOGGER.info("Notification to %s [%s]: %s", chat_id or "<default>", severity, text)
        return None


def build_notifier(settings: AppSettings) -> Notifier:
    if not settings.enable_notifications:
        return LoggingNotifier()
    return TelegramNotifier(
        bot_token=settings.telegram_bot_token,
        default_chat_id=settings.telegram_chat_id,
        api_base=settings.telegram_api_base,
    )
