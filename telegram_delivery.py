"""
Telegram Bot API client, delivery status log and dead-letter sink.
"""

import asyncio
import json
import logging
import os
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol

import httpx

from failure_classifier import TelegramApiError
from http_transport import create_async_client
from schemas import DeliveryStatusEvent

logger = logging.getLogger(__name__)


class BotApi(Protocol):
    async def send_message_to_user(
        self, user_id: str, text: str, keyboard: Optional[Dict[str, Any]] = None
    ) -> bool:
        ...


class InMemoryDeliveryStatusStore:
    """Bounded log of the most recent delivery outcomes."""

    def __init__(self, max_size: int = 500):
        self._events: Deque[DeliveryStatusEvent] = deque(maxlen=max_size)

    def add(self, event: DeliveryStatusEvent) -> None:
        self._events.append(event)

    def list_recent(self, limit: int = 50) -> List[DeliveryStatusEvent]:
        if limit <= 0:
            return []
        return list(self._events)[-limit:]

    def __len__(self) -> int:
        return len(self._events)


class JsonlDeadLetterSink:
    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    async def write(self, event: Dict[str, Any]) -> None:
        line = json.dumps(event, ensure_ascii=False, default=str)
        await asyncio.to_thread(self._append_line, line)

    def _append_line(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")


class TelegramBotApi:
    """
    sendMessage wrapper that resolves the user's chat through the link registry.

    Returns False when the bot is not configured or the user has no linked chat.
    Telegram error envelopes ({"ok": false, "error_code": ..., "description": ...})
    are raised as TelegramApiError; transport failures propagate as httpx errors.
    """

    def __init__(
        self,
        bot_token: str,
        link_registry: Any,
        *,
        api_base_url: str = "https://api.telegram.org",
        parse_mode: str = "HTML",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.bot_token = bot_token
        self.link_registry = link_registry
        self.api_base_url = api_base_url.rstrip("/")
        self.parse_mode = parse_mode
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_async_client()
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send_message_to_user(
        self, user_id: str, text: str, keyboard: Optional[Dict[str, Any]] = None
    ) -> bool:
        if not self.enabled:
            logger.warning("Telegram bot token not configured, message not sent")
            return False

        chat_id = self.link_registry.get_chat_id(user_id)
        if not chat_id:
            logger.warning(f"No Telegram chat linked for user {user_id}")
            return False

        await self.send_message(chat_id, text, keyboard)
        logger.info(f"Telegram message sent to user {user_id}")
        return True

    async def send_message(
        self, chat_id: str, text: str, keyboard: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text, "parse_mode": self.parse_mode}
        if keyboard:
            payload["reply_markup"] = keyboard

        url = f"{self.api_base_url}/bot{self.bot_token}/sendMessage"
        resp = await self._get_client().post(url, json=payload)

        try:
            data = resp.json()
        except ValueError:
            raise TelegramApiError(
                f"Telegram API returned non-JSON response (HTTP {resp.status_code})",
                status_code=resp.status_code,
            )

        if not isinstance(data, dict) or not data.get("ok", False):
            data = data if isinstance(data, dict) else {}
            error_code = data.get("error_code", resp.status_code)
            description = data.get("description") or f"HTTP {resp.status_code}"
            parameters = data.get("parameters") or {}
            raise TelegramApiError(
                f"{error_code}: {description}",
                status_code=error_code if isinstance(error_code, int) else resp.status_code,
                retry_after=parameters.get("retry_after"),
            )

        return data.get("result") or {}
