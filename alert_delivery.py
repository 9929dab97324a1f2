"""
Sentry alert delivery: format, send, and route failures.

Failures from the Bot API are classified:
- Permanent (bot blocked, chat gone): the user's Telegram link is removed;
- Transient (rate limit, 5xx, network): the send is queued on the RetryManager;
- Fatal: re-raised to the ingest adapter.
"""

import asyncio
import json
import logging
import time
from html import escape
from typing import Any, Dict, Iterable, Mapping, Optional

from alert_formatter import AlertFormatter
from failure_classifier import FailureClassifier
from retry_manager import PendingRetryEntry, RetryManager
from schemas import CanonicalTelemetryRecord, DeliveryStatus, DeliveryStatusEvent, FailureVerdict
from link_registry import LinkRegistry
from telegram_delivery import BotApi, InMemoryDeliveryStatusStore

logger = logging.getLogger(__name__)


# Telegram rejects messages above 4096 characters
MAX_DEBUG_PAYLOAD_CHARS = 3500


def make_correlation_id(user_id: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"telegram-alert-{user_id}-{now_ms}"


class DeliveryCoordinator:
    def __init__(
        self,
        bot_api: BotApi,
        link_registry: LinkRegistry,
        retry_manager: RetryManager,
        *,
        formatter: Optional[AlertFormatter] = None,
        classifier: Optional[FailureClassifier] = None,
        status_store: Optional[InMemoryDeliveryStatusStore] = None,
        simulated_delay_ms: Optional[float] = None,
        test_vin_prefixes: Iterable[str] = ("TEST",),
    ):
        self.bot_api = bot_api
        self.link_registry = link_registry
        self.retry_manager = retry_manager
        self.formatter = formatter or AlertFormatter()
        self.classifier = classifier or FailureClassifier()
        self.status_store = status_store or InMemoryDeliveryStatusStore()
        self.simulated_delay_ms = simulated_delay_ms
        self.test_vin_prefixes = tuple(prefix.upper() for prefix in test_vin_prefixes if prefix)

        self._last_correlation_ms = 0

        if self.retry_manager.on_exhausted is None:
            self.retry_manager.on_exhausted = self.record_retry_exhausted

    def _record(self, status: DeliveryStatus, user_id: str, vin: Optional[str], **extra: Any) -> None:
        self.status_store.add(DeliveryStatusEvent(status=status, user_id=user_id, vin=vin, **extra))

    def _next_correlation_id(self, user_id: str) -> str:
        # Strictly increasing per coordinator: one id per scheduled retry
        now_ms = max(int(time.time() * 1000), self._last_correlation_ms + 1)
        self._last_correlation_ms = now_ms
        return make_correlation_id(user_id, now_ms)

    def is_simulated_vin(self, vin: str) -> bool:
        if self.simulated_delay_ms is None or not self.test_vin_prefixes:
            return False
        return vin.upper().startswith(self.test_vin_prefixes)

    async def send_alert(
        self,
        user_id: str,
        record: CanonicalTelemetryRecord,
        locale: str,
        keyboard: Optional[Dict[str, Any]] = None,
    ) -> bool:
        formatted = self.formatter.format(record, locale, user_id=user_id)
        reply_markup = keyboard if keyboard is not None else formatted.keyboard

        if self.is_simulated_vin(record.vin):
            await asyncio.sleep(self.simulated_delay_ms / 1000.0)
            logger.info(f"Simulated alert delivery for test VIN {record.vin} ({self.simulated_delay_ms}ms)")
            self._record(DeliveryStatus.SIMULATED, user_id, record.vin)
            return True

        try:
            sent = await self.bot_api.send_message_to_user(user_id, formatted.text, reply_markup)
        except Exception as error:
            return await self._handle_failure(error, user_id, record.vin, formatted.text, reply_markup)

        self._record(DeliveryStatus.SENT if sent else DeliveryStatus.NOT_DELIVERED, user_id, record.vin)
        return sent

    async def _handle_failure(
        self, error: Exception, user_id: str, vin: str, text: str, keyboard: Optional[Dict[str, Any]]
    ) -> bool:
        verdict = self.classifier.classify(error)

        if verdict == FailureVerdict.PERMANENT:
            logger.warning(f"[TELEGRAM_BLOCKED] Bot blocked for user {user_id}, removing Telegram link: {error}")
            await self.link_registry.remove_link(user_id)
            self._record(DeliveryStatus.UNLINKED, user_id, vin, error=str(error))
            return False

        if verdict == FailureVerdict.TRANSIENT:
            correlation_id = self._next_correlation_id(user_id)
            operation = self._build_retry_operation(correlation_id, user_id, vin, text, keyboard)
            self.retry_manager.add_to_retry(
                operation, error, correlation_id, context={"user_id": user_id, "vin": vin}
            )
            self._record(
                DeliveryStatus.RETRY_SCHEDULED, user_id, vin, correlation_id=correlation_id, error=str(error)
            )
            return False

        logger.error(f"Telegram delivery failed for user {user_id}: {error}")
        self._record(DeliveryStatus.FAILED, user_id, vin, error=str(error))
        raise error

    def _build_retry_operation(
        self, correlation_id: str, user_id: str, vin: str, text: str, keyboard: Optional[Dict[str, Any]]
    ):
        async def retry_send() -> bool:
            try:
                sent = await self.bot_api.send_message_to_user(user_id, text, keyboard)
            except Exception as error:
                if self.classifier.classify(error) != FailureVerdict.PERMANENT:
                    raise
                logger.warning(f"[TELEGRAM_BLOCKED] Bot blocked for user {user_id} during retry, removing link")
                await self.link_registry.remove_link(user_id)
                self._record(DeliveryStatus.UNLINKED, user_id, vin, correlation_id=correlation_id, error=str(error))
                return True
            if sent:
                self._record(DeliveryStatus.RETRY_SUCCEEDED, user_id, vin, correlation_id=correlation_id)
            return sent

        return retry_send

    def record_retry_exhausted(self, entry: PendingRetryEntry) -> None:
        self._record(
            DeliveryStatus.RETRY_EXHAUSTED,
            entry.context.get("user_id"),
            entry.context.get("vin"),
            correlation_id=entry.id,
            error=str(entry.last_error) if entry.last_error is not None else None,
        )

    async def send_debug_message(self, user_id: str, payload: Mapping[str, Any], vin: Optional[str] = None) -> bool:
        """Forward the raw telemetry message to a user who enabled debug messages. Never retried."""
        raw = json.dumps(payload, ensure_ascii=False, default=str)
        if len(raw) > MAX_DEBUG_PAYLOAD_CHARS:
            raw = raw[:MAX_DEBUG_PAYLOAD_CHARS] + "…"
        header = f"🐛 <b>Telemetry</b> {escape(vin)}" if vin else "🐛 <b>Telemetry</b>"
        text = f"{header}\n<pre>{escape(raw)}</pre>"

        try:
            return await self.bot_api.send_message_to_user(user_id, text)
        except Exception as error:
            verdict = self.classifier.classify(error)
            if verdict == FailureVerdict.PERMANENT:
                logger.warning(f"[TELEGRAM_BLOCKED] Bot blocked for user {user_id}, removing Telegram link")
                await self.link_registry.remove_link(user_id)
                return False
            if verdict == FailureVerdict.TRANSIENT:
                logger.warning(f"Debug message to user {user_id} not delivered: {error}")
                return False
            raise
